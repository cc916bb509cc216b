"""
Tests for StateManager checkpoint persistence and its write-through cache.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from indexer.models import IndexerState
from indexer.services.state_manager import StateManager


@pytest.fixture
def state_manager(test_engine) -> StateManager:
    return StateManager(test_engine, cache_size=16)


class TestGetLastPosition:
    def test_never_indexed_returns_none(self, state_manager):
        """Absent row means "never indexed", which is not position "0"."""
        assert state_manager.get_last_position("token_factory") is None

    def test_zero_position_is_distinct_from_never_indexed(self, state_manager):
        assert state_manager.update_position("token_factory", "0") is True
        assert state_manager.get_last_position("token_factory") == "0"

    def test_reads_existing_row(self, state_manager, test_session):
        test_session.add(IndexerState(source_id="amm_factory", last_position="555", last_event_id="e-1"))
        test_session.commit()

        assert state_manager.get_last_position("amm_factory") == "555"
        assert state_manager.get_state("amm_factory").last_event_id == "e-1"

    def test_cache_hit_skips_database(self, state_manager):
        state_manager.update_position("token_factory", "100")

        with patch("indexer.services.state_manager.Session") as session_cls:
            assert state_manager.get_last_position("token_factory") == "100"
            session_cls.assert_not_called()

        assert state_manager.get_cache_stats()["hits"] == 1


class TestUpdatePosition:
    def test_round_trip_through_persistence(self, state_manager):
        """Written position survives clearing the cache."""
        assert state_manager.update_position("token_factory", "12345", "0000000000000012345-0000000001")

        state_manager.clear_cache()

        checkpoint = state_manager.get_state("token_factory")
        assert checkpoint.last_position == "12345"
        assert checkpoint.last_event_id == "0000000000000012345-0000000001"
        assert checkpoint.last_processed_at.tzinfo is not None

    def test_upsert_keeps_one_row(self, state_manager, test_session):
        state_manager.update_position("token_factory", "100")
        state_manager.update_position("token_factory", "101")

        rows = test_session.exec(select(IndexerState)).all()
        assert len(rows) == 1
        assert rows[0].last_position == "101"

    def test_same_position_new_event_id(self, state_manager):
        state_manager.update_position("token_factory", "100", "a")
        assert state_manager.update_position("token_factory", "100", "b") is True
        assert state_manager.get_state("token_factory").last_event_id == "b"

    def test_refuses_lower_event_id_at_same_position(self, state_manager):
        state_manager.update_position("token_factory", "100", "0000000000000000100-0000000005")

        assert state_manager.update_position("token_factory", "100", "0000000000000000100-0000000002") is False
        assert state_manager.update_position("token_factory", "100") is False
        state_manager.clear_cache()
        assert state_manager.get_state("token_factory").last_event_id == "0000000000000000100-0000000005"

    def test_event_id_may_be_set_at_same_position(self, state_manager):
        """A checkpoint without an event id covers the whole ledger; adding one is not a regression."""
        state_manager.update_position("token_factory", "100")

        assert state_manager.update_position("token_factory", "100", "0000000000000000100-0000000001") is True

    def test_refuses_regression(self, state_manager):
        state_manager.update_position("token_factory", "200")

        assert state_manager.update_position("token_factory", "150") is False
        state_manager.clear_cache()
        assert state_manager.get_last_position("token_factory") == "200"

    def test_large_positions_keep_precision(self, state_manager):
        big = str(2**64 + 7)
        assert state_manager.update_position("token_factory", big)
        state_manager.clear_cache()
        assert state_manager.get_last_position("token_factory") == big

    def test_non_numeric_position_rejected(self, state_manager):
        assert state_manager.update_position("token_factory", "abc") is False
        assert state_manager.get_last_position("token_factory") is None

    def test_database_failure_returns_false(self, state_manager):
        """update_position never raises; the cache is left untouched."""
        state_manager.update_position("token_factory", "100")

        error = OperationalError("UPDATE", {}, Exception("connection lost"))
        with patch("indexer.services.state_manager.Session", side_effect=error):
            assert state_manager.update_position("token_factory", "101") is False

        assert state_manager.get_last_position("token_factory") == "100"

    def test_sets_gauges(self, state_manager):
        closed_at = datetime.now(timezone.utc) - timedelta(seconds=30)
        with patch("indexer.services.state_manager.update_last_indexed_position") as position_gauge, patch(
            "indexer.services.state_manager.update_indexing_lag"
        ) as lag_gauge:
            state_manager.update_position("token_factory", "100", ledger_closed_at=closed_at)

        position_gauge.assert_called_once_with("token_factory", "100")
        source, lag = lag_gauge.call_args.args
        assert source == "token_factory"
        assert 29 <= lag <= 60


class TestAdministration:
    def test_reset_state_forgets_checkpoint(self, state_manager):
        state_manager.update_position("token_factory", "100")

        assert state_manager.reset_state("token_factory") is True

        assert state_manager.get_last_position("token_factory") is None
        assert state_manager.reset_state("token_factory") is False

    def test_reset_allows_lower_position_afterwards(self, state_manager):
        state_manager.update_position("token_factory", "500")
        state_manager.reset_state("token_factory")

        assert state_manager.update_position("token_factory", "10") is True

    def test_get_all_states_reads_database(self, state_manager):
        state_manager.update_position("token_factory", "100")
        state_manager.update_position("amm_factory", "90")
        state_manager.clear_cache()

        states = state_manager.get_all_states()

        assert [s.source_id for s in states] == ["amm_factory", "token_factory"]
        assert states[1].to_dict()["last_position"] == "100"

    def test_out_of_band_edit_visible_after_clear_cache(self, state_manager, test_engine):
        state_manager.update_position("token_factory", "100")

        with Session(test_engine) as session:
            row = session.exec(select(IndexerState)).one()
            row.last_position = "300"
            session.add(row)
            session.commit()

        assert state_manager.get_last_position("token_factory") == "100"
        state_manager.clear_cache()
        assert state_manager.get_last_position("token_factory") == "300"

    def test_cache_stats(self, state_manager):
        state_manager.get_last_position("token_factory")
        state_manager.update_position("token_factory", "1")
        state_manager.get_last_position("token_factory")

        stats = state_manager.get_cache_stats()
        assert stats["size"] == 1
        assert stats["maxsize"] == 16
        assert stats["misses"] == 1
        assert stats["hits"] == 1
        assert stats["sources"] == ["token_factory"]
