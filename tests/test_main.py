"""
Tests for the process supervisor: startup validation, wiring and shutdown.
"""

import asyncio
import os
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from indexer.core.config import Settings
from indexer.main import AMM_SOURCE, TOKEN_FACTORY_SOURCE, build_sources, run
from indexer.services.events import SourceKind
from indexer.services.rpc import EventPage


def _settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL="sqlite:///:memory:",
        STELLAR_RPC_URL="https://rpc.test",
        TOKEN_FACTORY_CONTRACT_ID="CTOKENFACTORY",
        METRICS_PORT=0,
        POLL_INTERVAL_SECONDS=0.01,
        SENTRY_DSN="",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def fake_rpc():
    client = MagicMock()
    client.get_events = AsyncMock(return_value=EventPage(events=[], latest_ledger=10))
    client.get_latest_ledger = AsyncMock(return_value=10)
    client.aclose = AsyncMock()
    with patch("indexer.main.SorobanRpcClient", return_value=client):
        yield client


class TestBuildSources:
    def test_token_factory_only(self):
        sources = build_sources(_settings())

        assert [s.source_id for s in sources] == [TOKEN_FACTORY_SOURCE]
        assert sources[0].kind == SourceKind.TOKEN_FACTORY
        assert sources[0].contract_id == "CTOKENFACTORY"

    def test_amm_source_gets_its_own_breaker(self):
        sources = build_sources(_settings(AMM_FACTORY_CONTRACT_ID="CAMM", CB_FAILURE_THRESHOLD=3))

        assert [s.source_id for s in sources] == [TOKEN_FACTORY_SOURCE, AMM_SOURCE]
        assert sources[1].kind == SourceKind.AMM
        assert sources[0].breaker is not sources[1].breaker
        assert sources[1].breaker.failure_threshold == 3


class TestRun:
    @pytest.mark.asyncio
    async def test_missing_configuration_exits_with_1(self, fake_rpc):
        assert await run(_settings(STELLAR_RPC_URL="")) == 1
        fake_rpc.get_events.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreachable_database_exits_with_1(self, fake_rpc):
        with patch("indexer.main.check_db_connection", side_effect=OSError("connection refused")):
            assert await run(_settings()) == 1

    @pytest.mark.asyncio
    async def test_sigterm_stops_cleanly(self, fake_rpc):
        loop = asyncio.get_running_loop()
        loop.call_later(0.5, os.kill, os.getpid(), signal.SIGTERM)

        exit_code = await asyncio.wait_for(run(_settings()), timeout=5)

        assert exit_code == 0
        assert fake_rpc.get_events.await_count >= 1
        fake_rpc.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fatal_indexer_error_exits_with_1(self, fake_rpc):
        fake_indexer = MagicMock()
        fake_indexer.fatal = asyncio.Event()
        fake_indexer.fatal_error = RuntimeError("store gone")
        fake_indexer.start = MagicMock(side_effect=fake_indexer.fatal.set)
        fake_indexer.stop = AsyncMock()

        with patch("indexer.main.EventIndexer", return_value=fake_indexer):
            exit_code = await asyncio.wait_for(run(_settings()), timeout=5)

        assert exit_code == 1
        fake_indexer.stop.assert_awaited_once()
        fake_rpc.aclose.assert_awaited_once()
