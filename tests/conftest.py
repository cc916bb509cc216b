"""
Test fixtures for the indexer tests.

Provides database engine/session fixtures and builders for raw Soroban events.
"""

import os
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
from sqlmodel import Session, SQLModel

import indexer.models  # noqa: F401  registers tables
from indexer.db import make_engine


def pytest_collection_modifyitems(config, items):
    """Skip integration tests in CI (no live database or RPC endpoint)."""
    if os.environ.get("CI") == "true":
        skip_integration = pytest.mark.skip(reason="Integration tests skipped in CI")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = make_engine(TEST_DATABASE_URL)
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


TOKEN_FACTORY = "CTOKENFACTORY"
AMM_PAIR = "CAMMPAIR"
CREATOR = "GCREATOR"
BUYER = "GBUYER"
TOKEN = "CTOKEN1"


def event_id(ledger: int, index: int = 1) -> str:
    """Paging id in the zero-padded form the RPC returns."""
    return f"{ledger:019d}-{index:010d}"


def _scval(value: Any) -> Any:
    if value is None:
        return "void"
    if isinstance(value, bool):
        return {"bool": value}
    if isinstance(value, int):
        return {"i128": str(value)}
    if isinstance(value, str) and value[:1] in ("G", "C") and value.isupper():
        return {"address": value}
    return {"string": value}


@pytest.fixture
def make_raw_event() -> Callable[..., Dict[str, Any]]:
    """
    Build a getEvents entry in JSON XDR format.

    make_raw_event("buy", 101, topics=[BUYER, TOKEN], value=[50_000_000, 1_000])
    """

    def _build(
        symbol: str,
        ledger: int,
        topics: Optional[List[Any]] = None,
        value: Optional[List[Any]] = None,
        index: int = 1,
        contract_id: str = TOKEN_FACTORY,
        closed_at: str = "2024-05-01T12:00:00Z",
    ) -> Dict[str, Any]:
        return {
            "type": "contract",
            "id": event_id(ledger, index),
            "ledger": ledger,
            "ledgerClosedAt": closed_at,
            "contractId": contract_id,
            "txHash": f"tx{ledger}{index}",
            "inSuccessfulContractCall": True,
            "topicJson": [{"symbol": symbol}] + [_scval(t) for t in (topics or [])],
            "valueJson": {"vec": [_scval(v) for v in (value or [])]},
        }

    return _build
