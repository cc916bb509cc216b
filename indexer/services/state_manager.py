"""
Checkpoint persistence with a write-through cache.

The `indexer_state` table is the source of truth for how far each source has
been durably indexed. Reads go through a process-local LRU cache that starts
empty and is refreshed on every successful write, so a restarted process never
sees a stale position.

Methods are synchronous (one Session per call); the indexer runs them with
`asyncio.to_thread`, so the cache is guarded by a lock.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from cachetools import LRUCache
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from indexer.core.errors import capture_exception
from indexer.core.logging_config import get_logger
from indexer.core.metrics import update_indexing_lag, update_last_indexed_position
from indexer.core.typing import as_utc, col, utc_now
from indexer.models import IndexerState

logger = get_logger(__name__)


@dataclass(frozen=True)
class Checkpoint:
    """Detached snapshot of an `indexer_state` row."""

    source_id: str
    last_position: str
    last_event_id: Optional[str]
    last_processed_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: IndexerState) -> "Checkpoint":
        return cls(
            source_id=row.source_id,
            last_position=row.last_position,
            last_event_id=row.last_event_id,
            last_processed_at=as_utc(row.last_processed_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "last_position": self.last_position,
            "last_event_id": self.last_event_id,
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
        }


def _position_key(position: str) -> int:
    return int(position)


def _is_regression(new_key: int, event_id: Optional[str], row: IndexerState) -> bool:
    current_key = _position_key(row.last_position)
    if new_key != current_key:
        return new_key < current_key
    if not row.last_event_id:
        return False
    return event_id is None or event_id < row.last_event_id


class StateManager:
    def __init__(self, engine: Engine, cache_size: int = 1024):
        self.engine = engine
        self._cache: LRUCache = LRUCache(maxsize=cache_size)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get_state(self, source_id: str) -> Optional[Checkpoint]:
        """
        Checkpoint for a source, served from cache when possible.

        Returns None when the source has never been indexed.
        Database errors propagate.
        """
        with self._lock:
            cached = self._cache.get(source_id)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        with Session(self.engine) as session:
            row = session.exec(select(IndexerState).where(IndexerState.source_id == source_id)).first()
            if row is None:
                return None
            checkpoint = Checkpoint.from_row(row)

        with self._lock:
            self._cache[source_id] = checkpoint
        return checkpoint

    def get_last_position(self, source_id: str) -> Optional[str]:
        """Last durably indexed position, or None for "never indexed" (distinct from "0")."""
        checkpoint = self.get_state(source_id)
        return checkpoint.last_position if checkpoint else None

    def update_position(
        self,
        source_id: str,
        position: str,
        event_id: Optional[str] = None,
        ledger_closed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Upsert the checkpoint for `source_id` in one transaction.

        A position lower than the stored one is refused, and so is a lower (or
        missing) event id at the stored position. Only reset_state() moves a
        checkpoint backward. Never raises: failures are logged and
        reported, and the caller decides whether to retry the cycle.

        Returns:
            True if the checkpoint was written.
        """
        try:
            new_key = _position_key(position)
        except (TypeError, ValueError):
            logger.error("Refusing non-numeric checkpoint position", source_id=source_id, position=position)
            return False

        now = utc_now()
        try:
            with Session(self.engine) as session:
                row = session.exec(select(IndexerState).where(IndexerState.source_id == source_id)).first()
                if row is None:
                    row = IndexerState(source_id=source_id, last_position=str(new_key))
                elif _is_regression(new_key, event_id, row):
                    logger.warning(
                        "Refusing checkpoint regression",
                        source_id=source_id,
                        current=row.last_position,
                        requested=position,
                        current_event_id=row.last_event_id,
                        requested_event_id=event_id,
                    )
                    return False

                row.last_position = str(new_key)
                row.last_event_id = event_id
                row.last_processed_at = now
                session.add(row)
                session.commit()
                session.refresh(row)
                checkpoint = Checkpoint.from_row(row)
        except Exception as e:
            capture_exception(
                e,
                context={"operation": "update_position", "source_id": source_id, "position": position},
            )
            return False

        with self._lock:
            self._cache[source_id] = checkpoint

        update_last_indexed_position(source_id, checkpoint.last_position)
        reference = ledger_closed_at or now
        update_indexing_lag(source_id, (utc_now() - as_utc(reference)).total_seconds())

        logger.debug("Checkpoint updated", source_id=source_id, position=checkpoint.last_position, event_id=event_id)
        return True

    def get_all_states(self) -> List[Checkpoint]:
        """Every persisted checkpoint, read from the database (diagnostics)."""
        with Session(self.engine) as session:
            rows = session.exec(select(IndexerState).order_by(col(IndexerState.source_id))).all()
            return [Checkpoint.from_row(row) for row in rows]

    def reset_state(self, source_id: str) -> bool:
        """
        Delete the checkpoint so the next cycle starts from the configured
        initial position. Returns False if there was nothing to delete.
        """
        with Session(self.engine) as session:
            row = session.exec(select(IndexerState).where(IndexerState.source_id == source_id)).first()
            if row is not None:
                session.delete(row)
                session.commit()

        with self._lock:
            self._cache.pop(source_id, None)

        if row is None:
            return False
        logger.warning("Checkpoint reset", source_id=source_id)
        return True

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "sources": sorted(self._cache.keys()),
            }
