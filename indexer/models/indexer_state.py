"""
Checkpoint model: how far each source has been durably indexed.

One row per source. `last_position` is a ledger number stored as a string so
64-bit+ values never lose precision. The row is created on the first committed
batch, updated after every batch, and deleted only by an explicit reset.
"""

from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel

from indexer.core.typing import utc_now


class IndexerState(SQLModel, table=True):
    """Persisted checkpoint for one indexed source."""

    __tablename__ = "indexer_state"

    id: Optional[int] = Field(default=None, primary_key=True)
    source_id: str = Field(unique=True, index=True, max_length=100)  # e.g. "token_factory"
    last_position: str = Field(max_length=40)
    last_event_id: Optional[str] = Field(default=None, max_length=100)
    last_processed_at: datetime = Field(default_factory=utc_now)
