"""
Dead-letter record for chain events that could not be decoded.

Written inside the batch transaction when the decode policy is "skip", so an
undecodable event is never dropped without a trace and can be replayed by hand.
"""

from typing import Any, Optional
from datetime import datetime

from sqlmodel import Field, SQLModel, Column
from sqlalchemy import JSON

from indexer.core.typing import utc_now


class SkippedEvent(SQLModel, table=True):
    __tablename__ = "skipped_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    source_id: str = Field(max_length=100, index=True)
    position: str = Field(max_length=40)
    event_id: str = Field(unique=True, index=True, max_length=100)
    event_type: Optional[str] = Field(default=None, max_length=32)
    raw_payload: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: str = Field(max_length=1000)
    created_at: datetime = Field(default_factory=utc_now)
