from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel

from indexer.core.typing import utc_now


class User(SQLModel, table=True):
    """Wallet activity and leaderboard standing."""

    id: Optional[int] = Field(default=None, primary_key=True)
    address: str = Field(unique=True, index=True, max_length=64)
    points: int = Field(default=0, index=True)
    level: int = Field(default=1)
    rank: Optional[int] = Field(default=None, index=True)  # leaderboard, 1 = most points
    tokens_created_count: int = Field(default=0)
    total_volume_traded: str = Field(default="0")
    total_liquidity_provided: str = Field(default="0")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
