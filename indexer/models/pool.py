from enum import Enum
from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from indexer.core.typing import utc_now


class LiquidityEventType(str, Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"


class Pool(SQLModel, table=True):
    """AMM pair. `address` is the pair contract that emits the events."""

    id: Optional[int] = Field(default=None, primary_key=True)
    address: str = Field(unique=True, index=True, max_length=64)
    token0_address: Optional[str] = Field(default=None, max_length=64)
    token1_address: Optional[str] = Field(default=None, max_length=64)

    reserve0: str = Field(default="0")
    reserve1: str = Field(default="0")
    total_supply: str = Field(default="0")  # LP tokens

    # Derived (metrics calculator)
    tvl: Optional[str] = None
    volume_24h: str = Field(default="0")
    volume_7d: str = Field(default="0")
    apr: Optional[float] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Swap(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    hash: str = Field(unique=True, index=True, max_length=100)  # chain event id
    pool_address: str = Field(max_length=64, index=True)
    sender: str = Field(max_length=64, index=True)
    token_in: str = Field(max_length=64)
    token_out: str = Field(max_length=64)
    amount_in: str
    amount_out: str
    ledger: int = Field(index=True)
    timestamp: datetime = Field(default_factory=utc_now, index=True)

    __table_args__ = (Index("ix_swap_pool_timestamp", "pool_address", "timestamp"),)


class LiquidityEvent(SQLModel, table=True):
    __tablename__ = "liquidity_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    hash: str = Field(unique=True, index=True, max_length=100)  # chain event id
    pool_address: str = Field(max_length=64, index=True)
    provider: str = Field(max_length=64, index=True)
    amount0: str
    amount1: str
    liquidity: str
    type: str = Field(max_length=16)  # LiquidityEventType value
    ledger: int = Field(index=True)
    timestamp: datetime = Field(default_factory=utc_now, index=True)
