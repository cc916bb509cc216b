from enum import Enum
from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel
from sqlalchemy import Index

from indexer.core.typing import utc_now


class TransactionType(str, Enum):
    TOKEN_CREATED = "TOKEN_CREATED"
    TOKEN_BOUGHT = "TOKEN_BOUGHT"
    TOKEN_SOLD = "TOKEN_SOLD"
    TOKEN_GRADUATED = "TOKEN_GRADUATED"


class Token(SQLModel, table=True):
    """
    A launchpad token created by the token factory.

    Amount columns hold i128 stroop values as base-10 strings (7 decimals).
    Trade-driven fields are maintained by event application; price, market cap,
    volumes and holders are recomputed by the metrics calculator.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    address: str = Field(unique=True, index=True, max_length=64)
    creator: str = Field(default="", max_length=64, index=True)
    name: str = Field(default="")
    symbol: str = Field(default="", max_length=32)
    decimals: int = Field(default=7)

    total_supply: str = Field(default="0")
    circulating_supply: str = Field(default="0")
    xlm_reserve: str = Field(default="0")
    xlm_raised: str = Field(default="0")
    graduated: bool = Field(default=False)

    # Derived (metrics calculator)
    current_price: Optional[str] = None  # XLM per token, decimal string
    market_cap: Optional[str] = None  # stroops
    price_change_24h: Optional[float] = None  # percent
    volume_24h: str = Field(default="0")
    volume_7d: str = Field(default="0")
    holders: int = Field(default=0)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Transaction(SQLModel, table=True):
    """
    One row per token-factory event. `hash` is the chain event id and is the
    natural key that makes re-application a no-op.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    hash: str = Field(unique=True, index=True, max_length=100)
    type: str = Field(max_length=32, index=True)  # TransactionType value
    from_address: str = Field(default="", max_length=64, index=True)
    token_address: str = Field(max_length=64, index=True)
    amount: Optional[str] = None  # token amount (stroops)
    xlm_amount: Optional[str] = None  # XLM side of a trade (stroops)
    status: str = Field(default="SUCCESS", max_length=16)
    ledger: int = Field(index=True)
    tx_hash: Optional[str] = Field(default=None, max_length=100)
    timestamp: datetime = Field(default_factory=utc_now, index=True)

    # Metrics calculator scans trades per token over a time window
    __table_args__ = (Index("ix_transaction_token_type_timestamp", "token_address", "type", "timestamp"),)
