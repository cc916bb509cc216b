from .indexer_state import IndexerState
from .token import Token, Transaction, TransactionType
from .pool import Pool, Swap, LiquidityEvent, LiquidityEventType
from .user import User
from .skipped_event import SkippedEvent

__all__ = [
    "IndexerState",
    "Token",
    "Transaction",
    "TransactionType",
    "Pool",
    "Swap",
    "LiquidityEvent",
    "LiquidityEventType",
    "User",
    "SkippedEvent",
]
