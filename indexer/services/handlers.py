"""
Mapping of decoded events onto the store.

One function per event variant, registered on `apply_event`. Every mapping
first looks up the row keyed by the chain event id; when it already exists the
event was applied by an earlier (uncheckpointed) attempt and is skipped. That
makes replaying a batch from its start a no-op for the events already applied.

Functions only add/modify rows on the given session. Committing is the
caller's job, so a batch is applied all-or-nothing.
"""

from datetime import datetime
from functools import singledispatch
from typing import Optional

from sqlmodel import Session, select

from indexer.core.errors import EventDecodeError
from indexer.core.typing import add_amount, sub_amount, utc_now
from indexer.models import (
    LiquidityEvent,
    LiquidityEventType,
    Pool,
    SkippedEvent,
    Swap,
    Token,
    Transaction,
    TransactionType,
    User,
)
from indexer.services.events import (
    EventBase,
    LiquidityAdded,
    LiquidityRemoved,
    SwapExecuted,
    TokenBought,
    TokenCreated,
    TokenGraduated,
    TokenSold,
)

STROOPS_PER_XLM = 10_000_000
TOKEN_CREATED_POINTS = 100
LIQUIDITY_ADDED_POINTS = 10


def trade_points(xlm_amount: int) -> int:
    """1 point per whole XLM traded."""
    return xlm_amount // STROOPS_PER_XLM


def _event_time(event: EventBase) -> datetime:
    return event.closed_at or utc_now()


def _get_or_create_user(session: Session, address: str) -> User:
    user = session.exec(select(User).where(User.address == address)).first()
    if user is None:
        user = User(address=address)
        session.add(user)
    return user


def _get_or_create_token(session: Session, address: str) -> Token:
    # Trades can be seen before `created` when indexing starts mid-history
    token = session.exec(select(Token).where(Token.address == address)).first()
    if token is None:
        token = Token(address=address)
        session.add(token)
    return token


def _get_or_create_pool(session: Session, address: str) -> Pool:
    pool = session.exec(select(Pool).where(Pool.address == address)).first()
    if pool is None:
        pool = Pool(address=address)
        session.add(pool)
    return pool


def _transaction_exists(session: Session, event_id: str) -> bool:
    return session.exec(select(Transaction.id).where(Transaction.hash == event_id)).first() is not None


def _credit_trade(session: Session, address: str, xlm_amount: int, now: datetime) -> None:
    user = _get_or_create_user(session, address)
    user.points += trade_points(xlm_amount)
    user.total_volume_traded = add_amount(user.total_volume_traded, xlm_amount)
    user.updated_at = now


@singledispatch
def apply_event(event: EventBase, session: Session) -> bool:
    """
    Apply one decoded event.

    Returns:
        True if rows were written, False if the event was already applied.
    """
    raise TypeError(f"No mapping registered for {type(event).__name__}")


@apply_event.register
def _(event: TokenCreated, session: Session) -> bool:
    if _transaction_exists(session, event.event_id):
        return False
    now = _event_time(event)

    token = _get_or_create_token(session, event.token)
    token.creator = event.creator
    token.name = event.name
    token.symbol = event.symbol
    token.created_at = now
    token.updated_at = now

    user = _get_or_create_user(session, event.creator)
    user.tokens_created_count += 1
    user.points += TOKEN_CREATED_POINTS
    user.updated_at = now

    session.add(
        Transaction(
            hash=event.event_id,
            type=TransactionType.TOKEN_CREATED.value,
            from_address=event.creator,
            token_address=event.token,
            ledger=event.ledger,
            tx_hash=event.tx_hash,
            timestamp=now,
        )
    )
    return True


@apply_event.register
def _(event: TokenBought, session: Session) -> bool:
    if _transaction_exists(session, event.event_id):
        return False
    now = _event_time(event)

    token = _get_or_create_token(session, event.token)
    token.xlm_raised = add_amount(token.xlm_raised, event.xlm_amount)
    token.xlm_reserve = add_amount(token.xlm_reserve, event.xlm_amount)
    token.circulating_supply = add_amount(token.circulating_supply, event.tokens_received)
    token.updated_at = now

    _credit_trade(session, event.buyer, event.xlm_amount, now)

    session.add(
        Transaction(
            hash=event.event_id,
            type=TransactionType.TOKEN_BOUGHT.value,
            from_address=event.buyer,
            token_address=event.token,
            amount=str(event.tokens_received),
            xlm_amount=str(event.xlm_amount),
            ledger=event.ledger,
            tx_hash=event.tx_hash,
            timestamp=now,
        )
    )
    return True


@apply_event.register
def _(event: TokenSold, session: Session) -> bool:
    if _transaction_exists(session, event.event_id):
        return False
    now = _event_time(event)

    token = _get_or_create_token(session, event.token)
    token.xlm_reserve = sub_amount(token.xlm_reserve, event.xlm_received)
    token.circulating_supply = sub_amount(token.circulating_supply, event.tokens_sold)
    token.updated_at = now

    _credit_trade(session, event.seller, event.xlm_received, now)

    session.add(
        Transaction(
            hash=event.event_id,
            type=TransactionType.TOKEN_SOLD.value,
            from_address=event.seller,
            token_address=event.token,
            amount=str(event.tokens_sold),
            xlm_amount=str(event.xlm_received),
            ledger=event.ledger,
            tx_hash=event.tx_hash,
            timestamp=now,
        )
    )
    return True


@apply_event.register
def _(event: TokenGraduated, session: Session) -> bool:
    if _transaction_exists(session, event.event_id):
        return False
    now = _event_time(event)

    token = _get_or_create_token(session, event.token)
    token.graduated = True
    token.xlm_raised = str(event.xlm_raised)
    token.updated_at = now

    session.add(
        Transaction(
            hash=event.event_id,
            type=TransactionType.TOKEN_GRADUATED.value,
            from_address=token.creator,
            token_address=event.token,
            xlm_amount=str(event.xlm_raised),
            ledger=event.ledger,
            tx_hash=event.tx_hash,
            timestamp=now,
        )
    )
    return True


def _apply_liquidity(event, session: Session, kind: LiquidityEventType) -> bool:
    existing = session.exec(select(LiquidityEvent.id).where(LiquidityEvent.hash == event.event_id)).first()
    if existing is not None:
        return False
    now = _event_time(event)

    pool = _get_or_create_pool(session, event.pool)
    if kind == LiquidityEventType.ADD:
        pool.reserve0 = add_amount(pool.reserve0, event.amount0)
        pool.reserve1 = add_amount(pool.reserve1, event.amount1)
        pool.total_supply = add_amount(pool.total_supply, event.liquidity)

        user = _get_or_create_user(session, event.provider)
        user.points += LIQUIDITY_ADDED_POINTS
        user.total_liquidity_provided = add_amount(user.total_liquidity_provided, event.liquidity)
        user.updated_at = now
    else:
        pool.reserve0 = sub_amount(pool.reserve0, event.amount0)
        pool.reserve1 = sub_amount(pool.reserve1, event.amount1)
        pool.total_supply = sub_amount(pool.total_supply, event.liquidity)
    pool.updated_at = now

    session.add(
        LiquidityEvent(
            hash=event.event_id,
            pool_address=event.pool,
            provider=event.provider,
            amount0=str(event.amount0),
            amount1=str(event.amount1),
            liquidity=str(event.liquidity),
            type=kind.value,
            ledger=event.ledger,
            timestamp=now,
        )
    )
    return True


@apply_event.register
def _(event: LiquidityAdded, session: Session) -> bool:
    return _apply_liquidity(event, session, LiquidityEventType.ADD)


@apply_event.register
def _(event: LiquidityRemoved, session: Session) -> bool:
    return _apply_liquidity(event, session, LiquidityEventType.REMOVE)


@apply_event.register
def _(event: SwapExecuted, session: Session) -> bool:
    if session.exec(select(Swap.id).where(Swap.hash == event.event_id)).first() is not None:
        return False
    now = _event_time(event)

    pool = _get_or_create_pool(session, event.pool)
    pool.updated_at = now

    _credit_trade(session, event.sender, event.amount_in, now)

    session.add(
        Swap(
            hash=event.event_id,
            pool_address=event.pool,
            sender=event.sender,
            token_in=event.token_in,
            token_out=event.token_out,
            amount_in=str(event.amount_in),
            amount_out=str(event.amount_out),
            ledger=event.ledger,
            timestamp=now,
        )
    )
    return True


def record_skipped_event(session: Session, error: EventDecodeError, source_id: Optional[str] = None) -> bool:
    """
    Write the dead-letter row for an undecodable event.

    Returns False if the event was already recorded by an earlier attempt.
    """
    event_id = error.event_id or ""
    existing = session.exec(select(SkippedEvent.id).where(SkippedEvent.event_id == event_id)).first()
    if existing is not None:
        return False
    session.add(
        SkippedEvent(
            source_id=source_id or error.source_id or "",
            position=error.position or "",
            event_id=event_id,
            event_type=error.event_type,
            raw_payload=error.raw,
            error=str(error)[:1000],
        )
    )
    return True
