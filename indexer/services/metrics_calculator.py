"""
Periodic recomputation of derived aggregates.

Runs on its own schedule, separate from indexing, and only overwrites columns
it owns (token price/volume/holders, pool TVL/volume/APR, user level/rank).
Each calculation uses its own session and is isolated: one failing job is
reported and retried on the next tick without affecting the others.
"""

import asyncio
import math
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, func, select

from indexer.core.errors import ErrorHandler
from indexer.core.job_metrics import JobMetricsStore
from indexer.core.logging_config import get_logger
from indexer.core.metrics import record_metrics_calculation
from indexer.core.typing import as_utc, col, to_int, utc_now
from indexer.models import Pool, Swap, Token, Transaction, TransactionType, User

logger = get_logger(__name__)

AMM_FEE_BPS = 30
POINTS_PER_LEVEL_STEP = 100

_TRADE_TYPES = (TransactionType.TOKEN_BOUGHT.value, TransactionType.TOKEN_SOLD.value)


def level_for_points(points: int) -> int:
    """level = floor(sqrt(points / 100)) + 1"""
    return math.isqrt(max(points, 0) // POINTS_PER_LEVEL_STEP) + 1


def trade_price(xlm_amount: Optional[str], token_amount: Optional[str]) -> Optional[Decimal]:
    """XLM per token for one trade, None when the trade has no token side."""
    tokens = to_int(token_amount)
    if tokens <= 0:
        return None
    try:
        return Decimal(to_int(xlm_amount)) / Decimal(tokens)
    except InvalidOperation:
        return None


def pool_apr(volume_24h: int, tvl: int) -> Optional[float]:
    """Fee APR in percent: 24h fees annualised over TVL."""
    if tvl <= 0:
        return None
    daily_fees = Decimal(volume_24h) * AMM_FEE_BPS / Decimal(10_000)
    return float(daily_fees * 365 / Decimal(tvl) * 100)


def _last_trade_price(
    session: Session, token_address: str, at_or_before: Optional[datetime] = None
) -> Optional[Decimal]:
    """Price of the most recent trade with a token side, optionally no later than `at_or_before`."""
    query = (
        select(Transaction)
        .where(Transaction.token_address == token_address)
        .where(col(Transaction.type).in_(_TRADE_TYPES))
        .where(col(Transaction.amount) != "0")
        .order_by(col(Transaction.timestamp).desc(), col(Transaction.ledger).desc(), col(Transaction.id).desc())
        .limit(1)
    )
    if at_or_before is not None:
        query = query.where(col(Transaction.timestamp) <= at_or_before)
    trade = session.exec(query).first()
    return trade_price(trade.xlm_amount, trade.amount) if trade else None


class MetricsCalculator:
    def __init__(self, engine: Engine, job_metrics: Optional[JobMetricsStore] = None):
        self.engine = engine
        self.job_metrics = job_metrics or JobMetricsStore()

    # ============== Scheduling entry points ==============

    async def run(self) -> Dict[str, bool]:
        """Scheduler entry point; keeps database work off the event loop."""
        return await asyncio.to_thread(self.calculate_all)

    def calculate_all(self, now: Optional[datetime] = None) -> Dict[str, bool]:
        """
        Run every calculation once.

        Never raises for a failing calculation; returns job name -> success.
        """
        now = now or utc_now()
        jobs: List[Tuple[str, Callable[[datetime], int]]] = [
            ("token_metrics", self.calculate_token_metrics),
            ("pool_metrics", self.calculate_pool_metrics),
            ("user_levels", self.calculate_user_levels),
            ("leaderboard", self.calculate_leaderboard),
        ]

        results = {}
        for name, job in jobs:
            results[name] = self._run_job(name, job, now)

        failed = [name for name, ok in results.items() if not ok]
        if failed:
            logger.warning("Metrics calculation finished with failures", failed_jobs=failed)
        else:
            logger.info("Metrics calculation complete")
        return results

    def _run_job(self, name: str, job: Callable[[datetime], int], now: datetime) -> bool:
        self.job_metrics.record_start(name)
        started = time.perf_counter()
        updated = 0

        with ErrorHandler(f"metrics_{name}", context={"job": name}) as handler:
            updated = job(now)

        duration = time.perf_counter() - started
        ok = handler.error is None
        record_metrics_calculation(name, ok, duration)
        self.job_metrics.record_complete(
            name,
            items_processed=updated,
            successful=updated if ok else 0,
            failed=0 if ok else 1,
            error=str(handler.error) if handler.error else None,
        )
        if ok:
            logger.debug("Metrics job complete", job=name, updated=updated, duration_ms=round(duration * 1000, 1))
        return ok

    # ============== Calculations ==============

    def calculate_token_metrics(self, now: datetime) -> int:
        """Volumes, price, market cap, 24h change and holder count per token."""
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)
        updated = 0

        with Session(self.engine) as session:
            tokens = session.exec(select(Token)).all()
            for token in tokens:
                recent = session.exec(
                    select(Transaction)
                    .where(Transaction.token_address == token.address)
                    .where(col(Transaction.type).in_(_TRADE_TYPES))
                    .where(col(Transaction.timestamp) >= week_ago)
                ).all()

                volume_7d = sum(to_int(t.xlm_amount) for t in recent)
                volume_24h = sum(to_int(t.xlm_amount) for t in recent if as_utc(t.timestamp) >= day_ago)
                holders = session.exec(
                    select(func.count(func.distinct(Transaction.from_address)))
                    .where(Transaction.token_address == token.address)
                    .where(Transaction.type == TransactionType.TOKEN_BOUGHT.value)
                ).one()
                latest_price = _last_trade_price(session, token.address)
                price_24h_ago = _last_trade_price(session, token.address, at_or_before=day_ago)

                token.volume_24h = str(volume_24h)
                token.volume_7d = str(volume_7d)
                token.holders = holders
                if latest_price is not None:
                    token.current_price = str(latest_price)
                    token.market_cap = str(int(Decimal(to_int(token.circulating_supply)) * latest_price))
                    if price_24h_ago:
                        token.price_change_24h = float((latest_price - price_24h_ago) / price_24h_ago * 100)
                    else:
                        token.price_change_24h = None
                session.add(token)
                updated += 1

            session.commit()
        return updated

    def calculate_pool_metrics(self, now: datetime) -> int:
        """Swap volumes, TVL and fee APR per pool."""
        day_ago = now - timedelta(hours=24)
        week_ago = now - timedelta(days=7)
        updated = 0

        with Session(self.engine) as session:
            pools = session.exec(select(Pool)).all()
            for pool in pools:
                swaps = session.exec(
                    select(Swap).where(Swap.pool_address == pool.address).where(col(Swap.timestamp) >= week_ago)
                ).all()

                volume_24h = sum(to_int(s.amount_in) for s in swaps if as_utc(s.timestamp) >= day_ago)
                volume_7d = sum(to_int(s.amount_in) for s in swaps)
                # Both sides valued 1:1 in XLM
                tvl = to_int(pool.reserve0) + to_int(pool.reserve1)

                pool.volume_24h = str(volume_24h)
                pool.volume_7d = str(volume_7d)
                pool.tvl = str(tvl)
                pool.apr = pool_apr(volume_24h, tvl)
                session.add(pool)
                updated += 1

            session.commit()
        return updated

    def calculate_user_levels(self, now: datetime) -> int:
        updated = 0
        with Session(self.engine) as session:
            for user in session.exec(select(User)).all():
                level = level_for_points(user.points)
                if user.level != level:
                    user.level = level
                    user.updated_at = now
                    session.add(user)
                    updated += 1
            session.commit()
        return updated

    def calculate_leaderboard(self, now: datetime) -> int:
        """Rank users 1..n by points, ties broken by address."""
        updated = 0
        with Session(self.engine) as session:
            users = session.exec(select(User).order_by(col(User.points).desc(), col(User.address))).all()
            for rank, user in enumerate(users, start=1):
                if user.rank != rank:
                    user.rank = rank
                    session.add(user)
                    updated += 1
            session.commit()
        return updated
