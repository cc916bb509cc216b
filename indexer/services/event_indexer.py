"""
Poll, decode, apply and checkpoint loop, one task per source.

Cycle for a source:
1. Read the checkpoint (position P, event id E) from the StateManager.
2. Fetch the next page of events after (P, E) through the source's circuit
   breaker. A rejected or failed fetch skips the cycle without touching the
   checkpoint.
3. Decode the page. Undecodable events are dead-lettered ("skip") or stop the
   batch just before them ("halt").
4. Apply the batch in one database transaction.
5. Only after commit, move the checkpoint to the last handled event.

Sleeping between cycles waits on the stop event, so stop() interrupts the
sleep but never an in-flight cycle.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session

from indexer.core.circuit_breaker import CircuitBreaker, CircuitState
from indexer.core.errors import (
    CircuitOpenError,
    EventApplyError,
    EventDecodeError,
    PersistenceUnavailableError,
    capture_exception,
    capture_message,
)
from indexer.core.logging_config import get_logger
from indexer.core.metrics import (
    record_batch_processed,
    record_circuit_breaker_trip,
    record_event_failed,
    record_event_processed,
    record_event_received,
    set_circuit_breaker_state,
)
from indexer.services.events import (
    DomainEvent,
    SourceKind,
    decode_event,
    event_type_name,
    page_frontier,
    parse_closed_at,
    raw_event_type,
    select_new_events,
)
from indexer.services.handlers import apply_event, record_skipped_event
from indexer.services.rpc import EventPage, SorobanRpcClient, validate_events
from indexer.services.state_manager import Checkpoint, StateManager

logger = get_logger(__name__)

DECODE_SKIP = "skip"
DECODE_HALT = "halt"

# CycleResult.status values
STATUS_OK = "ok"  # events applied and checkpointed
STATUS_IDLE = "idle"  # nothing new
STATUS_SKIPPED = "skipped"  # fetch rejected or failed, checkpoint untouched
STATUS_FAILED = "failed"  # apply or checkpoint failed, batch will be retried
STATUS_HALTED = "halted"  # decode policy "halt" stopped at an undecodable event


@dataclass
class IndexedSource:
    source_id: str
    contract_id: str
    kind: SourceKind
    breaker: CircuitBreaker


@dataclass
class CycleResult:
    source_id: str
    status: str
    fetched: int = 0
    applied: int = 0
    skipped_events: int = 0
    checkpoint: Optional[str] = None
    latest_ledger: Optional[int] = None
    catching_up: bool = False
    error: Optional[str] = None
    finished_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def make_breaker(
    source_id: str,
    failure_threshold: int = 5,
    success_threshold: int = 2,
    timeout: float = 30.0,
    max_delay: float = 300.0,
) -> CircuitBreaker:
    """Breaker for one source's RPC calls, reporting transitions to logs and gauges."""
    breaker = CircuitBreaker(
        name=source_id,
        failure_threshold=failure_threshold,
        success_threshold=success_threshold,
        timeout=timeout,
        max_delay=max_delay,
    )

    def on_state_change(name: str, old: CircuitState, new: CircuitState) -> None:
        set_circuit_breaker_state(name, new, breaker.failure_count)
        if new == CircuitState.OPEN:
            record_circuit_breaker_trip(name)
            logger.warning(
                "Circuit breaker opened",
                source_id=name,
                from_state=old.value,
                retry_in_seconds=breaker.current_delay,
                failure_count=breaker.failure_count,
            )
        else:
            logger.info("Circuit breaker state changed", source_id=name, from_state=old.value, to_state=new.value)

    breaker.on_state_change = on_state_change
    set_circuit_breaker_state(source_id, breaker.state, 0)
    return breaker


@dataclass
class _Batch:
    events: List[DomainEvent] = field(default_factory=list)
    skipped: List[EventDecodeError] = field(default_factory=list)
    # (ledger, event_id, closed_at) of the last event the batch accounts for
    last: Optional[Tuple[int, str, Optional[datetime]]] = None
    halted_on: Optional[EventDecodeError] = None


class EventIndexer:
    def __init__(
        self,
        rpc: SorobanRpcClient,
        state_manager: StateManager,
        engine: Engine,
        sources: Sequence[IndexedSource],
        poll_interval: float = 5.0,
        batch_size: int = 100,
        start_ledger: Optional[int] = None,
        decode_error_policy: str = DECODE_SKIP,
        max_persistence_failures: int = 10,
        shutdown_timeout: float = 30.0,
    ):
        if decode_error_policy not in (DECODE_SKIP, DECODE_HALT):
            raise ValueError(f"Unknown decode error policy: {decode_error_policy}")

        self.rpc = rpc
        self.state_manager = state_manager
        self.engine = engine
        self.sources = {source.source_id: source for source in sources}
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.start_ledger = start_ledger
        self.decode_error_policy = decode_error_policy
        self.max_persistence_failures = max_persistence_failures
        self.shutdown_timeout = shutdown_timeout

        # Set when a source gives up on persistence; the supervisor waits on it
        self.fatal = asyncio.Event()
        self.fatal_error: Optional[BaseException] = None

        self._stop_event = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_results: Dict[str, CycleResult] = {}
        self._persistence_failures: Dict[str, int] = {source_id: 0 for source_id in self.sources}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    # ============== Lifecycle ==============

    def start(self) -> None:
        """Start one polling task per source and return immediately."""
        if self.running:
            logger.warning("Event indexer already running")
            return

        self._stop_event.clear()
        for source in self.sources.values():
            self._tasks[source.source_id] = asyncio.create_task(
                self._run_source(source), name=f"indexer:{source.source_id}"
            )
        logger.info(
            "Event indexer started",
            sources=list(self.sources),
            poll_interval=self.poll_interval,
            batch_size=self.batch_size,
            decode_error_policy=self.decode_error_policy,
        )

    async def stop(self) -> None:
        """
        Stop scheduling cycles and wait for in-flight ones to reach their
        checkpoint. Tasks still running after `shutdown_timeout` are cancelled.
        """
        self._stop_event.set()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
            for task in pending:
                logger.warning("Cancelling indexer task after shutdown timeout", task=task.get_name())
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Event indexer stopped")

    async def _run_source(self, source: IndexedSource) -> None:
        while not self._stop_event.is_set():
            try:
                result = await self.run_cycle(source.source_id)
            except PersistenceUnavailableError as e:
                capture_exception(e, context={"source_id": source.source_id}, level="fatal")
                self.fatal_error = e
                self.fatal.set()
                return
            except Exception as e:
                capture_exception(e, context={"operation": "run_cycle", "source_id": source.source_id})
                result = CycleResult(source_id=source.source_id, status=STATUS_FAILED, error=str(e))
                self._last_results[source.source_id] = result

            if result.catching_up and result.status == STATUS_OK:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ============== One cycle ==============

    async def run_cycle(self, source_id: str) -> CycleResult:
        """
        Run one poll/decode/apply/checkpoint cycle for a source.

        Raises:
            PersistenceUnavailableError: the store failed `max_persistence_failures`
                cycles in a row for this source.
        """
        source = self.sources[source_id]
        with structlog.contextvars.bound_contextvars(source_id=source_id):
            result = await self._cycle(source)
        self._last_results[source_id] = result
        return result

    async def _cycle(self, source: IndexedSource) -> CycleResult:
        source_id = source.source_id

        try:
            checkpoint = await asyncio.to_thread(self.state_manager.get_state, source_id)
        except DBAPIError as e:
            return self._persistence_failed(source_id, e, checkpoint=None)

        # Fetch
        try:
            page, position, last_event_id = await self._fetch(source, checkpoint)
        except CircuitOpenError as e:
            logger.info("Fetch rejected by open circuit", retry_after_ms=e.retry_after_ms)
            return CycleResult(
                source_id=source_id,
                status=STATUS_SKIPPED,
                checkpoint=checkpoint.last_position if checkpoint else None,
                error=str(e),
            )
        except Exception as e:
            logger.warning(
                "Event fetch failed, will retry",
                error=str(e),
                error_type=type(e).__name__,
                failure_count=source.breaker.failure_count,
            )
            return CycleResult(
                source_id=source_id,
                status=STATUS_SKIPPED,
                checkpoint=checkpoint.last_position if checkpoint else None,
                error=str(e),
            )
        finally:
            set_circuit_breaker_state(source_id, source.breaker.state, source.breaker.failure_count)

        catching_up = len(page.events) >= self.batch_size
        new_events = select_new_events(page.events, position, last_event_id)
        for raw in new_events:
            record_event_received(source_id, raw_event_type(raw) or "unknown")

        batch = self._decode(source, new_events)
        current = checkpoint.last_position if checkpoint else None

        if batch.last is None:
            if batch.halted_on is not None:
                self._alert_halt(batch.halted_on)
                return CycleResult(
                    source_id=source_id,
                    status=STATUS_HALTED,
                    fetched=len(new_events),
                    checkpoint=current,
                    latest_ledger=page.latest_ledger,
                    error=str(batch.halted_on),
                )

            frontier = page_frontier(page.events)
            if frontier is not None and frontier[:2] > (position, last_event_id or ""):
                # Every event in the page was dropped; step past them or the next fetch repeats the page
                ledger, event_id, closed_at = frontier
                written = await self._write_checkpoint(source_id, ledger, event_id, closed_at)
                if written is None:
                    return self._persistence_failed(source_id, None, checkpoint=current)
                self._persistence_failures[source_id] = 0
                logger.info("Skipped page with no indexable events", dropped=len(page.events), checkpoint=written)
                return CycleResult(
                    source_id=source_id,
                    status=STATUS_OK,
                    checkpoint=written,
                    latest_ledger=page.latest_ledger,
                    catching_up=catching_up,
                )

            if checkpoint is None:
                # First successful poll: record where this source starts
                current = await self._write_checkpoint(source_id, position, None, None)
                if current is None:
                    return self._persistence_failed(source_id, None, checkpoint=None)
            self._persistence_failures[source_id] = 0
            return CycleResult(
                source_id=source_id,
                status=STATUS_IDLE,
                checkpoint=current,
                latest_ledger=page.latest_ledger,
                catching_up=catching_up,
            )

        # Apply
        started = time.perf_counter()
        try:
            applied = await asyncio.to_thread(self.apply_batch, source_id, batch.events, batch.skipped)
        except EventApplyError as e:
            if isinstance(e.cause, DBAPIError):
                return self._persistence_failed(source_id, e, checkpoint=current, fetched=len(new_events))
            capture_exception(
                e,
                context={
                    "source_id": source_id,
                    "position": getattr(e.event, "position", None),
                    "event_id": getattr(e.event, "event_id", None),
                },
            )
            for event in batch.events:
                record_event_failed(source_id, event_type_name(event), "apply_error")
            return CycleResult(
                source_id=source_id,
                status=STATUS_FAILED,
                fetched=len(new_events),
                checkpoint=current,
                latest_ledger=page.latest_ledger,
                error=str(e),
            )
        except DBAPIError as e:
            return self._persistence_failed(source_id, e, checkpoint=current, fetched=len(new_events))
        duration = time.perf_counter() - started

        # Checkpoint, only after the batch committed
        ledger, event_id, closed_at = batch.last
        written = await self._write_checkpoint(source_id, ledger, event_id, closed_at)
        if written is None:
            return self._persistence_failed(source_id, None, checkpoint=current, fetched=len(new_events))

        self._persistence_failures[source_id] = 0
        record_batch_processed(source_id, len(batch.events) + len(batch.skipped), duration)
        for event in batch.events:
            record_event_processed(source_id, event_type_name(event))

        logger.info(
            "Batch indexed",
            fetched=len(new_events),
            applied=applied,
            skipped_events=len(batch.skipped),
            checkpoint=written,
            latest_ledger=page.latest_ledger,
            duration_ms=round(duration * 1000, 1),
        )

        if batch.halted_on is not None:
            self._alert_halt(batch.halted_on)
            return CycleResult(
                source_id=source_id,
                status=STATUS_HALTED,
                fetched=len(new_events),
                applied=applied,
                skipped_events=len(batch.skipped),
                checkpoint=written,
                latest_ledger=page.latest_ledger,
                error=str(batch.halted_on),
            )

        return CycleResult(
            source_id=source_id,
            status=STATUS_OK,
            fetched=len(new_events),
            applied=applied,
            skipped_events=len(batch.skipped),
            checkpoint=written,
            latest_ledger=page.latest_ledger,
            catching_up=catching_up,
        )

    async def _fetch(
        self, source: IndexedSource, checkpoint: Optional[Checkpoint]
    ) -> Tuple[EventPage, int, Optional[str]]:
        """Fetch the page after the checkpoint. Returns (page, position, last_event_id)."""
        breaker = source.breaker

        async def fetch_page(**kwargs: Any) -> EventPage:
            page = await self.rpc.get_events(source.contract_id, limit=self.batch_size, **kwargs)
            # Inside the breaker so a malformed page counts as a failure
            validate_events(page.events)
            return page

        if checkpoint is not None and checkpoint.last_event_id:
            position = int(checkpoint.last_position)
            page = await breaker.execute(lambda: fetch_page(cursor=checkpoint.last_event_id))
            return page, position, checkpoint.last_event_id

        if checkpoint is not None:
            position = int(checkpoint.last_position)
            start = max(position, 1)
        else:
            if self.start_ledger is not None:
                start = self.start_ledger
            else:
                start = await breaker.execute(self.rpc.get_latest_ledger)
            # Never indexed: everything from `start` on is new
            position = start - 1

        page = await breaker.execute(lambda: fetch_page(start_ledger=start))
        return page, position, None

    def _decode(self, source: IndexedSource, raw_events: Iterable[Dict[str, Any]]) -> _Batch:
        batch = _Batch()
        for raw in raw_events:
            try:
                event = decode_event(raw, source.source_id, source.kind)
            except EventDecodeError as e:
                record_event_failed(source.source_id, e.event_type or "unknown", "decode_error")
                if self.decode_error_policy == DECODE_HALT:
                    batch.halted_on = e
                    break
                capture_exception(e, context={"decode_error_policy": DECODE_SKIP, **e.context()})
                batch.skipped.append(e)
                batch.last = (int(raw["ledger"]), str(e.event_id), parse_closed_at(raw.get("ledgerClosedAt")))
                continue

            batch.events.append(event)
            batch.last = (event.ledger, event.event_id, event.closed_at)
        return batch

    def apply_batch(
        self,
        source_id: str,
        events: Sequence[DomainEvent],
        skipped: Sequence[EventDecodeError] = (),
    ) -> int:
        """
        Apply decoded events and dead-letter rows in one transaction.

        Returns the number of events that wrote rows (replayed ones are no-ops).

        Raises:
            EventApplyError: an event failed to apply; nothing was committed.
        """
        applied = 0
        with Session(self.engine) as session:
            for event in events:
                try:
                    if apply_event(event, session):
                        applied += 1
                except Exception as e:
                    session.rollback()
                    raise EventApplyError(event, e) from e

            for error in skipped:
                record_skipped_event(session, error, source_id)

            session.commit()
        return applied

    async def _write_checkpoint(
        self,
        source_id: str,
        ledger: int,
        event_id: Optional[str],
        closed_at: Optional[datetime],
    ) -> Optional[str]:
        position = str(ledger)
        ok = await asyncio.to_thread(self.state_manager.update_position, source_id, position, event_id, closed_at)
        return position if ok else None

    def _persistence_failed(
        self,
        source_id: str,
        error: Optional[BaseException],
        checkpoint: Optional[str],
        fetched: int = 0,
    ) -> CycleResult:
        failures = self._persistence_failures.get(source_id, 0) + 1
        self._persistence_failures[source_id] = failures

        logger.error(
            "Persistence failed, batch will be retried",
            error=str(error) if error else "checkpoint write failed",
            consecutive_failures=failures,
            max_failures=self.max_persistence_failures,
        )
        if failures >= self.max_persistence_failures:
            cause = error.cause if isinstance(error, EventApplyError) else error
            raise PersistenceUnavailableError(source_id, failures, cause)

        return CycleResult(
            source_id=source_id,
            status=STATUS_FAILED,
            fetched=fetched,
            checkpoint=checkpoint,
            error=str(error) if error else "checkpoint write failed",
        )

    def _alert_halt(self, error: EventDecodeError) -> None:
        capture_message(
            "Indexing halted at undecodable event",
            level="error",
            context={"decode_error_policy": DECODE_HALT, "error": str(error), **error.context()},
            tags={"source_id": error.source_id or ""},
        )

    # ============== Status ==============

    def get_status(self) -> Dict[str, Any]:
        sources = {}
        for source_id, source in self.sources.items():
            last = self._last_results.get(source_id)
            sources[source_id] = {
                "contract_id": source.contract_id,
                "kind": source.kind.value,
                "circuit_breaker": source.breaker.get_stats(),
                "last_cycle": last.to_dict() if last else None,
                "persistence_failures": self._persistence_failures.get(source_id, 0),
            }

        healthy = all(source.breaker.state == CircuitState.CLOSED for source in self.sources.values())
        return {
            "running": self.running,
            "health": "healthy" if healthy else "degraded",
            "decode_error_policy": self.decode_error_policy,
            "sources": sources,
            "state_cache": self.state_manager.get_cache_stats(),
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
        }
