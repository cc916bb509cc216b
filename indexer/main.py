"""
Process supervisor.

Startup order: validate configuration, connect to the database (and create
tables), initialise error tracking, wire the RPC client, StateManager,
EventIndexer and MetricsCalculator, start the Prometheus exporter, then run
until SIGINT/SIGTERM or a fatal persistence error.

Exit status: 0 on a signal-driven shutdown, 1 on configuration, startup or
fatal persistence errors.
"""

import asyncio
import signal
import sys
from typing import List, Optional

from indexer import __version__
from indexer.core.config import Settings, get_settings
from indexer.core.errors import ConfigurationError, capture_exception, error_boundary, init_sentry
from indexer.core.job_metrics import JobMetricsStore
from indexer.core.logging_config import get_logger
from indexer.core.metrics import start_exporter
from indexer.core.scheduler import build_scheduler
from indexer.db import check_db_connection, create_db_and_tables, make_engine
from indexer.services.event_indexer import EventIndexer, IndexedSource, make_breaker
from indexer.services.events import SourceKind
from indexer.services.heartbeat import Heartbeat
from indexer.services.metrics_calculator import MetricsCalculator
from indexer.services.rpc import SorobanRpcClient
from indexer.services.state_manager import StateManager

logger = get_logger(__name__)

TOKEN_FACTORY_SOURCE = "token_factory"
AMM_SOURCE = "amm_factory"


def build_sources(settings: Settings) -> List[IndexedSource]:
    """One source per configured contract, each with its own breaker."""
    configured = [(TOKEN_FACTORY_SOURCE, settings.TOKEN_FACTORY_CONTRACT_ID, SourceKind.TOKEN_FACTORY)]
    if settings.AMM_FACTORY_CONTRACT_ID:
        configured.append((AMM_SOURCE, settings.AMM_FACTORY_CONTRACT_ID, SourceKind.AMM))

    return [
        IndexedSource(
            source_id=source_id,
            contract_id=contract_id,
            kind=kind,
            breaker=make_breaker(
                source_id,
                failure_threshold=settings.CB_FAILURE_THRESHOLD,
                success_threshold=settings.CB_SUCCESS_THRESHOLD,
                timeout=settings.CB_TIMEOUT_SECONDS,
                max_delay=settings.CB_MAX_DELAY_SECONDS,
            ),
        )
        for source_id, contract_id, kind in configured
    ]


async def run(settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()

    try:
        settings.validate_required()
    except ConfigurationError as e:
        logger.error("Invalid configuration", setting=e.setting, error=str(e))
        return 1

    logger.info("=" * 50)
    logger.info(f"{settings.PROJECT_NAME} starting", version=__version__, environment=settings.ENVIRONMENT)
    logger.info("=" * 50)

    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT, release=__version__)

    engine = make_engine(settings.DATABASE_URL)
    try:
        await asyncio.to_thread(check_db_connection, engine)
        await asyncio.to_thread(create_db_and_tables, engine)
    except Exception as e:
        capture_exception(e, context={"operation": "database_startup"}, level="fatal")
        engine.dispose()
        return 1

    rpc = SorobanRpcClient(settings.STELLAR_RPC_URL, timeout=settings.RPC_TIMEOUT_SECONDS)
    state_manager = StateManager(engine, cache_size=settings.STATE_CACHE_SIZE)
    indexer = EventIndexer(
        rpc,
        state_manager,
        engine,
        build_sources(settings),
        poll_interval=settings.POLL_INTERVAL_SECONDS,
        batch_size=settings.BATCH_SIZE,
        start_ledger=settings.INDEXER_START_LEDGER,
        decode_error_policy=settings.DECODE_ERROR_POLICY,
        max_persistence_failures=settings.MAX_PERSISTENCE_FAILURES,
        shutdown_timeout=settings.SHUTDOWN_TIMEOUT_SECONDS,
    )
    job_metrics = JobMetricsStore()
    calculator = MetricsCalculator(engine, job_metrics)
    scheduler = build_scheduler(
        calculator,
        settings.METRICS_INTERVAL_SECONDS,
        heartbeat=Heartbeat(indexer, job_metrics),
        heartbeat_interval_seconds=settings.HEARTBEAT_INTERVAL_SECONDS,
    )

    if settings.METRICS_PORT:
        with error_boundary("start_metrics_exporter", port=settings.METRICS_PORT):
            start_exporter(settings.METRICS_PORT)
            logger.info("Metrics exporter listening", port=settings.METRICS_PORT)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, stop_requested, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.warning("Signal handlers unavailable", signal=sig.name)

    exit_code = 0
    try:
        scheduler.start()
        indexer.start()

        waiters = [
            asyncio.create_task(stop_requested.wait()),
            asyncio.create_task(indexer.fatal.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if indexer.fatal.is_set():
            logger.error("Fatal indexer error, shutting down", error=str(indexer.fatal_error))
            exit_code = 1
    finally:
        logger.info("Shutting down")
        scheduler.shutdown(wait=False)
        await indexer.stop()
        await rpc.aclose()
        engine.dispose()
        for sig in installed:
            loop.remove_signal_handler(sig)

    logger.info("Shutdown complete", exit_code=exit_code)
    return exit_code


def _request_stop(stop_requested: asyncio.Event, sig: signal.Signals) -> None:
    logger.info("Received signal, stopping", signal=sig.name)
    stop_requested.set()


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
