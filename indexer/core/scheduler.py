from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from indexer.core.logging_config import get_logger

logger = get_logger(__name__)

METRICS_JOB_ID = "job_calculate_metrics"
HEARTBEAT_JOB_ID = "job_heartbeat"


def build_scheduler(
    metrics_calculator,
    interval_seconds: int = 60,
    heartbeat=None,
    heartbeat_interval_seconds: int = 300,
) -> AsyncIOScheduler:
    """
    Scheduler for the derived-metrics job and, when given, the health
    heartbeat. The caller starts and shuts it down.

    Job configuration:
    - max_instances=1: a slow calculation never overlaps the next tick
    - misfire_grace_time: a late tick still runs if within one interval
    - coalesce=True: missed ticks collapse into one run
    """
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        metrics_calculator.run,
        IntervalTrigger(seconds=interval_seconds),
        id=METRICS_JOB_ID,
        max_instances=1,
        misfire_grace_time=interval_seconds,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("Metrics job scheduled", job_id=METRICS_JOB_ID, interval_seconds=interval_seconds)

    if heartbeat is not None:
        scheduler.add_job(
            heartbeat.run,
            IntervalTrigger(seconds=heartbeat_interval_seconds),
            id=HEARTBEAT_JOB_ID,
            max_instances=1,
            misfire_grace_time=heartbeat_interval_seconds,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("Heartbeat scheduled", job_id=HEARTBEAT_JOB_ID, interval_seconds=heartbeat_interval_seconds)
    return scheduler
