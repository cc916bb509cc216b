"""
Periodic health report for the running process.

Combines EventIndexer.get_status() with the derived-metrics run history and
logs it: INFO when healthy, WARNING plus a Sentry message when a breaker is
not CLOSED, a source is halted, or a metrics job is failing.
"""

from typing import Any, Dict

from indexer.core.errors import capture_message
from indexer.core.job_metrics import JobMetricsStore
from indexer.core.logging_config import get_logger
from indexer.services.event_indexer import STATUS_HALTED, EventIndexer

logger = get_logger(__name__)


class Heartbeat:
    def __init__(self, indexer: EventIndexer, job_metrics: JobMetricsStore):
        self.indexer = indexer
        self.job_metrics = job_metrics

    def check(self) -> Dict[str, Any]:
        status = self.indexer.get_status()
        jobs = self.job_metrics.get_summary()

        halted = [
            source_id
            for source_id, source in status["sources"].items()
            if source["last_cycle"] and source["last_cycle"]["status"] == STATUS_HALTED
        ]
        healthy = status["health"] == "healthy" and not halted and jobs["failing_jobs"] == 0

        return {
            "status": "ok" if healthy else "warning",
            "indexer": status,
            "halted_sources": halted,
            "metrics_jobs": jobs,
        }

    async def run(self) -> Dict[str, Any]:
        """Scheduler entry point."""
        health = self.check()

        if health["status"] == "ok":
            logger.info("Indexer heartbeat", **health)
        else:
            health["metrics_job_runs"] = self.job_metrics.get_all_metrics()
            logger.warning("Indexer health DEGRADED", **health)
            capture_message("Indexer health degraded", level="warning", context=health)
        return health
