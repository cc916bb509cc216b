"""Simple in-memory run history for periodic jobs.

These metrics are process-local and reset on restart. The Prometheus
counters in `indexer.core.metrics` are the externally visible side.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Optional


@dataclass
class JobRun:
    """Metrics for a single job run."""

    job_name: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    items_processed: int = 0
    successful: int = 0
    failed: int = 0
    error: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass
class JobMetricsStore:
    """Thread-safe store for job run metrics."""

    _lock: Lock = field(default_factory=Lock)
    _last_runs: dict = field(default_factory=dict)  # job_name -> JobRun
    _total_runs: dict = field(default_factory=dict)  # job_name -> count
    _total_failures: dict = field(default_factory=dict)  # job_name -> count

    def record_start(self, job_name: str) -> None:
        """Record the start of a job."""
        with self._lock:
            self._last_runs[job_name] = JobRun(
                job_name=job_name,
                started_at=datetime.now(timezone.utc),
            )

    def record_complete(
        self,
        job_name: str,
        items_processed: int = 0,
        successful: int = 0,
        failed: int = 0,
        error: Optional[str] = None,
    ) -> None:
        """Record the completion of a job. A run with `error` counts as a failure."""
        with self._lock:
            now = datetime.now(timezone.utc)

            run = self._last_runs.get(job_name)
            if run is None:
                # Job wasn't recorded starting, create a completed record
                run = JobRun(job_name=job_name, started_at=now)
                self._last_runs[job_name] = run

            run.completed_at = now
            run.items_processed = items_processed
            run.successful = successful
            run.failed = failed
            run.error = error
            run.duration_seconds = (now - run.started_at).total_seconds()

            self._total_runs[job_name] = self._total_runs.get(job_name, 0) + 1
            if error is not None or failed > successful:
                self._total_failures[job_name] = self._total_failures.get(job_name, 0) + 1

    def get_all_metrics(self) -> dict:
        """Get all metrics as a dictionary."""
        with self._lock:
            result = {}
            for job_name, run in self._last_runs.items():
                result[job_name] = {
                    "last_run": {
                        "started_at": run.started_at.isoformat(),
                        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
                        "items_processed": run.items_processed,
                        "successful": run.successful,
                        "failed": run.failed,
                        "error": run.error,
                        "duration_seconds": round(run.duration_seconds, 3),
                    },
                    "total_runs": self._total_runs.get(job_name, 0),
                    "total_failures": self._total_failures.get(job_name, 0),
                }
            return result

    def get_summary(self) -> dict:
        """Count jobs whose last run succeeded vs failed."""
        with self._lock:
            total_jobs = len(self._last_runs)
            failing_jobs = sum(
                1 for run in self._last_runs.values() if run.completed_at and (run.error is not None or run.failed > run.successful)
            )
            running_jobs = sum(1 for run in self._last_runs.values() if run.completed_at is None)

            return {
                "total_jobs": total_jobs,
                "healthy_jobs": total_jobs - failing_jobs - running_jobs,
                "failing_jobs": failing_jobs,
                "running_jobs": running_jobs,
            }
