"""
Prometheus metrics for the indexer.

Centralizes all metric definitions so they are registered exactly once.
The supervisor exposes them with `start_exporter(port)`; the collector scrapes.
"""

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from indexer.core.circuit_breaker import CircuitState

# Checkpoint / lag
LAST_INDEXED_POSITION = Gauge(
    "indexer_last_indexed_position",
    "Last ledger durably indexed per source",
    ["source"],
)

INDEXING_LAG = Gauge(
    "indexer_lag_seconds",
    "Seconds between now and the close time of the last indexed ledger",
    ["source"],
)

# Events
EVENTS_RECEIVED = Counter(
    "indexer_events_received_total",
    "Events fetched from the RPC endpoint",
    ["source", "event_type"],
)

EVENTS_PROCESSED = Counter(
    "indexer_events_processed_total",
    "Events applied to the store and checkpointed",
    ["source", "event_type"],
)

EVENTS_FAILED = Counter(
    "indexer_events_failed_total",
    "Events that failed decoding or application",
    ["source", "event_type", "reason"],
)

# Batches
BATCH_SIZE = Histogram(
    "indexer_batch_size",
    "Number of events in each applied batch",
    ["source"],
    buckets=[1, 5, 10, 25, 50, 100, 250],
)

BATCH_PROCESSING_SECONDS = Histogram(
    "indexer_batch_processing_seconds",
    "Time to apply a batch of events",
    ["source"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30],
)

# Circuit breaker
CIRCUIT_BREAKER_STATE = Gauge(
    "indexer_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half-open, 2=open)",
    ["source"],
)

CIRCUIT_BREAKER_FAILURES = Gauge(
    "indexer_circuit_breaker_failures",
    "Current consecutive failure count of the breaker",
    ["source"],
)

CIRCUIT_BREAKER_TRIPS = Counter(
    "indexer_circuit_breaker_trips_total",
    "Transitions into the OPEN state",
    ["source"],
)

# Derived metrics job
METRICS_CALCULATION_RUNS = Counter(
    "indexer_metrics_calculation_total",
    "Derived-metrics calculation outcomes",
    ["job", "status"],
)

METRICS_CALCULATION_SECONDS = Histogram(
    "indexer_metrics_calculation_seconds",
    "Time spent in each derived-metrics calculation",
    ["job"],
    buckets=[0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


def update_last_indexed_position(source: str, position: str) -> None:
    try:
        LAST_INDEXED_POSITION.labels(source=source).set(int(position))
    except ValueError:
        pass  # non-numeric positions are not exported


def update_indexing_lag(source: str, lag_seconds: float) -> None:
    INDEXING_LAG.labels(source=source).set(max(0.0, lag_seconds))


def record_event_received(source: str, event_type: str) -> None:
    EVENTS_RECEIVED.labels(source=source, event_type=event_type).inc()


def record_event_processed(source: str, event_type: str) -> None:
    EVENTS_PROCESSED.labels(source=source, event_type=event_type).inc()


def record_event_failed(source: str, event_type: str, reason: str) -> None:
    EVENTS_FAILED.labels(source=source, event_type=event_type, reason=reason).inc()


def record_batch_processed(source: str, size: int, duration: float) -> None:
    BATCH_SIZE.labels(source=source).observe(size)
    BATCH_PROCESSING_SECONDS.labels(source=source).observe(duration)


def set_circuit_breaker_state(source: str, state: CircuitState, failure_count: int) -> None:
    CIRCUIT_BREAKER_STATE.labels(source=source).set(_STATE_VALUES[state])
    CIRCUIT_BREAKER_FAILURES.labels(source=source).set(failure_count)


def record_circuit_breaker_trip(source: str) -> None:
    CIRCUIT_BREAKER_TRIPS.labels(source=source).inc()


def record_metrics_calculation(job: str, ok: bool, duration: float) -> None:
    METRICS_CALCULATION_RUNS.labels(job=job, status="ok" if ok else "error").inc()
    METRICS_CALCULATION_SECONDS.labels(job=job).observe(duration)


def start_exporter(port: int) -> None:
    """Expose the default registry over HTTP for the collector."""
    start_http_server(port)
