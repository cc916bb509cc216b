"""
Error taxonomy and unified error reporting with Sentry integration.

Exception classes describe every failure the indexer distinguishes:

    ConfigurationError        fatal at startup, names the offending setting
    CircuitOpenError          breaker rejected a call, carries the remaining wait
    RpcError                  JSON-RPC error object or malformed RPC response
    EventDecodeError          a single chain event could not be decoded
    UnknownEventTypeError     ...because its topic is not a known variant
    EventApplyError           mapping an event onto the store failed
    PersistenceUnavailableError  the store kept failing; stop the process

Reporting helpers:

    # Capture an exception
    capture_exception(exc, context={"source_id": "token_factory", "position": "1234"})

    # Capture a message (non-exception event)
    capture_message("Decode policy halted source", level="error")

    # Context manager for operations
    with ErrorHandler("calculate_pool_metrics"):
        calculate_pool_metrics(...)
"""

from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextlib import contextmanager
import logging

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = structlog.get_logger(__name__)

__all__ = [
    "IndexerError",
    "ConfigurationError",
    "CircuitOpenError",
    "RpcError",
    "EventDecodeError",
    "UnknownEventTypeError",
    "EventApplyError",
    "PersistenceUnavailableError",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
    "error_boundary",
    "is_sentry_enabled",
]


class IndexerError(Exception):
    """Base class for indexer errors."""


class ConfigurationError(IndexerError):
    """Missing or invalid configuration. Fatal at startup."""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(message)
        self.setting = setting


class CircuitOpenError(IndexerError):
    """Raised instead of invoking the operation while a circuit is OPEN."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit {name} is OPEN. Retry in {int(round(retry_after * 1000))}ms")

    @property
    def retry_after_ms(self) -> int:
        return int(round(self.retry_after * 1000))


class RpcError(IndexerError):
    """The RPC endpoint returned an error object or an unusable body."""

    def __init__(self, message: str, code: Optional[int] = None, method: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.method = method


class EventDecodeError(IndexerError):
    """A raw chain event could not be turned into a domain event."""

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        position: Optional[str] = None,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.source_id = source_id
        self.position = position
        self.event_id = event_id
        self.event_type = event_type
        self.raw = raw

    def context(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "position": self.position,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "raw_payload": self.raw,
        }


class UnknownEventTypeError(EventDecodeError):
    """Topic symbol is not one of the variants known for this source."""


class EventApplyError(IndexerError):
    """Applying a decoded event to the store failed. The batch is rolled back."""

    def __init__(self, event: Any, cause: BaseException):
        self.event = event
        self.cause = cause
        super().__init__(
            f"Failed to apply {type(event).__name__} {getattr(event, 'event_id', '?')} "
            f"at position {getattr(event, 'position', '?')}: {cause}"
        )


class PersistenceUnavailableError(IndexerError):
    """The store failed too many consecutive cycles for a source."""

    def __init__(self, source_id: str, failures: int, cause: Optional[BaseException] = None):
        self.source_id = source_id
        self.failures = failures
        self.cause = cause
        super().__init__(f"Persistence unavailable for {source_id} after {failures} consecutive failures: {cause}")


# Sentry state (initialized by the supervisor when SENTRY_DSN is set)
_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN (from project settings)
        environment: Environment name (production, staging, development)
        release: Release version

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            integrations=[
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
            ignore_errors=[
                KeyboardInterrupt,
                SystemExit,
            ],
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, release=release)
    return True


def is_sentry_enabled() -> bool:
    """Check if Sentry is initialized and available."""
    return _sentry_initialized


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"source_id": "token_factory"})
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry
        tags: Additional tags for filtering in Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **structlog.contextvars.get_contextvars(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.error)
    log_func("Exception captured", exc_info=exc, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                if tags:
                    for key, value in tags.items():
                        scope.set_tag(key, value)
                if fingerprint:
                    scope.fingerprint = fingerprint
                scope.level = level
                return sentry_sdk.capture_exception(exc)
        except Exception as e:
            logger.warning("Failed to send exception to Sentry", error=str(e))

    return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for non-exception events).

    Useful for alerts that don't raise: a halted source, a stuck checkpoint,
    circuit breaker trips.
    """
    enriched_context = {
        **structlog.contextvars.get_contextvars(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.new_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                if tags:
                    for key, value in tags.items():
                        scope.set_tag(key, value)
                scope.level = level
                return sentry_sdk.capture_message(message, level=level)
        except Exception as e:
            logger.warning("Failed to send message to Sentry", error=str(e))

    return None


class ErrorHandler:
    """
    Context manager for handling errors with automatic capture.

    Usage:
        # Suppress and capture errors
        with ErrorHandler("calculate_token_metrics"):
            ...

        # Re-raise after capturing
        with ErrorHandler("apply_batch", reraise=True):
            ...

    Args:
        operation: Name of the operation (for grouping in Sentry)
        context: Additional context dict
        capture: Whether to send to Sentry (default: True)
        reraise: Whether to re-raise exception (default: False)
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
        fingerprint: Optional[list[str]] = None,
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.fingerprint = fingerprint or [operation]
        self.event_id: Optional[str] = None
        self.error: Optional[BaseException] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            return False
        if not isinstance(exc_val, Exception):
            # Never swallow cancellation or interpreter exit
            return False

        self.error = exc_val
        if self.capture:
            self.event_id = capture_exception(
                exc_val,
                context={"operation": self.operation, **self.context},
                fingerprint=self.fingerprint + [type(exc_val).__name__],
            )
        else:
            logger.error("Operation failed", operation=self.operation, error=str(exc_val), **self.context)

        return not self.reraise


@contextmanager
def error_boundary(operation: str, **context):
    """
    Simplified error boundary: captures and suppresses errors.

    Usage:
        with error_boundary("export_metrics", port=9090) as handler:
            start_http_server(9090)
        if handler.error: ...
    """
    handler = ErrorHandler(operation, context=context, capture=True, reraise=False)
    with handler:
        yield handler
