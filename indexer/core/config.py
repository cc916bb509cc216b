from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

from indexer.core.errors import ConfigurationError

load_dotenv()

REQUIRED_SETTINGS = (
    "DATABASE_URL",
    "STELLAR_RPC_URL",
    "TOKEN_FACTORY_CONTRACT_ID",
)

DECODE_ERROR_POLICIES = ("skip", "halt")


class Settings(BaseSettings):
    PROJECT_NAME: str = "Launchpad Indexer"
    ENVIRONMENT: str = "development"

    # Required - validated at startup by validate_required()
    DATABASE_URL: str = ""
    STELLAR_RPC_URL: str = ""
    TOKEN_FACTORY_CONTRACT_ID: str = ""

    # Optional AMM source
    AMM_FACTORY_CONTRACT_ID: str = ""

    # First ledger to index for a never-indexed source (unset = start from the latest ledger)
    INDEXER_START_LEDGER: Optional[int] = None

    # Polling loop
    POLL_INTERVAL_SECONDS: float = 5.0
    BATCH_SIZE: int = 100
    RPC_TIMEOUT_SECONDS: float = 30.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 30.0
    MAX_PERSISTENCE_FAILURES: int = 10
    DECODE_ERROR_POLICY: str = "skip"  # "skip" or "halt"
    STATE_CACHE_SIZE: int = 1024

    # Circuit breaker (per source)
    CB_FAILURE_THRESHOLD: int = 5
    CB_SUCCESS_THRESHOLD: int = 2
    CB_TIMEOUT_SECONDS: float = 30.0
    CB_MAX_DELAY_SECONDS: float = 300.0

    # Derived metrics job
    METRICS_INTERVAL_SECONDS: int = 60

    # Health heartbeat log
    HEARTBEAT_INTERVAL_SECONDS: int = 300

    # Prometheus exporter (0 disables)
    METRICS_PORT: int = 9090

    # Error tracking
    SENTRY_DSN: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    def validate_required(self) -> None:
        """
        Fail fast on missing or invalid configuration.

        Raises:
            ConfigurationError naming the first offending variable.
        """
        for name in REQUIRED_SETTINGS:
            if not getattr(self, name):
                raise ConfigurationError(f"Missing required environment variable: {name}", setting=name)

        if self.DECODE_ERROR_POLICY not in DECODE_ERROR_POLICIES:
            raise ConfigurationError(
                f"Invalid DECODE_ERROR_POLICY {self.DECODE_ERROR_POLICY!r} (expected one of {', '.join(DECODE_ERROR_POLICIES)})",
                setting="DECODE_ERROR_POLICY",
            )

        positive = (
            "POLL_INTERVAL_SECONDS",
            "BATCH_SIZE",
            "RPC_TIMEOUT_SECONDS",
            "CB_FAILURE_THRESHOLD",
            "CB_SUCCESS_THRESHOLD",
            "CB_TIMEOUT_SECONDS",
            "CB_MAX_DELAY_SECONDS",
            "METRICS_INTERVAL_SECONDS",
            "HEARTBEAT_INTERVAL_SECONDS",
            "MAX_PERSISTENCE_FAILURES",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", setting=name)

        if self.CB_MAX_DELAY_SECONDS < self.CB_TIMEOUT_SECONDS:
            raise ConfigurationError(
                "CB_MAX_DELAY_SECONDS must be >= CB_TIMEOUT_SECONDS",
                setting="CB_MAX_DELAY_SECONDS",
            )

        if self.INDEXER_START_LEDGER is not None and self.INDEXER_START_LEDGER < 1:
            raise ConfigurationError("INDEXER_START_LEDGER must be >= 1", setting="INDEXER_START_LEDGER")


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first use."""
    return Settings()
