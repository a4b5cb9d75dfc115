"""Runtime configuration for the generation job pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_PROVIDERS: tuple[str, ...] = ("gemini", "scripted")


@dataclass(slots=True)
class BrokerSettings:
    """Optional message broker settings."""

    enabled: bool = False
    db_path: Path | None = None
    max_deliveries: int = 3
    redelivery_base_seconds: float = 2.0
    lease_seconds: int = 300


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool settings."""

    concurrency: int = 5
    poll_interval_seconds: float = 1.0
    worker_id: str = "genqueue-worker"


@dataclass(slots=True)
class CredentialSettings:
    """Credential tiers and quarantine policy."""

    quarantine_seconds: int = 3_600
    environment_api_key: str | None = None
    fallback_api_key: str | None = None


@dataclass(slots=True)
class RetrySettings:
    """Per-credential retry policy."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0


@dataclass(slots=True)
class ProviderSettings:
    """Generation provider settings."""

    name: str = "gemini"
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class ExtractionSettings:
    """Response extraction tuning."""

    status_window_chars: int = 100
    error_excerpt_chars: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by pipeline concerns."""

    db_path: Path = Path(".genqueue.db")
    sqlite_busy_timeout_ms: int = 5_000
    broker: BrokerSettings = field(default_factory=BrokerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        broker_db_raw = os.getenv("GENQUEUE_BROKER_DB_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("GENQUEUE_DB_PATH", ".genqueue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("GENQUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            broker=BrokerSettings(
                enabled=_env_bool("GENQUEUE_BROKER_ENABLED", default=False),
                db_path=Path(broker_db_raw) if broker_db_raw else None,
                max_deliveries=int(os.getenv("GENQUEUE_BROKER_MAX_DELIVERIES", "3")),
                redelivery_base_seconds=float(
                    os.getenv("GENQUEUE_BROKER_REDELIVERY_BASE_SECONDS", "2.0"),
                ),
                lease_seconds=int(os.getenv("GENQUEUE_BROKER_LEASE_SECONDS", "300")),
            ),
            worker=WorkerSettings(
                concurrency=int(os.getenv("GENQUEUE_WORKER_CONCURRENCY", "5")),
                poll_interval_seconds=float(
                    os.getenv("GENQUEUE_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                worker_id=os.getenv("GENQUEUE_WORKER_ID", "genqueue-worker"),
            ),
            credentials=CredentialSettings(
                quarantine_seconds=int(os.getenv("GENQUEUE_QUARANTINE_SECONDS", "3600")),
                environment_api_key=_env_optional("GENQUEUE_PROVIDER_API_KEY"),
                fallback_api_key=_env_optional("GENQUEUE_FALLBACK_API_KEY"),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("GENQUEUE_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(os.getenv("GENQUEUE_RETRY_BASE_SECONDS", "1.0")),
                max_delay_seconds=float(os.getenv("GENQUEUE_RETRY_MAX_SECONDS", "60")),
            ),
            provider=ProviderSettings(
                name=os.getenv("GENQUEUE_PROVIDER", "gemini").strip().lower(),
                model=os.getenv("GENQUEUE_PROVIDER_MODEL", "gemini-2.5-flash"),
                base_url=os.getenv(
                    "GENQUEUE_PROVIDER_BASE_URL",
                    "https://generativelanguage.googleapis.com/v1beta",
                ),
                timeout_seconds=float(os.getenv("GENQUEUE_PROVIDER_TIMEOUT_SECONDS", "30")),
            ),
            extraction=ExtractionSettings(
                status_window_chars=int(os.getenv("GENQUEUE_STATUS_WINDOW_CHARS", "100")),
                error_excerpt_chars=int(os.getenv("GENQUEUE_ERROR_EXCERPT_CHARS", "100")),
            ),
        )

    @property
    def broker_db_path(self) -> Path:
        """Broker database path; shares the job database unless overridden."""

        return self.broker.db_path or self.db_path

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.worker.concurrency <= 0:
            raise ValueError("GENQUEUE_WORKER_CONCURRENCY must be a positive integer.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("GENQUEUE_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.broker.max_deliveries <= 0:
            raise ValueError("GENQUEUE_BROKER_MAX_DELIVERIES must be a positive integer.")
        if self.broker.redelivery_base_seconds < 0:
            raise ValueError("GENQUEUE_BROKER_REDELIVERY_BASE_SECONDS must be >= 0.")
        if self.broker.lease_seconds <= 0:
            raise ValueError("GENQUEUE_BROKER_LEASE_SECONDS must be a positive integer.")
        if self.credentials.quarantine_seconds < 0:
            raise ValueError("GENQUEUE_QUARANTINE_SECONDS must be >= 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("GENQUEUE_RETRY_MAX_ATTEMPTS must be a positive integer.")
        if self.retry.base_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("GENQUEUE_RETRY_BASE_SECONDS/MAX_SECONDS must be >= 0.")
        if self.provider.name not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported GENQUEUE_PROVIDER: {self.provider.name!r}. "
                f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}.",
            )
        if self.provider.timeout_seconds <= 0:
            raise ValueError("GENQUEUE_PROVIDER_TIMEOUT_SECONDS must be > 0.")
        # The lease must outlive the longest single blocking step of a job.
        longest_step = self.provider.timeout_seconds + self.retry.max_delay_seconds
        if self.broker.lease_seconds <= longest_step:
            raise ValueError(
                "GENQUEUE_BROKER_LEASE_SECONDS must exceed "
                "GENQUEUE_PROVIDER_TIMEOUT_SECONDS + GENQUEUE_RETRY_MAX_SECONDS "
                f"({longest_step:g}s).",
            )
        _validate_base_url(self.provider.base_url)
        if self.extraction.status_window_chars < 0:
            raise ValueError("GENQUEUE_STATUS_WINDOW_CHARS must be >= 0.")
        if self.extraction.error_excerpt_chars <= 0:
            raise ValueError("GENQUEUE_ERROR_EXCERPT_CHARS must be a positive integer.")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid GENQUEUE_PROVIDER_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
