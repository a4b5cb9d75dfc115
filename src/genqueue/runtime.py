"""Wiring of repositories, broker, provider and dispatcher from settings."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from genqueue.broker.base import BrokerUnavailableError
from genqueue.broker.sqlite_broker import SqliteBroker
from genqueue.config import Settings
from genqueue.credentials.pool import FALLBACK_CREDENTIAL, CredentialPool
from genqueue.credentials.sources import default_sources
from genqueue.generation.client import GenerationClient
from genqueue.generation.extractor import ResponseExtractor
from genqueue.generation.provider import GenerationProvider, build_provider
from genqueue.generation.retry import RetryPolicy
from genqueue.jobs.dispatcher import QueueDispatcher
from genqueue.jobs.pool import WorkerPool
from genqueue.jobs.processor import JobProcessor
from genqueue.jobs.worker import JobWorker
from genqueue.storage.credential_repository import CredentialRepository
from genqueue.storage.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Long-lived pipeline components for one process."""

    settings: Settings
    repository: JobRepository
    credentials: CredentialRepository
    credential_pool: CredentialPool
    client: GenerationClient
    broker: SqliteBroker | None

    def processor(self, executor_id: str) -> JobProcessor:
        return JobProcessor(
            repository=self.repository,
            client=self.client,
            executor_id=executor_id,
        )

    def dispatcher(self) -> QueueDispatcher:
        return QueueDispatcher(
            repository=self.repository,
            processor=self.processor(f"{self.settings.worker.worker_id}-inline"),
            broker=self.broker,
        )

    def worker(self, consumer_id: str) -> JobWorker:
        if self.broker is None:
            raise RuntimeError("Workers need an active broker (set GENQUEUE_BROKER_ENABLED=1).")
        return JobWorker(
            broker=self.broker,
            processor=self.processor(consumer_id),
            consumer_id=consumer_id,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
            heartbeat_interval_seconds=self.settings.broker.lease_seconds / 3,
        )

    def worker_pool(self, *, concurrency: int | None = None) -> WorkerPool:
        if self.broker is None:
            raise RuntimeError("Workers need an active broker (set GENQUEUE_BROKER_ENABLED=1).")
        return WorkerPool(
            worker_factory=self.worker,
            concurrency=concurrency or self.settings.worker.concurrency,
            worker_id=self.settings.worker.worker_id,
        )

    def close(self) -> None:
        if self.broker is not None:
            self.broker.close()
        self.credentials.close()
        self.repository.close()


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    provider: GenerationProvider | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[Runtime]:
    """Build every pipeline component, run migrations and close on exit."""

    settings.validate()
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    credentials = CredentialRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    credential_pool = CredentialPool(
        default_sources(credentials, environment_api_key=settings.credentials.environment_api_key),
        fallback=settings.credentials.fallback_api_key or FALLBACK_CREDENTIAL,
        quarantine_seconds=settings.credentials.quarantine_seconds,
    )
    client = GenerationClient(
        provider=provider or build_provider(settings.provider),
        credential_pool=credential_pool,
        extractor=ResponseExtractor(
            status_window_chars=settings.extraction.status_window_chars,
            excerpt_chars=settings.extraction.error_excerpt_chars,
        ),
        retry_policy=RetryPolicy(
            max_attempts=settings.retry.max_attempts,
            base_delay_seconds=settings.retry.base_delay_seconds,
            max_delay_seconds=settings.retry.max_delay_seconds,
        ),
        sleep=sleep,
    )
    runtime = Runtime(
        settings=settings,
        repository=repository,
        credentials=credentials,
        credential_pool=credential_pool,
        client=client,
        broker=_open_broker(settings),
    )
    try:
        yield runtime
    finally:
        runtime.close()


def _open_broker(settings: Settings) -> SqliteBroker | None:
    if not settings.broker.enabled:
        return None
    broker = SqliteBroker(
        settings.broker_db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        max_deliveries=settings.broker.max_deliveries,
        redelivery_base_seconds=settings.broker.redelivery_base_seconds,
        lease_seconds=settings.broker.lease_seconds,
    )
    try:
        broker.init_schema()
    except BrokerUnavailableError as exc:
        logger.warning("Broker unavailable at startup, jobs will run inline: %s", exc)
        broker.close()
        return None
    return broker
