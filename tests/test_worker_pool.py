from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from genqueue.broker.base import Broker, Delivery
from genqueue.broker.sqlite_broker import SqliteBroker
from genqueue.credentials.pool import CredentialPool
from genqueue.generation.client import GenerationClient
from genqueue.generation.provider import GenerationRequest, ScriptedProvider
from genqueue.generation.retry import RetryPolicy
from genqueue.jobs.models import JobCreate, JobKind, JobStatus
from genqueue.jobs.pool import WorkerPool
from genqueue.jobs.processor import JobProcessor
from genqueue.jobs.worker import JobWorker
from genqueue.storage.repository import JobRepository

pytestmark = [
    allure.epic("Queue"),
    allure.feature("Workers"),
]

_PAYLOAD = '{"name": "Swarm"}'


@pytest.fixture()
def broker(tmp_path: Path, clock) -> Iterator[SqliteBroker]:
    instance = SqliteBroker(tmp_path / "broker.db", lease_seconds=60, clock=clock)
    instance.init_schema()
    yield instance
    instance.close()


def _worker(
    repository: JobRepository,
    broker: Broker,
    provider: ScriptedProvider,
    consumer_id: str = "worker-1",
    *,
    heartbeat_interval_seconds: float = 100.0,
) -> JobWorker:
    client = GenerationClient(
        provider=provider,
        credential_pool=CredentialPool(fallback="only-key"),
        retry_policy=RetryPolicy(max_attempts=1),
        sleep=lambda _: None,
    )
    processor = JobProcessor(repository=repository, client=client, executor_id=consumer_id)
    return JobWorker(
        broker=broker,
        processor=processor,
        consumer_id=consumer_id,
        poll_interval_seconds=0.01,
        heartbeat_interval_seconds=heartbeat_interval_seconds,
    )


def _submit(repository: JobRepository, broker: SqliteBroker) -> str:
    job = repository.create_job(
        JobCreate(kind=JobKind.GENERATE, input={"inspiration": "ants", "domain": "routing"}),
    )
    broker.enqueue(job.job_id)
    return job.job_id


def _status(repository: JobRepository, job_id: str) -> JobStatus:
    job = repository.get_job(job_id=job_id)
    assert job is not None
    return job.status


def test_run_once_processes_and_acks(repository: JobRepository, broker: SqliteBroker) -> None:
    job_id = _submit(repository, broker)

    summary = _worker(repository, broker, ScriptedProvider([_PAYLOAD])).run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert _status(repository, job_id) == JobStatus.COMPLETED
    assert broker.counts()["acked"] == 1


def test_run_once_on_empty_queue_is_idle(repository: JobRepository, broker: SqliteBroker) -> None:
    summary = _worker(repository, broker, ScriptedProvider()).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_generation_failure_is_terminal_and_acked(
    repository: JobRepository,
    broker: SqliteBroker,
) -> None:
    job_id = _submit(repository, broker)

    summary = _worker(repository, broker, ScriptedProvider(["not json at all"])).run_once()

    assert summary.failed == 1
    assert _status(repository, job_id) == JobStatus.FAILED
    assert broker.counts()["acked"] == 1


def test_redelivery_of_completed_job_is_noop(
    repository: JobRepository,
    broker: SqliteBroker,
    clock,
) -> None:
    job_id = _submit(repository, broker)
    stale = broker.claim("lost-consumer")
    assert stale is not None
    repository.claim_job(job_id=job_id, executor_id="lost-consumer")
    repository.complete_job(job_id=job_id, result={"name": "first"})
    clock.advance(60)
    provider = ScriptedProvider([_PAYLOAD])

    summary = _worker(repository, broker, provider).run_once()

    assert summary.skipped == 1
    assert provider.calls == []
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.result == {"name": "first"}


def test_redelivery_reclaims_job_left_processing(
    repository: JobRepository,
    broker: SqliteBroker,
    clock,
) -> None:
    job_id = _submit(repository, broker)
    assert broker.claim("lost-consumer") is not None
    repository.claim_job(job_id=job_id, executor_id="lost-consumer")
    clock.advance(60)

    summary = _worker(repository, broker, ScriptedProvider([_PAYLOAD])).run_once()

    assert summary.succeeded == 1
    details = repository.get_job_details(job_id=job_id)
    assert details is not None
    assert details.job.status == JobStatus.COMPLETED
    assert details.job.attempts == 2
    event_types = [event.event_type for event in details.events]
    assert "redelivered" in event_types
    assert "reclaimed" in event_types


def test_crash_requeues_then_dead_letters(tmp_path: Path, repository: JobRepository, clock) -> None:
    broker = SqliteBroker(tmp_path / "broker-one.db", max_deliveries=2, clock=clock)
    broker.init_schema()
    job_id = _submit(repository, broker)

    def crash(credential: str, request: GenerationRequest) -> str:
        raise KeyError("bug")

    worker = _worker(repository, broker, ScriptedProvider([crash, crash]))

    first = worker.run_once()
    assert first.requeued == 1
    assert _status(repository, job_id) == JobStatus.PROCESSING

    clock.advance(600)
    second = worker.run_once()
    assert second.dead_lettered == 1

    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status == JobStatus.FAILED
    assert job.error is not None
    assert job.error.startswith("Job abandoned after 2 deliveries")
    broker.close()


def test_run_loop_stops_after_idle_polls(repository: JobRepository, broker: SqliteBroker) -> None:
    worker = _worker(repository, broker, ScriptedProvider())
    worker.poll_interval_seconds = 0

    summary = worker.run_loop(max_idle_polls=2)

    assert summary.idle_polls == 2


def test_run_loop_honours_max_jobs(repository: JobRepository, broker: SqliteBroker) -> None:
    for _ in range(3):
        _submit(repository, broker)

    summary = _worker(repository, broker, ScriptedProvider()).run_loop(max_jobs=2)

    assert summary.processed == 2
    assert broker.counts()["ready"] == 1


def test_pool_drains_queue_with_parallel_workers(
    repository: JobRepository,
    broker: SqliteBroker,
) -> None:
    job_ids = [_submit(repository, broker) for _ in range(6)]
    provider = ScriptedProvider()
    pool = WorkerPool(
        worker_factory=lambda consumer_id: _worker(repository, broker, provider, consumer_id),
        concurrency=3,
        worker_id="test-pool",
    )

    pool.start()
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        if all(_status(repository, job_id) == JobStatus.COMPLETED for job_id in job_ids):
            break
        time.sleep(0.05)
    summary = pool.stop(timeout=10)

    assert not pool.running
    assert summary.succeeded == 6
    assert len(provider.calls) == 6


def test_pool_stop_waits_for_in_flight_job(
    repository: JobRepository,
    broker: SqliteBroker,
) -> None:
    started = threading.Event()
    release = threading.Event()

    def slow(credential: str, request: GenerationRequest) -> str:
        started.set()
        release.wait(5)
        return _PAYLOAD

    job_id = _submit(repository, broker)
    pool = WorkerPool(
        worker_factory=lambda consumer_id: _worker(
            repository,
            broker,
            ScriptedProvider([slow]),
            consumer_id,
        ),
        concurrency=1,
    )
    pool.start()
    assert started.wait(5)
    threading.Timer(0.1, release.set).start()

    summary = pool.stop(timeout=10)

    assert summary.succeeded == 1
    assert _status(repository, job_id) == JobStatus.COMPLETED


def test_pool_rejects_non_positive_concurrency() -> None:
    with pytest.raises(ValueError, match="positive"):
        WorkerPool(worker_factory=lambda consumer_id: None, concurrency=0)  # type: ignore[arg-type,return-value]


class _RenewalSignallingBroker:
    def __init__(self, inner: SqliteBroker) -> None:
        self.inner = inner
        self.renewed = threading.Event()

    def __getattr__(self, name: str) -> object:
        return getattr(self.inner, name)

    def renew(self, delivery: Delivery) -> bool:
        renewed = self.inner.renew(delivery)
        self.renewed.set()
        return renewed


def test_lease_is_renewed_while_a_slow_job_runs(
    repository: JobRepository,
    broker: SqliteBroker,
    clock,
) -> None:
    signalling = _RenewalSignallingBroker(broker)
    claims_by_others: list[Delivery | None] = []

    def slow(credential: str, request: GenerationRequest) -> str:
        clock.advance(45)
        for _ in range(2):
            signalling.renewed.clear()
            assert signalling.renewed.wait(5)
        clock.advance(45)
        claims_by_others.append(broker.claim("other-worker"))
        return _PAYLOAD

    job_id = _submit(repository, broker)
    worker = _worker(
        repository,
        signalling,  # type: ignore[arg-type]
        ScriptedProvider([slow]),
        heartbeat_interval_seconds=0.01,
    )

    summary = worker.run_once()

    assert claims_by_others == [None]
    assert summary.succeeded == 1
    assert _status(repository, job_id) == JobStatus.COMPLETED
    assert broker.counts()["acked"] == 1
