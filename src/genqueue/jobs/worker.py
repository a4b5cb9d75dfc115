"""Broker consumer that runs deliveries through the job processor."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from genqueue.broker.base import Broker, BrokerUnavailableError, Delivery, NackOutcome
from genqueue.generation.errors import describe_failure
from genqueue.jobs.processor import JobProcessor, ProcessOutcome

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.skipped += other.skipped
        self.requeued += other.requeued
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls


class LeaseHeartbeat:
    """Renews a delivery lease in the background while its job runs.

    Renewal stops once the broker reports the lease lost; the job itself keeps
    running and its ack is then ignored by the broker.
    """

    def __init__(self, broker: Broker, delivery: Delivery, *, interval_seconds: float) -> None:
        self.broker = broker
        self.delivery = delivery
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-{delivery.message_id}",
            daemon=True,
        )

    def __enter__(self) -> LeaseHeartbeat:
        self._thread.start()
        return self

    def __exit__(self, *_: object) -> None:
        self._stop.set()
        self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                renewed = self.broker.renew(self.delivery)
            except BrokerUnavailableError as exc:
                logger.warning("Lease renewal for job %s failed: %s", self.delivery.job_id, exc)
                continue
            if not renewed:
                logger.warning("Lease on job %s lost; stopping renewal", self.delivery.job_id)
                return


class JobWorker:
    """Consumes broker deliveries one at a time.

    While a job runs its lease is renewed every ``heartbeat_interval_seconds``,
    which must stay well below the broker lease.
    """

    def __init__(
        self,
        *,
        broker: Broker,
        processor: JobProcessor,
        consumer_id: str,
        poll_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 100.0,
    ) -> None:
        self.broker = broker
        self.processor = processor
        self.consumer_id = consumer_id
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds

    def run_once(self) -> WorkerRunSummary:
        """Process at most one delivery from the broker."""

        summary = WorkerRunSummary()
        try:
            delivery = self.broker.claim(self.consumer_id)
        except BrokerUnavailableError as exc:
            logger.warning("Worker %s could not claim: %s", self.consumer_id, exc)
            summary.idle_polls = 1
            return summary
        if delivery is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        if delivery.dead_lettered:
            self._fail_dead_letter(delivery, reason="its lease expired on every delivery")
            summary.dead_lettered = 1
            return summary

        if delivery.is_redelivery:
            self.processor.repository.add_job_event(
                job_id=delivery.job_id,
                event_type="redelivered",
                details={"delivery": delivery.deliveries, "consumer_id": self.consumer_id},
            )

        try:
            with LeaseHeartbeat(
                self.broker,
                delivery,
                interval_seconds=self.heartbeat_interval_seconds,
            ):
                outcome = self.processor.process(
                    delivery.job_id,
                    allow_reclaim=delivery.is_redelivery,
                )
        except Exception as exc:
            logger.exception("Job %s crashed in worker %s", delivery.job_id, self.consumer_id)
            self._nack(delivery, error=describe_failure(exc), summary=summary)
            return summary

        self.broker.ack(delivery)
        _count_outcome(summary, outcome)
        return summary

    def run_loop(
        self,
        *,
        stop_event: threading.Event | None = None,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_jobs`` processed or ``max_idle_polls`` empty polls.

        The stop flag is checked between deliveries only, so an in-flight job
        always reaches its terminal state first.
        """

        stop = stop_event or threading.Event()
        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while not stop.is_set():
            if max_jobs is not None and aggregate.processed >= max_jobs:
                break
            try:
                summary = self.run_once()
            except Exception:
                logger.exception("Worker %s loop error", self.consumer_id)
                summary = WorkerRunSummary(idle_polls=1)
            aggregate.merge(summary)
            if summary.processed:
                consecutive_idle = 0
                continue
            consecutive_idle += 1
            if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                break
            stop.wait(self.poll_interval_seconds)
        return aggregate

    def _nack(self, delivery: Delivery, *, error: str, summary: WorkerRunSummary) -> None:
        outcome = self.broker.nack(delivery, error=error)
        if outcome == NackOutcome.DEAD_LETTERED:
            self._fail_dead_letter(delivery, reason=error)
            summary.dead_lettered = 1
        else:
            summary.requeued = 1

    def _fail_dead_letter(self, delivery: Delivery, *, reason: str) -> None:
        message = f"Job abandoned after {delivery.deliveries} deliveries: {reason}"
        if self.processor.fail_unprocessable(delivery.job_id, error=message):
            logger.warning("Job %s dead-lettered: %s", delivery.job_id, message)


def _count_outcome(summary: WorkerRunSummary, outcome: ProcessOutcome) -> None:
    if outcome == ProcessOutcome.COMPLETED:
        summary.succeeded = 1
    elif outcome == ProcessOutcome.FAILED:
        summary.failed = 1
    elif outcome == ProcessOutcome.CANCELLED:
        summary.cancelled = 1
    else:
        summary.skipped = 1
