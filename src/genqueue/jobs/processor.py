"""The job-processing routine shared by inline dispatch and broker workers."""

from __future__ import annotations

import logging
from enum import Enum

from genqueue.generation.client import EventSink, GenerationClient
from genqueue.generation.errors import GenerationError, describe_failure
from genqueue.generation.sanitization import redact_error
from genqueue.jobs.models import JobStatus, JobView
from genqueue.storage.repository import JobRepository

logger = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    """Result of one ``JobProcessor.process`` call."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class JobProcessor:
    """Claim a job, run generation and persist exactly one terminal state.

    Re-running a job that already reached a terminal state is a no-op, which
    keeps broker redeliveries idempotent.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        client: GenerationClient,
        executor_id: str,
        error_max_chars: int = 500,
    ) -> None:
        self.repository = repository
        self.client = client
        self.executor_id = executor_id
        self.error_max_chars = error_max_chars

    def process(self, job_id: str, *, allow_reclaim: bool = False) -> ProcessOutcome:
        """Run one job to a terminal state.

        Generation failures become a failed job. Any other exception propagates
        so a broker consumer can hand the delivery back.
        """

        job = self.repository.claim_job(
            job_id=job_id,
            executor_id=self.executor_id,
            allow_reclaim=allow_reclaim,
        )
        if job is None:
            current = self.repository.get_job(job_id=job_id)
            logger.info(
                "Job %s not claimable by %s (status=%s); skipping",
                job_id,
                self.executor_id,
                current.status.value if current is not None else "missing",
            )
            return ProcessOutcome.SKIPPED

        if job.cancel_requested:
            return self._finish_cancelled(job)

        logger.info("Job %s (%s) processing, attempt %d", job.job_id, job.kind, job.attempts)
        try:
            result = self.client.execute(job, on_event=self._event_sink(job.job_id))
        except GenerationError as error:
            message = describe_failure(error, max_chars=self.error_max_chars)
            if self.repository.fail_job(
                job_id=job.job_id,
                error=message,
                details={"error_type": error.__class__.__name__},
            ):
                logger.warning("Job %s failed: %s", job.job_id, message)
                return ProcessOutcome.FAILED
            return self._resolve_lost_write(job)

        if self.repository.complete_job(job_id=job.job_id, result=result):
            logger.info("Job %s completed", job.job_id)
            return ProcessOutcome.COMPLETED
        return self._resolve_lost_write(job)

    def fail_unprocessable(self, job_id: str, *, error: str) -> bool:
        """Fail a job that will never be processed, e.g. after dead-lettering."""

        failed = self.repository.fail_job(
            job_id=job_id,
            error=redact_error(error, max_chars=self.error_max_chars),
            from_statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
        )
        if failed:
            return True
        current = self.repository.get_job(job_id=job_id)
        if current is not None and current.cancel_requested and not current.is_terminal:
            return self.repository.finish_cancelled(job_id=job_id)
        return False

    def _finish_cancelled(self, job: JobView) -> ProcessOutcome:
        if self.repository.finish_cancelled(job_id=job.job_id):
            logger.info("Job %s cancelled", job.job_id)
            return ProcessOutcome.CANCELLED
        return ProcessOutcome.SKIPPED

    def _resolve_lost_write(self, job: JobView) -> ProcessOutcome:
        current = self.repository.get_job(job_id=job.job_id)
        if current is not None and current.status == JobStatus.PROCESSING and current.cancel_requested:
            return self._finish_cancelled(current)
        logger.warning(
            "Job %s terminal write lost (status=%s)",
            job.job_id,
            current.status.value if current is not None else "missing",
        )
        return ProcessOutcome.SKIPPED

    def _event_sink(self, job_id: str) -> EventSink:
        def record(event_type: str, details: dict[str, object]) -> None:
            self.repository.add_job_event(job_id=job_id, event_type=event_type, details=details)

        return record
