"""Queue dispatcher: durable create, then broker enqueue or inline execution."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from genqueue.broker.base import Broker, BrokerUnavailableError
from genqueue.generation.errors import SubmissionError, UnknownJobKindError, describe_failure
from genqueue.jobs.models import JobCreate, JobKind, JobStatusView, JobView, parse_job_kind
from genqueue.jobs.processor import JobProcessor
from genqueue.storage.repository import JobRepository

logger = logging.getLogger(__name__)


class QueueDispatcher:
    """Single submission contract over broker and inline execution.

    With a broker the job id is enqueued and ``submit`` returns at once. Without
    one, or when enqueueing fails, the job is processed inline and is already
    terminal when ``submit`` returns.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        processor: JobProcessor,
        broker: Broker | None = None,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.broker = broker

    def submit(
        self,
        kind: str | JobKind,
        input: dict[str, Any],  # noqa: A002
        caller_id: str | None = None,
    ) -> JobView:
        job_kind = kind if isinstance(kind, JobKind) else parse_job_kind(kind)
        if job_kind is None:
            raise UnknownJobKindError(f"Unknown job kind: {kind!r}")

        try:
            job = self.repository.create_job(
                JobCreate(kind=job_kind, input=dict(input), caller_id=caller_id),
            )
        except SQLAlchemyError as exc:
            logger.error("Job submission failed: %s", exc)
            raise SubmissionError(f"Job could not be recorded: {exc.__class__.__name__}") from exc

        if self.broker is not None:
            try:
                message_id = self.broker.enqueue(job.job_id)
            except BrokerUnavailableError as exc:
                logger.warning("Broker unavailable for job %s; running inline: %s", job.job_id, exc)
                self.repository.add_job_event(
                    job_id=job.job_id,
                    event_type="inline_fallback",
                    details={"reason": describe_failure(exc, max_chars=200)},
                )
            else:
                self.repository.add_job_event(
                    job_id=job.job_id,
                    event_type="enqueued",
                    details={"message_id": message_id},
                )
                logger.info("Job %s (%s) enqueued", job.job_id, job.kind)
                return job

        self._run_inline(job.job_id)
        return self.repository.get_job(job_id=job.job_id) or job

    def get_status(self, job_id: str) -> JobStatusView | None:
        """Polling view of one job."""

        job = self.repository.get_job(job_id=job_id)
        if job is None:
            return None
        return JobStatusView(job_id=job.job_id, status=job.status, result=job.result, error=job.error)

    def cancel(self, job_id: str) -> JobView:
        """Cancel a pending job or request cancellation of a processing one."""

        return self.repository.cancel_job(job_id=job_id)

    def _run_inline(self, job_id: str) -> None:
        try:
            self.processor.process(job_id)
        except Exception as exc:
            # Inline runs have no redelivery, so the job is failed here.
            logger.exception("Inline processing of job %s crashed", job_id)
            self.processor.fail_unprocessable(job_id, error=describe_failure(exc))
