"""Generation client: credential rotation around bounded per-credential retry."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from genqueue.credentials.pool import Credential, CredentialPool
from genqueue.generation.errors import (
    RETRYABLE_ERRORS,
    CredentialInvalidError,
    GenerationError,
    NoCredentialsError,
)
from genqueue.generation.extractor import ResponseExtractor
from genqueue.generation.provider import GenerationProvider
from genqueue.generation.requests import build_request
from genqueue.generation.retry import RetryPolicy, with_retry
from genqueue.jobs.models import JobView

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, object]], None]


class GenerationClient:
    """Produce structured output for a job.

    Each candidate credential gets one bounded retry run; a rejected credential
    is quarantined and the next candidate is tried. Malformed output and
    non-retryable provider errors end the job immediately.
    """

    def __init__(
        self,
        *,
        provider: GenerationProvider,
        credential_pool: CredentialPool,
        extractor: ResponseExtractor | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.credential_pool = credential_pool
        self.extractor = extractor or ResponseExtractor()
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def execute(self, job: JobView, *, on_event: EventSink | None = None) -> Any:
        """Return the parsed payload for ``job`` or raise the most recent error."""

        emit = on_event or _ignore_event
        request = build_request(job.kind, job.input)
        candidates = self.credential_pool.acquire(job.caller_id)
        if not candidates:
            raise NoCredentialsError("No provider credentials are available.")

        last_error: GenerationError | None = None
        for credential in candidates:
            try:
                result = with_retry(
                    lambda credential=credential: self.extractor.extract(
                        self.provider.send(credential.value, request),
                    ),
                    self.retry_policy,
                    sleep=self._sleep,
                    on_retry=_retry_reporter(emit, credential),
                )
            except CredentialInvalidError as error:
                until = self.credential_pool.quarantine(credential)
                emit(
                    "credential_quarantined",
                    {"credential": credential.label, "until": until.isoformat()},
                )
                last_error = error
                continue
            except RETRYABLE_ERRORS as error:
                logger.warning(
                    "Job %s: giving up on credential %s after retries: %s",
                    job.job_id,
                    credential,
                    error.__class__.__name__,
                )
                last_error = error
                continue
            self.credential_pool.clear(credential)
            logger.info("Job %s: generation succeeded with credential %s", job.job_id, credential)
            return result

        if last_error is None:
            raise NoCredentialsError("No provider credentials are available.")
        raise last_error


def _retry_reporter(
    emit: EventSink,
    credential: Credential,
) -> Callable[[int, GenerationError, float], None]:
    def report(attempt: int, error: GenerationError, delay: float) -> None:
        emit(
            "retry_scheduled",
            {
                "credential": credential.label,
                "attempt": attempt,
                "error": error.__class__.__name__,
                "delay_seconds": round(delay, 3),
            },
        )

    return report


def _ignore_event(event_type: str, details: dict[str, object]) -> None:
    del event_type, details
