"""Bounded retry with provider-hinted or exponential backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from genqueue.generation.errors import RETRYABLE_ERRORS, GenerationError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, GenerationError, float], None]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How many total attempts to make and how long to wait between them."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0

    def delay_for(self, attempt: int, error: GenerationError) -> float:
        """Delay before the attempt following failed attempt number ``attempt``."""

        if isinstance(error, RateLimitError) and error.retry_after_seconds is not None:
            return max(0.0, min(self.max_delay_seconds, error.retry_after_seconds))
        return compute_backoff_delay(
            attempt,
            base_seconds=self.base_delay_seconds,
            max_seconds=self.max_delay_seconds,
        )


def compute_backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: ``base * 2**(attempt-1)`` capped at ``max_seconds``."""

    exponent = max(0, attempt - 1)
    return max(0.0, min(max_seconds, base_seconds * (2**exponent)))


def is_retryable(error: BaseException) -> bool:
    """Whether the retry controller may try again after ``error``."""

    return isinstance(error, RETRYABLE_ERRORS)


def with_retry(
    attempt_fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: RetryCallback | None = None,
) -> T:
    """Run ``attempt_fn`` until it succeeds or retries are exhausted.

    Only rate-limit, transient and status-message errors are retried; any other
    exception propagates from the first attempt. When ``max_attempts`` is
    reached the last error is raised unchanged.
    """

    max_attempts = max(1, policy.max_attempts)
    attempt = 1
    while True:
        try:
            return attempt_fn()
        except RETRYABLE_ERRORS as error:
            if attempt >= max_attempts:
                raise
            delay = policy.delay_for(attempt, error)
            logger.info(
                "Retrying after %s (attempt %d/%d, sleeping %.2fs)",
                error.__class__.__name__,
                attempt,
                max_attempts,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, error, delay)
            if delay > 0:
                sleep(delay)
            attempt += 1
