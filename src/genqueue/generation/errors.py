"""Generation error taxonomy and deterministic provider failure classification."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from genqueue.generation.sanitization import redact_error

PROVIDER_FAILURE_CLASSIFIER_VERSION = 1

_DEFAULT_DESCRIPTION_CHARS = 500


class GenerationError(Exception):
    """Base class for every failure raised by the generation pipeline."""


class TransientProviderError(GenerationError):
    """Network failure, timeout or 5xx answer; safe to retry."""


class RateLimitError(TransientProviderError):
    """Provider throttled the call; may carry a retry delay hint."""

    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class StatusMessageError(GenerationError):
    """Provider answered with a loading/initialization message instead of data."""

    def __init__(self, message: str, *, excerpt: str = "") -> None:
        super().__init__(message)
        self.excerpt = excerpt


class CredentialInvalidError(GenerationError):
    """Provider rejected the credential as invalid, revoked or leaked."""


class MalformedOutputError(GenerationError):
    """Provider text holds no recoverable structured payload."""

    def __init__(self, message: str, *, excerpt: str = "") -> None:
        super().__init__(message)
        self.excerpt = excerpt


class ProviderRequestError(GenerationError):
    """Provider refused the request for a reason retrying cannot fix."""


class UnknownJobKindError(GenerationError):
    """Job kind has no request builder."""


class NoCredentialsError(GenerationError):
    """Credential pool produced no candidate at all."""


class SubmissionError(GenerationError):
    """Job could not be durably recorded at submission time."""


RETRYABLE_ERRORS: tuple[type[GenerationError], ...] = (
    RateLimitError,
    TransientProviderError,
    StatusMessageError,
)


class FailureClass(str, Enum):
    """Normalized provider failure classes."""

    CREDENTIAL_INVALID = "credential_invalid"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


_CREDENTIAL_INVALID_PATTERNS: tuple[str, ...] = (
    "leaked",
    "api key was reported",
    "api key not valid",
    "api_key_invalid",
    "invalid api key",
    "api key expired",
    "revoked",
    "permission denied",
    "unauthenticated",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "resource_exhausted",
    "quota",
    "rate limit",
    "too many requests",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "overloaded",
    "unavailable",
    "deadline exceeded",
    "internal error",
    "connection reset",
    "try again later",
)
_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 500, 502, 503, 504})

_RETRY_IN_RE = re.compile(r"(?i)retry in\s+([0-9]+(?:\.[0-9]+)?)\s*(ms|s)?")
_RETRY_DELAY_FIELD_RE = re.compile(r"\"retryDelay\"\s*:\s*\"([0-9]+(?:\.[0-9]+)?)s\"")


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized provider failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self, *, provider: str) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": PROVIDER_FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(
    *,
    provider: str,
    status_code: int | None,
    message: str,
) -> ProviderFailureClassification:
    """Classify a provider failure into a deterministic retry class."""

    haystack = message.lower()

    pattern = _first_match(haystack, _CREDENTIAL_INVALID_PATTERNS)
    if pattern is not None or status_code == 401:
        return ProviderFailureClassification(
            failure_class=FailureClass.CREDENTIAL_INVALID,
            reason_code=f"{provider}_credential_invalid",
            matched_rule="credential_invalid" if pattern is not None else "unauthorized_status",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None or status_code == 429:
        return ProviderFailureClassification(
            failure_class=FailureClass.RATE_LIMIT,
            reason_code=f"{provider}_rate_limit",
            matched_rule="rate_limit" if pattern is not None else "rate_limit_status",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or status_code in _TRANSIENT_STATUS_CODES:
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code=f"{provider}_transient",
            matched_rule="transient_status" if pattern is None else "generic_transient",
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code=f"{provider}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def provider_error(
    classification: ProviderFailureClassification,
    *,
    status_code: int | None,
    message: str,
    retry_after_seconds: float | None = None,
) -> GenerationError:
    """Build the exception matching a failure classification."""

    text = redact_error(message, max_chars=_DEFAULT_DESCRIPTION_CHARS) or "no details"
    prefix = f"Provider error ({status_code})" if status_code is not None else "Provider error"
    if classification.failure_class == FailureClass.CREDENTIAL_INVALID:
        return CredentialInvalidError(f"{prefix}: credential rejected: {text}")
    if classification.failure_class == FailureClass.RATE_LIMIT:
        return RateLimitError(
            f"{prefix}: quota exceeded: {text}",
            retry_after_seconds=(
                retry_after_seconds if retry_after_seconds is not None else parse_retry_delay(message)
            ),
        )
    if classification.failure_class == FailureClass.TRANSIENT:
        return TransientProviderError(f"{prefix}: {text}")
    return ProviderRequestError(f"{prefix}: {text}")


def parse_retry_delay(text: str) -> float | None:
    """Extract a provider retry delay hint in seconds, when one is present."""

    match = _RETRY_DELAY_FIELD_RE.search(text)
    if match is not None:
        return float(match.group(1))
    match = _RETRY_IN_RE.search(text)
    if match is None:
        return None
    value = float(match.group(1))
    if (match.group(2) or "s").lower() == "ms":
        return value / 1000.0
    return value


def describe_failure(error: BaseException, *, max_chars: int = _DEFAULT_DESCRIPTION_CHARS) -> str:
    """Collapse an exception into one readable, redacted error string."""

    if isinstance(error, GenerationError):
        text = str(error) or error.__class__.__name__
    else:
        text = f"Unexpected {error.__class__.__name__}: {error}"
    return redact_error(text, max_chars=max_chars)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
