"""Redaction of credentials in error text that reaches jobs, events and logs."""

from __future__ import annotations

import re
from collections.abc import Iterable

_DEFAULT_MAX_CHARS = 2_000
_MASK_VISIBLE_CHARS = 4

_KEY_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    # Google API keys as issued for the generation provider.
    (re.compile(r"\bAIza[0-9A-Za-z_\-]{20,}"), "[redacted-key]"),
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"), r"\1 [redacted-token]"),
    (re.compile(r"(?i)\b(x-goog-api-key|authorization)\s*[:=]\s*\S+"), r"\1: [redacted]"),
    (re.compile(r"(?i)([?&]key=)[^&\s\"']+"), r"\1[redacted]"),
    (
        re.compile(r"(?i)\bGENQUEUE_[A-Z_]*API_KEY\s*[:=]\s*['\"]?[^'\"\s]+['\"]?"),
        "[redacted-secret]",
    ),
)
_WHITESPACE = re.compile(r"\s+")


def redact_error(
    text: str,
    *,
    max_chars: int = _DEFAULT_MAX_CHARS,
    secrets: Iterable[str] = (),
) -> str:
    """Single-line, length-clamped ``text`` with credential material removed.

    Known credential values passed in ``secrets`` are replaced verbatim before
    the pattern rules run.
    """

    compact = _WHITESPACE.sub(" ", text).strip()
    if not compact:
        return ""
    for secret in secrets:
        if secret:
            compact = compact.replace(secret, mask_secret(secret))
    for pattern, replacement in _KEY_PATTERNS:
        compact = pattern.sub(replacement, compact)
    return compact[:max_chars]


def mask_secret(value: str) -> str:
    """Short masked form of a credential for logs and listings."""

    if len(value) <= 2 * _MASK_VISIBLE_CHARS:
        return "***"
    return f"{value[:_MASK_VISIBLE_CHARS]}...{value[-_MASK_VISIBLE_CHARS:]}"
