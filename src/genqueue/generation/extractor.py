"""Structured payload extraction from free-text provider responses.

Provider output is one of three shapes: a clean JSON payload, a payload wrapped
in prose (or a markdown fence), or a plain status message such as
"Initialization in progress". Extraction runs as layers:

1. fast rejection of texts without any ``{``/``[``;
2. a single string/escape aware pass that pairs every opening delimiter with
   its balanced closer;
3. a scan over those spans, skipping candidates whose leading prose carries
   status vocabulary and anything nested in an already accepted payload;
4. validation with ``json.loads``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from genqueue.generation.errors import MalformedOutputError, StatusMessageError

logger = logging.getLogger(__name__)

STATUS_VOCABULARY: tuple[str, ...] = (
    "initializ",
    "loading",
    "processing",
    "please wait",
    "warming up",
    "starting up",
)

_OPENERS = {"{": "}", "[": "]"}
_FENCED_RE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)


class Classification(str, Enum):
    """How a raw provider text was interpreted."""

    STRUCTURED = "structured"
    STATUS_MESSAGE = "status_message"
    UNPARSEABLE = "unparseable"


@dataclass(slots=True)
class ExtractionAttempt:
    """Outcome of one extraction pass over a raw provider text."""

    raw_text: str
    classification: Classification
    parsed: Any | None = None
    error: str | None = None


@dataclass(slots=True)
class _Candidate:
    start: int
    end: int
    value: Any


class ResponseExtractor:
    """Classify provider text and recover the structured payload it carries."""

    def __init__(self, *, status_window_chars: int = 100, excerpt_chars: int = 100) -> None:
        self.status_window_chars = max(0, status_window_chars)
        self.excerpt_chars = max(1, excerpt_chars)

    def classify(self, raw_text: str) -> Classification:
        """Return the classification of ``raw_text``."""

        return self.inspect(raw_text).classification

    def extract(self, raw_text: str) -> Any:
        """Return the parsed payload or raise the matching extraction error."""

        attempt = self.inspect(raw_text)
        if attempt.classification == Classification.STRUCTURED:
            return attempt.parsed
        excerpt = self._excerpt(raw_text)
        if attempt.classification == Classification.STATUS_MESSAGE:
            raise StatusMessageError(attempt.error or "", excerpt=excerpt)
        raise MalformedOutputError(attempt.error or "", excerpt=excerpt)

    def inspect(self, raw_text: str) -> ExtractionAttempt:
        """Run every extraction layer and report the outcome."""

        text = _unwrap_fence(raw_text.strip())
        if "{" not in text and "[" not in text:
            if looks_like_status(text):
                return self._status_attempt(raw_text)
            return self._unparseable_attempt(raw_text)

        skipped_for_status = False
        first_object: _Candidate | None = None
        first_array: _Candidate | None = None
        parsed_until = -1
        for position, end in balanced_spans(text).items():
            # Anything nested in an accepted payload belongs to that payload.
            if position <= parsed_until:
                continue
            char = text[position]
            if char == "{" and first_object is not None:
                continue
            if char == "[" and first_array is not None:
                continue
            if self._status_precedes(text, position):
                skipped_for_status = True
                continue
            candidate = _parse_candidate(text, position, end)
            if candidate is None:
                continue
            parsed_until = max(parsed_until, candidate.end)
            if char == "{":
                first_object = candidate
            else:
                first_array = candidate
            if first_object is not None and first_array is not None:
                break

        chosen = _prefer_object(first_object, first_array)
        if chosen is not None:
            logger.debug(
                "Extracted %s payload at offset %d",
                type(chosen.value).__name__,
                chosen.start,
            )
            return ExtractionAttempt(
                raw_text=raw_text,
                classification=Classification.STRUCTURED,
                parsed=chosen.value,
            )
        if skipped_for_status or looks_like_status(text):
            return self._status_attempt(raw_text)
        return self._unparseable_attempt(raw_text)

    def _status_precedes(self, text: str, position: int) -> bool:
        if self.status_window_chars == 0:
            return False
        window = text[max(0, position - self.status_window_chars) : position].lower()
        return any(term in window for term in STATUS_VOCABULARY)

    def _status_attempt(self, raw_text: str) -> ExtractionAttempt:
        return ExtractionAttempt(
            raw_text=raw_text,
            classification=Classification.STATUS_MESSAGE,
            error=(
                "Provider response could not be parsed: got a status message "
                f"instead of data: {self._excerpt(raw_text)!r}"
            ),
        )

    def _unparseable_attempt(self, raw_text: str) -> ExtractionAttempt:
        return ExtractionAttempt(
            raw_text=raw_text,
            classification=Classification.UNPARSEABLE,
            error=(
                "Provider response could not be parsed as structured data: "
                f"{self._excerpt(raw_text)!r}"
            ),
        )

    def _excerpt(self, raw_text: str) -> str:
        return raw_text.strip()[: self.excerpt_chars]


def looks_like_status(text: str) -> bool:
    """Whether text opens with transient status vocabulary."""

    lowered = text.strip().lower()
    return any(lowered.startswith(term) for term in STATUS_VOCABULARY)


def balanced_spans(text: str, start: int = 0) -> dict[int, int]:
    """Map each opening delimiter from ``start`` on to its balanced closer.

    One left-to-right pass. Openers that never balance, either because the
    text ends first or because a mismatched closer interrupts them, are left
    out. Quotes only open strings inside a delimiter, so prose apostrophes
    and quotes around a payload do not hide it. Keys are in ascending order.
    """

    spans: dict[int, int] = {}
    stack: list[int] = []
    in_string = False
    escaped = False
    for position in range(start, len(text)):
        char = text[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = bool(stack)
        elif char in _OPENERS:
            stack.append(position)
        elif char in ("}", "]"):
            if not stack:
                continue
            opener = stack.pop()
            if _OPENERS[text[opener]] != char:
                # Every opener still open shares this closer, so none can balance.
                stack.clear()
                continue
            spans[opener] = position
    return dict(sorted(spans.items()))


def find_balanced_end(text: str, start: int) -> int | None:
    """Index of the delimiter closing the one at ``start``, if it is balanced."""

    if start >= len(text) or text[start] not in _OPENERS:
        return None
    return balanced_spans(text, start).get(start)


def _parse_candidate(text: str, start: int, end: int) -> _Candidate | None:
    try:
        value = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return _Candidate(start=start, end=end, value=value)


def _prefer_object(
    first_object: _Candidate | None,
    first_array: _Candidate | None,
) -> _Candidate | None:
    if first_object is None:
        return first_array
    if first_array is None:
        return first_object
    # An array that starts earlier and encloses the object is the real payload.
    if first_array.start < first_object.start and first_array.end > first_object.end:
        return first_array
    return first_object


def _unwrap_fence(text: str) -> str:
    match = _FENCED_RE.match(text)
    if match is None:
        return text
    return match.group("body").strip()
