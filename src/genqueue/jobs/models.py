"""Domain models for generation jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    """Closed set of generation operations."""

    GENERATE = "generate"
    SYNTHESIZE = "synthesize"
    ANALYZE = "analyze"
    IMPROVE = "improve"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def parse_job_kind(value: str) -> JobKind | None:
    """Resolve a job kind name, returning None for unknown kinds."""

    try:
        return JobKind(value.strip().lower())
    except ValueError:
        return None


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job record."""

    kind: JobKind
    input: dict[str, Any]
    caller_id: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for dispatcher, workers and CLI."""

    job_id: str
    kind: str
    caller_id: str | None
    status: JobStatus
    input: dict[str, Any]
    result: Any | None
    error: str | None
    cancel_requested: bool
    attempts: int
    executor_id: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobStatusView:
    """Polling view returned to submitters."""

    job_id: str
    status: JobStatus
    result: Any | None = None
    error: str | None = None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]
