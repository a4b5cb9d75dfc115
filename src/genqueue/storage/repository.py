"""Persistent job repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from genqueue.jobs.models import (
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
)
from genqueue.storage.alembic_runner import upgrade_head
from genqueue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from genqueue.storage.sqlmodel_models import GenerationJob, GenerationJobEvent


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite.

    Every status transition is a conditional update on the expected previous
    status, so two executors can never both move the same job forward.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobCreate) -> JobView:
        """Durably record a pending job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = GenerationJob(
                job_id=job_id,
                kind=payload.kind.value,
                caller_id=payload.caller_id,
                status=JobStatus.PENDING.value,
                input_json=_dump_json(payload.input),
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"kind": payload.kind.value, "caller_id": payload.caller_id},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_job(
        self,
        *,
        job_id: str,
        executor_id: str,
        allow_reclaim: bool = False,
    ) -> JobView | None:
        """Move a pending job to processing for one executor.

        With ``allow_reclaim`` a job left in processing by a lost executor can be
        taken over; callers pass it only for broker redeliveries.
        """

        now = utc_now()
        claimable = [JobStatus.PENDING.value]
        if allow_reclaim:
            claimable.append(JobStatus.PROCESSING.value)
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if row is None or row.status not in claimable:
                return None
            previous = JobStatus(row.status)
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == previous.value,
                    col(GenerationJob.attempts) == row.attempts,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=row.attempts + 1,
                    executor_id=executor_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed" if previous == JobStatus.PENDING else "reclaimed",
                status_from=previous,
                status_to=JobStatus.PROCESSING,
                details={"executor_id": executor_id, "attempt": row.attempts + 1},
            )
            session.commit()
            claimed = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one()
            return _to_job_view(claimed)

    def complete_job(self, *, job_id: str, result: Any) -> bool:
        """Mark a processing job as completed with its result."""

        return self._finish(
            job_id=job_id,
            status=JobStatus.COMPLETED,
            from_statuses=(JobStatus.PROCESSING,),
            values={"result_json": _dump_json(result), "error": None},
            event_type="completed",
            details={},
            unless_cancel_requested=True,
        )

    def fail_job(
        self,
        *,
        job_id: str,
        error: str,
        from_statuses: Iterable[JobStatus] = (JobStatus.PROCESSING,),
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a job as failed with a readable error."""

        return self._finish(
            job_id=job_id,
            status=JobStatus.FAILED,
            from_statuses=tuple(from_statuses),
            values={"error": error, "result_json": None},
            event_type="failed",
            details={"error": error, **(details or {})},
            unless_cancel_requested=True,
        )

    def finish_cancelled(self, *, job_id: str) -> bool:
        """Write the cancelled terminal state for a processing job."""

        return self._finish(
            job_id=job_id,
            status=JobStatus.CANCELLED,
            from_statuses=(JobStatus.PROCESSING,),
            values={"result_json": None},
            event_type="cancelled",
            details={"while": JobStatus.PROCESSING.value},
        )

    def cancel_job(self, *, job_id: str) -> JobView:
        """Cancel a pending job or flag a processing job for cancellation."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")

            previous = JobStatus(row.status)
            if previous == JobStatus.PENDING:
                values: dict[str, object] = {
                    "status": JobStatus.CANCELLED.value,
                    "completed_at": to_db_datetime(now),
                    "updated_at": to_db_datetime(now),
                }
                event_type = "cancelled"
                status_to = JobStatus.CANCELLED
            elif previous == JobStatus.PROCESSING:
                values = {"cancel_requested": True, "updated_at": to_db_datetime(now)}
                event_type = "cancel_requested"
                status_to = JobStatus.PROCESSING
            else:
                raise RuntimeError(f"Job cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while cancelling; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details={},
            )
            session.commit()
            updated = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one()
            return _to_job_view(updated)

    def get_job(self, *, job_id: str) -> JobView | None:
        """Return one job by id."""

        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        caller_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and caller."""

        with Session(self.engine) as session:
            statement = select(GenerationJob).order_by(col(GenerationJob.created_at).desc())
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            if caller_id is not None:
                statement = statement.where(GenerationJob.caller_id == caller_id)
            rows = session.exec(statement.limit(limit)).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(GenerationJobEvent)
                .where(GenerationJobEvent.job_id == job_id)
                .order_by(col(GenerationJobEvent.created_at).asc(), col(GenerationJobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(job), events=events)

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
        status_from: JobStatus | None = None,
        status_to: JobStatus | None = None,
    ) -> None:
        """Append one event to the job audit trail."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def _finish(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        status: JobStatus,
        from_statuses: tuple[JobStatus, ...],
        values: dict[str, object],
        event_type: str,
        details: dict[str, object],
        unless_cancel_requested: bool = False,
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationJob).where(GenerationJob.job_id == job_id),
            ).one_or_none()
            if row is None or row.status not in {item.value for item in from_statuses}:
                return False
            previous = JobStatus(row.status)
            statement = sa_update(GenerationJob).where(
                col(GenerationJob.job_id) == job_id,
                col(GenerationJob.status) == previous.value,
            )
            if unless_cancel_requested:
                statement = statement.where(col(GenerationJob.cancel_requested).is_(False))
            result = session.exec(
                statement.values(
                    status=status.value,
                    updated_at=to_db_datetime(now),
                    completed_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=previous,
                status_to=status,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _to_job_view(row: GenerationJob) -> JobView:
    payload = _load_json(row.input_json)
    return JobView(
        job_id=row.job_id,
        kind=row.kind,
        caller_id=row.caller_id,
        status=JobStatus(row.status),
        input=payload if isinstance(payload, dict) else {},
        result=_load_json(row.result_json),
        error=row.error,
        cancel_requested=bool(row.cancel_requested),
        attempts=row.attempts,
        executor_id=row.executor_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )
