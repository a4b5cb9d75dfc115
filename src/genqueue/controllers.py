"""Controllers for genqueue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from genqueue.config import Settings
from genqueue.generation.provider import GenerationProvider
from genqueue.generation.sanitization import mask_secret
from genqueue.jobs.models import JobStatus, JobView
from genqueue.runtime import Runtime, open_runtime
from genqueue.storage.credential_repository import CredentialRepository


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    kind: str
    input_json: str
    caller_id: str | None


@dataclass(slots=True)
class JobLookupCommand:
    """CLI input addressing one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    caller_id: str | None
    limit: int


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    concurrency: int | None
    once: bool


@dataclass(slots=True)
class CredentialAddCommand:
    db_path: Path | None
    value: str
    caller_id: str | None
    label: str | None


@dataclass(slots=True)
class CredentialListCommand:
    db_path: Path | None
    caller_id: str | None


@dataclass(slots=True)
class CredentialRemoveCommand:
    db_path: Path | None
    credential_id: int


class GenQueueCliController:
    """Coordinates submission, inspection, worker and credential CLI operations."""

    def __init__(self, *, provider: GenerationProvider | None = None) -> None:
        self._provider = provider

    def submit(self, command: JobSubmitCommand) -> list[str]:
        payload = _parse_input(command.input_json)
        with self._runtime(command.db_path) as runtime:
            job = runtime.dispatcher().submit(command.kind, payload, caller_id=command.caller_id)
            mode = "broker" if runtime.broker is not None and not job.is_terminal else "inline"
        lines = [f"Job submitted: job_id={job.job_id} kind={job.kind} status={job.status.value} mode={mode}"]
        lines.extend(_outcome_lines(job))
        return lines

    def status(self, command: JobLookupCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            view = runtime.dispatcher().get_status(command.job_id)
        if view is None:
            return [f"Job not found: {command.job_id}"]
        lines = [f"Job {view.job_id}: {view.status.value}"]
        if view.result is not None:
            lines.append(f"Result: {json.dumps(view.result, ensure_ascii=False, sort_keys=True)}")
        if view.error is not None:
            lines.append(f"Error: {view.error}")
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        with self._runtime(command.db_path) as runtime:
            jobs = runtime.repository.list_jobs(
                status=status_filter,
                caller_id=command.caller_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} kind={job.kind} status={job.status.value} "
                f"caller={job.caller_id or '-'} attempts={job.attempts} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect(self, command: JobLookupCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            details = runtime.repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Kind: {job.kind}",
            f"Caller: {job.caller_id or '-'}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}",
            f"Cancel requested: {'yes' if job.cancel_requested else 'no'}",
            f"Error: {job.error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            suffix = (
                f" {json.dumps(event.details, ensure_ascii=False, sort_keys=True)}"
                if event.details
                else ""
            )
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}{suffix}",
            )
        return lines

    def cancel(self, command: JobLookupCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            job = runtime.dispatcher().cancel(command.job_id)
        if job.status == JobStatus.CANCELLED:
            return [f"Job cancelled: {job.job_id}"]
        return [f"Cancellation requested: {job.job_id} (finishes after the in-flight call)"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with self._runtime(command.db_path) as runtime:
            if runtime.broker is None:
                return ["Broker is not enabled; jobs run inline at submission."]
            if command.once:
                worker = runtime.worker(f"{runtime.settings.worker.worker_id}-1")
                summary = worker.run_once()
            else:
                summary = runtime.worker_pool(concurrency=command.concurrency).run_forever()
            counts = runtime.broker.counts()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"skipped={summary.skipped} requeued={summary.requeued} "
            f"dead_lettered={summary.dead_lettered} idle_polls={summary.idle_polls}",
            "Broker: " + " ".join(f"{state}={count}" for state, count in sorted(counts.items())),
        ]

    def add_credential(self, command: CredentialAddCommand) -> list[str]:
        with _credentials(command.db_path) as repository:
            stored = repository.add_credential(
                value=command.value,
                owner_id=command.caller_id,
                label=command.label,
            )
        scope = f"caller={stored.owner_id}" if stored.owner_id else "shared"
        return [f"Credential added: id={stored.credential_id} {scope} value={mask_secret(stored.value)}"]

    def list_credentials(self, command: CredentialListCommand) -> list[str]:
        with _credentials(command.db_path) as repository:
            stored = repository.list_credentials(owner_id=command.caller_id)
        lines = [f"Credentials: {len(stored)}"]
        for item in stored:
            lines.append(
                f"  {item.credential_id} owner={item.owner_id or 'shared'} "
                f"label={item.label or '-'} value={mask_secret(item.value)}",
            )
        return lines

    def remove_credential(self, command: CredentialRemoveCommand) -> list[str]:
        with _credentials(command.db_path) as repository:
            removed = repository.remove_credential(credential_id=command.credential_id)
        if not removed:
            return [f"Credential not found: {command.credential_id}"]
        return [f"Credential removed: {command.credential_id}"]

    @contextmanager
    def _runtime(self, db_path: Path | None) -> Iterator[Runtime]:
        settings = Settings.from_env(db_path=db_path)
        with open_runtime(settings, provider=self._provider) as runtime:
            yield runtime


def _outcome_lines(job: JobView) -> list[str]:
    if job.result is not None:
        return [f"Result: {json.dumps(job.result, ensure_ascii=False, sort_keys=True)}"]
    if job.error is not None:
        return [f"Error: {job.error}"]
    return []


def _parse_input(raw: str) -> dict[str, object]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Job input is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Job input must be a JSON object.")
    return payload


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _credentials(db_path: Path | None) -> Iterator[CredentialRepository]:
    settings = Settings.from_env(db_path=db_path)
    repository = CredentialRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
