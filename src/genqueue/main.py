"""CLI entrypoint for genqueue."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from genqueue import __version__
from genqueue.controllers import (
    CredentialAddCommand,
    CredentialListCommand,
    CredentialRemoveCommand,
    GenQueueCliController,
    JobListCommand,
    JobLookupCommand,
    JobSubmitCommand,
    WorkerRunCommand,
)
from genqueue.generation.errors import GenerationError
from genqueue.jobs.models import JobKind, JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GenQueueCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="genqueue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for pipeline diagnostics (written to stderr).",
)
def genqueue(log_level: str) -> None:
    """Resilient generation job queue CLI."""

    logging.basicConfig(level=log_level.upper(), format=_LOG_FORMAT)


@genqueue.group()
def jobs() -> None:
    """Job submission and inspection commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--kind",
    required=True,
    type=click.Choice([kind.value for kind in JobKind], case_sensitive=False),
    help="Generation job kind.",
)
@click.option("--input", "input_json", default="{}", show_default=True, help="Job input as JSON object.")
@click.option("--caller", "caller_id", default=None, help="Caller id used for credential selection.")
def jobs_submit(db_path: Path | None, kind: str, input_json: str, caller_id: str | None) -> None:
    """Submit a job; runs inline when no broker is enabled."""

    _emit(
        lambda: CONTROLLER.submit(
            JobSubmitCommand(
                db_path=db_path,
                kind=kind,
                input_json=input_json,
                caller_id=caller_id,
            ),
        ),
    )


@jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Show job status with result or error."""

    _emit(lambda: CONTROLLER.status(JobLookupCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--caller", "caller_id", default=None, help="Optional caller filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max jobs to list.",
)
def jobs_list(db_path: Path | None, status: str | None, caller_id: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit(
        lambda: CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, caller_id=caller_id, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show job details with its event trail."""

    _emit(lambda: CONTROLLER.inspect(JobLookupCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending job or flag a processing one."""

    _emit(lambda: CONTROLLER.cancel(JobLookupCommand(db_path=db_path, job_id=job_id)))


@genqueue.group()
def worker() -> None:
    """Broker worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads (defaults to GENQUEUE_WORKER_CONCURRENCY).",
)
@click.option(
    "--once/--forever",
    default=False,
    show_default=True,
    help="Process one delivery, or run the pool until SIGINT/SIGTERM.",
)
def worker_run(db_path: Path | None, concurrency: int | None, once: bool) -> None:
    """Run broker workers."""

    _emit(
        lambda: CONTROLLER.run_worker(
            WorkerRunCommand(db_path=db_path, concurrency=concurrency, once=once),
        ),
    )


@genqueue.group()
def credentials() -> None:
    """Provider credential commands."""


@credentials.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--value", required=True, help="Credential value (API key).")
@click.option("--caller", "caller_id", default=None, help="Owner caller id; omit for shared.")
@click.option("--label", default=None, help="Optional human-readable label.")
def credentials_add(db_path: Path | None, value: str, caller_id: str | None, label: str | None) -> None:
    """Register a caller or shared credential."""

    _emit(
        lambda: CONTROLLER.add_credential(
            CredentialAddCommand(db_path=db_path, value=value, caller_id=caller_id, label=label),
        ),
    )


@credentials.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--caller", "caller_id", default=None, help="Optional owner filter.")
def credentials_list(db_path: Path | None, caller_id: str | None) -> None:
    """List credentials with masked values."""

    _emit(
        lambda: CONTROLLER.list_credentials(
            CredentialListCommand(db_path=db_path, caller_id=caller_id),
        ),
    )


@credentials.command("remove")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--id", "credential_id", type=int, required=True, help="Credential id.")
def credentials_remove(db_path: Path | None, credential_id: int) -> None:
    """Remove a credential."""

    _emit(
        lambda: CONTROLLER.remove_credential(
            CredentialRemoveCommand(db_path=db_path, credential_id=credential_id),
        ),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (GenerationError, RuntimeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    genqueue()
