from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from genqueue.main import genqueue

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Jobs, Workers, Credentials"),
]

_INPUT = json.dumps({"inspiration": "termite mounds", "domain": "cooling"})


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("GENQUEUE_PROVIDER", "scripted")
    return tmp_path / "cli.db"


def _job_id(output: str) -> str:
    match = re.search(r"job_id=([0-9a-f-]+)", output)
    assert match is not None, output
    return match.group(1)


def test_inline_submit_status_and_inspect(db_path: Path) -> None:
    runner = CliRunner()

    submitted = runner.invoke(
        genqueue,
        ["jobs", "submit", "--db-path", str(db_path), "--kind", "generate", "--input", _INPUT],
    )
    assert submitted.exit_code == 0, submitted.output
    assert "status=completed mode=inline" in submitted.output
    assert "Result: " in submitted.output
    job_id = _job_id(submitted.output)

    status = runner.invoke(genqueue, ["jobs", "status", "--db-path", str(db_path), "--job-id", job_id])
    assert status.exit_code == 0, status.output
    assert f"Job {job_id}: completed" in status.output

    inspected = runner.invoke(
        genqueue,
        ["jobs", "inspect", "--db-path", str(db_path), "--job-id", job_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert "claimed pending -> processing" in inspected.output
    assert "completed processing -> completed" in inspected.output

    listed = runner.invoke(genqueue, ["jobs", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output


def test_broker_submit_then_worker_once(db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GENQUEUE_BROKER_ENABLED", "1")
    runner = CliRunner()

    submitted = runner.invoke(
        genqueue,
        ["jobs", "submit", "--db-path", str(db_path), "--kind", "analyze", "--input", '{"algorithm": "A*"}'],
    )
    assert submitted.exit_code == 0, submitted.output
    assert "status=pending mode=broker" in submitted.output
    job_id = _job_id(submitted.output)

    worked = runner.invoke(genqueue, ["worker", "run", "--db-path", str(db_path), "--once"])
    assert worked.exit_code == 0, worked.output
    assert "processed=1 succeeded=1" in worked.output
    assert "acked=1" in worked.output

    status = runner.invoke(genqueue, ["jobs", "status", "--db-path", str(db_path), "--job-id", job_id])
    assert f"Job {job_id}: completed" in status.output


def test_worker_without_broker_reports_inline_mode(db_path: Path) -> None:
    result = CliRunner().invoke(genqueue, ["worker", "run", "--db-path", str(db_path), "--once"])

    assert result.exit_code == 0, result.output
    assert "Broker is not enabled" in result.output


def test_cancel_pending_job(db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GENQUEUE_BROKER_ENABLED", "true")
    runner = CliRunner()
    submitted = runner.invoke(
        genqueue,
        ["jobs", "submit", "--db-path", str(db_path), "--kind", "generate", "--input", _INPUT],
    )
    job_id = _job_id(submitted.output)

    cancelled = runner.invoke(genqueue, ["jobs", "cancel", "--db-path", str(db_path), "--job-id", job_id])
    assert cancelled.exit_code == 0, cancelled.output
    assert f"Job cancelled: {job_id}" in cancelled.output

    again = runner.invoke(genqueue, ["jobs", "cancel", "--db-path", str(db_path), "--job-id", job_id])
    assert again.exit_code != 0
    assert "cannot be cancelled" in again.output


def test_submit_rejects_non_object_input(db_path: Path) -> None:
    result = CliRunner().invoke(
        genqueue,
        ["jobs", "submit", "--db-path", str(db_path), "--kind", "generate", "--input", "[1, 2]"],
    )

    assert result.exit_code != 0
    assert "must be a JSON object" in result.output


def test_credentials_add_list_remove_masks_values(db_path: Path) -> None:
    runner = CliRunner()

    added = runner.invoke(
        genqueue,
        [
            "credentials",
            "add",
            "--db-path",
            str(db_path),
            "--value",
            "AIzaSyCliSecretValue0000000000009876",
            "--caller",
            "alice",
        ],
    )
    assert added.exit_code == 0, added.output
    assert "caller=alice" in added.output
    assert "AIzaSyCliSecretValue0000000000009876" not in added.output
    credential_id = re.search(r"id=(\d+)", added.output)
    assert credential_id is not None

    duplicate = runner.invoke(
        genqueue,
        [
            "credentials",
            "add",
            "--db-path",
            str(db_path),
            "--value",
            "AIzaSyCliSecretValue0000000000009876",
        ],
    )
    assert duplicate.exit_code != 0
    assert "already registered" in duplicate.output

    listed = runner.invoke(genqueue, ["credentials", "list", "--db-path", str(db_path)])
    assert "Credentials: 1" in listed.output
    assert "...9876" in listed.output

    removed = runner.invoke(
        genqueue,
        ["credentials", "remove", "--db-path", str(db_path), "--id", credential_id.group(1)],
    )
    assert f"Credential removed: {credential_id.group(1)}" in removed.output
    missing = runner.invoke(
        genqueue,
        ["credentials", "remove", "--db-path", str(db_path), "--id", credential_id.group(1)],
    )
    assert "Credential not found" in missing.output
