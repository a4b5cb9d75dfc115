from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from genqueue.credentials.pool import Credential, CredentialPool, CredentialTier
from genqueue.generation.client import GenerationClient
from genqueue.generation.errors import (
    CredentialInvalidError,
    MalformedOutputError,
    NoCredentialsError,
    RateLimitError,
    StatusMessageError,
    TransientProviderError,
    UnknownJobKindError,
)
from genqueue.generation.provider import ScriptedProvider
from genqueue.generation.retry import RetryPolicy
from genqueue.jobs.models import JobStatus, JobView

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Generation Client"),
]

_PAYLOAD = '{"name": "X", "steps": ["a", "b"]}'


class _Source:
    def __init__(self, *values: str) -> None:
        self.values = values

    def lookup(self, caller_id: str | None) -> list[Credential]:
        return [
            Credential(value=value, tier=CredentialTier.POOL, label=f"pool:{index}")
            for index, value in enumerate(self.values, start=1)
        ]


def _job(kind: str = "generate", caller_id: str | None = "alice") -> JobView:
    now = datetime(2026, 1, 1, tzinfo=UTC)
    return JobView(
        job_id="job-1",
        kind=kind,
        caller_id=caller_id,
        status=JobStatus.PROCESSING,
        input={"inspiration": "ant colonies", "domain": "routing"},
        result=None,
        error=None,
        cancel_requested=False,
        attempts=1,
        executor_id="test",
        created_at=now,
        updated_at=now,
        completed_at=None,
    )


def _client(
    provider: ScriptedProvider,
    pool: CredentialPool,
    sleeper,
    *,
    max_attempts: int = 3,
) -> GenerationClient:
    return GenerationClient(
        provider=provider,
        credential_pool=pool,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay_seconds=1.0),
        sleep=sleeper,
    )


def test_status_message_gets_two_retries_then_fails_with_parse_error(clock, sleeper) -> None:
    provider = ScriptedProvider(["Initialization in progress"] * 10)
    pool = CredentialPool(fallback="only-key", clock=clock)

    # One initial send plus two retries.
    with pytest.raises(StatusMessageError, match="could not be parsed"):
        _client(provider, pool, sleeper, max_attempts=3).execute(_job())

    assert len(provider.calls) == 3
    assert sleeper.delays == [1.0, 2.0]


def test_prose_wrapped_payload_succeeds_without_retry(clock, sleeper) -> None:
    provider = ScriptedProvider([f"Here is your result: {_PAYLOAD} Let me know if you need more."])
    pool = CredentialPool(fallback="only-key", clock=clock)

    result = _client(provider, pool, sleeper).execute(_job())

    assert result == {"name": "X", "steps": ["a", "b"]}
    assert len(provider.calls) == 1
    assert sleeper.delays == []


def test_invalid_credentials_are_quarantined_and_rotated(clock, sleeper) -> None:
    provider = ScriptedProvider(
        [CredentialInvalidError("revoked"), CredentialInvalidError("leaked"), _PAYLOAD],
    )
    pool = CredentialPool([_Source("key-1", "key-2", "key-3")], clock=clock)
    events: list[tuple[str, dict[str, object]]] = []

    result = _client(provider, pool, sleeper).execute(
        _job(),
        on_event=lambda event_type, details: events.append((event_type, details)),
    )

    assert result == {"name": "X", "steps": ["a", "b"]}
    assert provider.credentials_used == ["key-1", "key-2", "key-3"]
    assert pool.is_quarantined("key-1")
    assert pool.is_quarantined("key-2")
    assert not pool.is_quarantined("key-3")
    assert [event_type for event_type, _ in events] == [
        "credential_quarantined",
        "credential_quarantined",
    ]
    assert sleeper.delays == []


def test_rate_limit_retries_same_credential_before_rotating(clock, sleeper) -> None:
    provider = ScriptedProvider(
        [
            RateLimitError("quota", retry_after_seconds=3),
            RateLimitError("quota", retry_after_seconds=3),
            _PAYLOAD,
        ],
    )
    pool = CredentialPool([_Source("key-1", "key-2")], clock=clock)

    result = _client(provider, pool, sleeper, max_attempts=2).execute(_job())

    assert result == {"name": "X", "steps": ["a", "b"]}
    assert provider.credentials_used == ["key-1", "key-1", "key-2"]
    assert sleeper.delays == [3]
    assert not pool.is_quarantined("key-1")


def test_malformed_output_is_surfaced_without_retry(clock, sleeper) -> None:
    provider = ScriptedProvider(["I cannot answer that.", _PAYLOAD])
    pool = CredentialPool([_Source("key-1", "key-2")], clock=clock)

    with pytest.raises(MalformedOutputError):
        _client(provider, pool, sleeper).execute(_job())

    assert len(provider.calls) == 1


def test_exhausted_candidates_raise_most_recent_error(clock, sleeper) -> None:
    provider = ScriptedProvider(
        [CredentialInvalidError("first"), TransientProviderError("second")],
    )
    pool_with_one = CredentialPool([_Source("key-1")], fallback="fallback-key", clock=clock)

    with pytest.raises(TransientProviderError, match="second"):
        _client(provider, pool_with_one, sleeper, max_attempts=1).execute(_job())


def test_successful_credential_has_quarantine_cleared(clock, sleeper) -> None:
    credential = Credential(value="only-key", tier=CredentialTier.FALLBACK, label="fallback")
    pool = CredentialPool(fallback="only-key", clock=clock)
    pool.quarantine(credential)
    provider = ScriptedProvider([_PAYLOAD])

    _client(provider, pool, sleeper).execute(_job())

    assert not pool.is_quarantined("only-key")


def test_retry_events_are_reported(clock, sleeper) -> None:
    provider = ScriptedProvider([TransientProviderError("503"), _PAYLOAD])
    pool = CredentialPool(fallback="only-key", clock=clock)
    events: list[tuple[str, dict[str, object]]] = []

    _client(provider, pool, sleeper).execute(
        _job(),
        on_event=lambda event_type, details: events.append((event_type, details)),
    )

    assert events == [
        (
            "retry_scheduled",
            {
                "credential": "fallback",
                "attempt": 1,
                "error": "TransientProviderError",
                "delay_seconds": 1.0,
            },
        ),
    ]


def test_unknown_kind_fails_before_any_call(clock, sleeper) -> None:
    provider = ScriptedProvider()
    pool = CredentialPool(clock=clock)

    with pytest.raises(UnknownJobKindError):
        _client(provider, pool, sleeper).execute(_job(kind="summarize"))

    assert provider.calls == []


class _LazyEmptyPool(CredentialPool):
    def acquire(self, caller_id: str | None = None) -> list[Credential]:
        return iter(())  # type: ignore[return-value]


def test_pool_yielding_no_candidates_raises_no_credentials(clock, sleeper) -> None:
    provider = ScriptedProvider()

    with pytest.raises(NoCredentialsError, match="No provider credentials"):
        _client(provider, _LazyEmptyPool(fallback="only-key", clock=clock), sleeper).execute(_job())

    assert provider.calls == []
