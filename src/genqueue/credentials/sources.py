"""Credential tier lookups."""

from __future__ import annotations

import os

from genqueue.credentials.pool import Credential, CredentialSource, CredentialTier
from genqueue.storage.credential_repository import CredentialRepository


class CallerCredentialSource:
    """The caller's own registered credential."""

    def __init__(self, repository: CredentialRepository) -> None:
        self._repository = repository

    def lookup(self, caller_id: str | None) -> list[Credential]:
        if not caller_id:
            return []
        stored = self._repository.caller_credential(owner_id=caller_id)
        if stored is None:
            return []
        return [Credential(value=stored.value, tier=CredentialTier.CALLER, label=f"caller:{caller_id}")]


class SharedPoolCredentialSource:
    """Every other known credential: shared ones and other callers' keys."""

    def __init__(self, repository: CredentialRepository) -> None:
        self._repository = repository

    def lookup(self, caller_id: str | None) -> list[Credential]:
        return [
            Credential(
                value=stored.value,
                tier=CredentialTier.POOL,
                label=f"pool:{stored.credential_id}",
            )
            for stored in self._repository.shared_credentials(exclude_owner=caller_id)
        ]


class EnvironmentCredentialSource:
    """Credential supplied by the process environment."""

    def __init__(self, value: str | None = None, *, env_var: str = "GENQUEUE_PROVIDER_API_KEY") -> None:
        self._value = value
        self._env_var = env_var

    def lookup(self, caller_id: str | None) -> list[Credential]:
        value = self._value if self._value is not None else os.getenv(self._env_var, "")
        value = value.strip()
        if not value:
            return []
        return [Credential(value=value, tier=CredentialTier.ENVIRONMENT, label="environment")]


def default_sources(
    repository: CredentialRepository,
    *,
    environment_api_key: str | None = None,
) -> list[CredentialSource]:
    """Caller, shared pool and environment tiers in priority order."""

    return [
        CallerCredentialSource(repository),
        SharedPoolCredentialSource(repository),
        EnvironmentCredentialSource(environment_api_key),
    ]
