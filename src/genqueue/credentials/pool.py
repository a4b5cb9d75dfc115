"""Ordered credential candidates with a value-keyed quarantine."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from genqueue.generation.sanitization import mask_secret
from genqueue.storage.common import utc_now

logger = logging.getLogger(__name__)

# Last-resort credential tried after every other tier. Deployments override it
# with GENQUEUE_FALLBACK_API_KEY; the placeholder is rejected by real providers.
FALLBACK_CREDENTIAL = "genqueue-fallback-credential"


class CredentialTier(str, Enum):
    """Where a credential candidate came from, in priority order."""

    CALLER = "caller"
    POOL = "pool"
    ENVIRONMENT = "environment"
    FALLBACK = "fallback"


@dataclass(slots=True, frozen=True)
class Credential:
    """One candidate credential. The value is never rendered in full."""

    value: str = field(repr=False)
    tier: CredentialTier
    label: str

    @property
    def masked(self) -> str:
        return mask_secret(self.value)

    def __str__(self) -> str:
        return f"{self.label}({self.masked})"


class CredentialSource(Protocol):
    """Lookup for one credential tier."""

    def lookup(self, caller_id: str | None) -> list[Credential]:
        """Return the tier's candidates for ``caller_id`` (possibly none)."""


class CredentialPool:
    """Produce ordered credential candidates and track quarantined values.

    Candidates are rediscovered from the sources on every ``acquire`` so new
    credentials are picked up immediately; only the quarantine map is state.
    """

    def __init__(
        self,
        sources: Sequence[CredentialSource] = (),
        *,
        fallback: str = FALLBACK_CREDENTIAL,
        quarantine_seconds: float = 3_600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sources = list(sources)
        self._fallback = Credential(value=fallback, tier=CredentialTier.FALLBACK, label="fallback")
        self._window = timedelta(seconds=quarantine_seconds)
        self._clock = clock
        self._quarantine: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def acquire(self, caller_id: str | None = None) -> list[Credential]:
        """Ordered non-quarantined candidates; never empty."""

        candidates = self._discover(caller_id)
        with self._lock:
            now = self._clock()
            available = [item for item in candidates if not self._is_quarantined_locked(item.value, now)]
        if available:
            return available
        logger.warning(
            "All %d credential candidates are quarantined; trying %s anyway",
            len(candidates),
            candidates[0],
        )
        return [candidates[0]]

    def quarantine(self, credential: Credential) -> datetime:
        """Exclude the credential value for the quarantine window."""

        with self._lock:
            until = self._clock() + self._window
            self._quarantine[credential.value] = until
        logger.warning("Quarantined credential %s until %s", credential, until.isoformat())
        return until

    def clear(self, credential: Credential) -> None:
        """Lift any quarantine on the credential value."""

        with self._lock:
            removed = self._quarantine.pop(credential.value, None)
        if removed is not None:
            logger.info("Cleared quarantine for credential %s", credential)

    def is_quarantined(self, value: str) -> bool:
        with self._lock:
            return self._is_quarantined_locked(value, self._clock())

    def quarantined_until(self, value: str) -> datetime | None:
        with self._lock:
            if not self._is_quarantined_locked(value, self._clock()):
                return None
            return self._quarantine[value]

    def _is_quarantined_locked(self, value: str, now: datetime) -> bool:
        until = self._quarantine.get(value)
        if until is None:
            return False
        if now >= until:
            del self._quarantine[value]
            return False
        return True

    def _discover(self, caller_id: str | None) -> list[Credential]:
        seen: set[str] = set()
        ordered: list[Credential] = []
        for source in self._sources:
            for credential in source.lookup(caller_id):
                if not credential.value or credential.value in seen:
                    continue
                seen.add(credential.value)
                ordered.append(credential)
        if self._fallback.value not in seen:
            ordered.append(self._fallback)
        return ordered
