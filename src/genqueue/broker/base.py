"""Broker contract shared by the dispatcher and workers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class BrokerUnavailableError(RuntimeError):
    """Broker could not be reached or refused the operation."""


class NackOutcome(str, Enum):
    """What happened to a negatively acknowledged delivery."""

    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


@dataclass(slots=True)
class Delivery:
    """One leased delivery of a job message to a consumer.

    ``dead_lettered`` deliveries carry a message whose lease expired after its
    last allowed delivery; the consumer only records the job failure.
    """

    message_id: str
    job_id: str
    consumer_id: str
    deliveries: int
    max_deliveries: int
    dead_lettered: bool = False

    @property
    def is_redelivery(self) -> bool:
        return self.deliveries > 1


class Broker(Protocol):
    """At-least-once job message queue."""

    def enqueue(self, job_id: str) -> str:
        """Queue a job id, returning the message id."""

    def claim(self, consumer_id: str) -> Delivery | None:
        """Lease the next ready message, if any."""

    def ack(self, delivery: Delivery) -> bool:
        """Acknowledge a processed delivery."""

    def renew(self, delivery: Delivery) -> bool:
        """Extend the lease of a delivery that is still being processed."""

    def nack(self, delivery: Delivery, *, error: str) -> NackOutcome:
        """Return a delivery for redelivery or dead-letter it."""
