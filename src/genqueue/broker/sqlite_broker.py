"""SQLite-backed broker with leases and bounded redelivery."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from genqueue.broker.base import BrokerUnavailableError, Delivery, NackOutcome
from genqueue.generation.retry import compute_backoff_delay
from genqueue.storage.alembic_runner import upgrade_head
from genqueue.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from genqueue.storage.sqlmodel_models import BrokerMessage

logger = logging.getLogger(__name__)


class MessageState(str, Enum):
    """Broker message lifecycle."""

    READY = "ready"
    LEASED = "leased"
    ACKED = "acked"
    DEAD = "dead"


class SqliteBroker:
    """At-least-once queue of job ids stored in ``broker_messages``.

    A claimed message is leased to one consumer. Unacknowledged messages come
    back after the lease expires; ``nack`` requeues with exponential delay until
    ``max_deliveries`` is reached and dead-letters afterwards.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        max_deliveries: int = 3,
        redelivery_base_seconds: float = 2.0,
        redelivery_max_seconds: float = 300.0,
        lease_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self.max_deliveries = max_deliveries
        self.redelivery_base_seconds = redelivery_base_seconds
        self.redelivery_max_seconds = redelivery_max_seconds
        self.lease = timedelta(seconds=lease_seconds)
        self._clock = clock

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        with self._translate_errors("init_schema"):
            upgrade_head(self.db_path)

    def enqueue(self, job_id: str) -> str:
        message_id = str(uuid4())
        now = to_db_datetime(self._clock())
        with self._translate_errors("enqueue"), Session(self.engine) as session:
            session.add(
                BrokerMessage(
                    message_id=message_id,
                    job_id=job_id,
                    state=MessageState.READY.value,
                    deliveries=0,
                    max_deliveries=self.max_deliveries,
                    available_at=now,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        logger.debug("Enqueued job %s as message %s", job_id, message_id)
        return message_id

    def claim(self, consumer_id: str) -> Delivery | None:
        with self._translate_errors("claim"):
            while True:
                now = self._clock()
                db_now = to_db_datetime(now)
                with Session(self.engine) as session:
                    candidate = session.exec(
                        select(BrokerMessage)
                        .where(
                            or_(
                                and_(
                                    col(BrokerMessage.state) == MessageState.READY.value,
                                    col(BrokerMessage.available_at) <= db_now,
                                ),
                                and_(
                                    col(BrokerMessage.state) == MessageState.LEASED.value,
                                    col(BrokerMessage.lease_expires_at) <= db_now,
                                ),
                            ),
                        )
                        .order_by(
                            col(BrokerMessage.available_at).asc(),
                            col(BrokerMessage.created_at).asc(),
                        )
                        .limit(1),
                    ).one_or_none()
                    if candidate is None:
                        return None

                    expired_lease = candidate.state == MessageState.LEASED.value
                    if expired_lease and candidate.deliveries >= candidate.max_deliveries:
                        values: dict[str, object] = {
                            "state": MessageState.DEAD.value,
                            "consumer_id": consumer_id,
                            "lease_expires_at": None,
                            "last_error": "Lease expired on the final delivery.",
                            "updated_at": db_now,
                        }
                    else:
                        values = {
                            "state": MessageState.LEASED.value,
                            "deliveries": candidate.deliveries + 1,
                            "consumer_id": consumer_id,
                            "lease_expires_at": to_db_datetime(now + self.lease),
                            "updated_at": db_now,
                        }
                    result = session.exec(
                        sa_update(BrokerMessage)
                        .where(
                            col(BrokerMessage.message_id) == candidate.message_id,
                            col(BrokerMessage.state) == candidate.state,
                            col(BrokerMessage.deliveries) == candidate.deliveries,
                        )
                        .values(**values),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    session.commit()

                dead_lettered = values["state"] == MessageState.DEAD.value
                if dead_lettered:
                    logger.warning(
                        "Message %s for job %s dead-lettered after %d deliveries",
                        candidate.message_id,
                        candidate.job_id,
                        candidate.deliveries,
                    )
                elif expired_lease:
                    logger.info(
                        "Redelivering message %s for job %s after lease expiry",
                        candidate.message_id,
                        candidate.job_id,
                    )
                return Delivery(
                    message_id=candidate.message_id,
                    job_id=candidate.job_id,
                    consumer_id=consumer_id,
                    deliveries=candidate.deliveries + (0 if dead_lettered else 1),
                    max_deliveries=candidate.max_deliveries,
                    dead_lettered=dead_lettered,
                )

    def ack(self, delivery: Delivery) -> bool:
        now = to_db_datetime(self._clock())
        with self._translate_errors("ack"), Session(self.engine) as session:
            result = session.exec(
                sa_update(BrokerMessage)
                .where(
                    col(BrokerMessage.message_id) == delivery.message_id,
                    col(BrokerMessage.state) == MessageState.LEASED.value,
                    col(BrokerMessage.consumer_id) == delivery.consumer_id,
                )
                .values(
                    state=MessageState.ACKED.value,
                    lease_expires_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Ack for message %s ignored: lease no longer held by %s",
                    delivery.message_id,
                    delivery.consumer_id,
                )
                return False
            session.commit()
            return True

    def renew(self, delivery: Delivery) -> bool:
        """Push the lease expiry forward while the delivery is still held."""

        now = self._clock()
        with self._translate_errors("renew"), Session(self.engine) as session:
            result = session.exec(
                sa_update(BrokerMessage)
                .where(
                    col(BrokerMessage.message_id) == delivery.message_id,
                    col(BrokerMessage.state) == MessageState.LEASED.value,
                    col(BrokerMessage.consumer_id) == delivery.consumer_id,
                    col(BrokerMessage.deliveries) == delivery.deliveries,
                )
                .values(
                    lease_expires_at=to_db_datetime(now + self.lease),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Lease renewal for message %s refused: no longer held by %s",
                    delivery.message_id,
                    delivery.consumer_id,
                )
                return False
            session.commit()
        logger.debug("Renewed lease on message %s for %s", delivery.message_id, delivery.consumer_id)
        return True

    def nack(self, delivery: Delivery, *, error: str) -> NackOutcome:
        now = self._clock()
        exhausted = delivery.deliveries >= delivery.max_deliveries
        if exhausted:
            values: dict[str, object] = {"state": MessageState.DEAD.value}
            outcome = NackOutcome.DEAD_LETTERED
        else:
            delay = compute_backoff_delay(
                delivery.deliveries,
                base_seconds=self.redelivery_base_seconds,
                max_seconds=self.redelivery_max_seconds,
            )
            values = {
                "state": MessageState.READY.value,
                "available_at": to_db_datetime(now + timedelta(seconds=delay)),
                "consumer_id": None,
            }
            outcome = NackOutcome.REQUEUED
        with self._translate_errors("nack"), Session(self.engine) as session:
            session.exec(
                sa_update(BrokerMessage)
                .where(
                    col(BrokerMessage.message_id) == delivery.message_id,
                    col(BrokerMessage.state) == MessageState.LEASED.value,
                    col(BrokerMessage.consumer_id) == delivery.consumer_id,
                )
                .values(
                    lease_expires_at=None,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            session.commit()
        logger.info(
            "Nacked message %s for job %s (delivery %d/%d): %s",
            delivery.message_id,
            delivery.job_id,
            delivery.deliveries,
            delivery.max_deliveries,
            outcome.value,
        )
        return outcome

    def counts(self) -> dict[str, int]:
        """Number of messages per state."""

        with self._translate_errors("counts"), Session(self.engine) as session:
            rows = session.exec(
                select(BrokerMessage.state, func.count()).group_by(BrokerMessage.state),
            ).all()
        counts = {state.value: 0 for state in MessageState}
        for state, count in rows:
            counts[state] = int(count)
        return counts

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except OperationalError as exc:
            logger.warning("Broker %s failed: %s", operation, exc)
            raise BrokerUnavailableError(f"Broker {operation} failed: {exc}") from exc
