"""Pooled provider credential storage."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from genqueue.storage.alembic_runner import upgrade_head
from genqueue.storage.common import build_sqlite_engine, to_utc_aware_datetime, utc_now
from genqueue.storage.sqlmodel_models import PooledCredential


@dataclass(slots=True)
class StoredCredential:
    """Credential row as seen by sources and the CLI."""

    credential_id: int
    owner_id: str | None
    value: str
    label: str | None
    created_at: datetime


class CredentialRepository:
    """Per-caller and shared credentials kept in SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def add_credential(
        self,
        *,
        value: str,
        owner_id: str | None = None,
        label: str | None = None,
    ) -> StoredCredential:
        """Register a credential; ``owner_id=None`` makes it shared."""

        secret = value.strip()
        if not secret:
            raise ValueError("Credential value must not be empty.")
        with Session(self.engine) as session:
            row = PooledCredential(
                owner_id=owner_id,
                value=secret,
                label=label,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ValueError("Credential is already registered.") from exc
            session.refresh(row)
            return _to_stored(row)

    def remove_credential(self, *, credential_id: int) -> bool:
        with Session(self.engine) as session:
            row = session.get(PooledCredential, credential_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def list_credentials(self, *, owner_id: str | None = None) -> list[StoredCredential]:
        with Session(self.engine) as session:
            statement = select(PooledCredential).order_by(col(PooledCredential.id).asc())
            if owner_id is not None:
                statement = statement.where(PooledCredential.owner_id == owner_id)
            rows = session.exec(statement).all()
        return [_to_stored(row) for row in rows]

    def caller_credential(self, *, owner_id: str) -> StoredCredential | None:
        """Oldest credential registered for one caller."""

        with Session(self.engine) as session:
            row = session.exec(
                select(PooledCredential)
                .where(PooledCredential.owner_id == owner_id)
                .order_by(col(PooledCredential.id).asc())
                .limit(1),
            ).one_or_none()
        return _to_stored(row) if row is not None else None

    def shared_credentials(self, *, exclude_owner: str | None = None) -> list[StoredCredential]:
        """Every known credential except the ones owned by ``exclude_owner``."""

        with Session(self.engine) as session:
            statement = select(PooledCredential).order_by(col(PooledCredential.id).asc())
            if exclude_owner is not None:
                statement = statement.where(
                    (col(PooledCredential.owner_id).is_(None))
                    | (col(PooledCredential.owner_id) != exclude_owner),
                )
            rows = session.exec(statement).all()
        return [_to_stored(row) for row in rows]


def _to_stored(row: PooledCredential) -> StoredCredential:
    return StoredCredential(
        credential_id=row.id or 0,
        owner_id=row.owner_id,
        value=row.value,
        label=row.label,
        created_at=to_utc_aware_datetime(row.created_at),
    )
