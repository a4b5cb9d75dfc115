"""SQLModel ORM tables for pipeline storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_jobs_caller_time", "caller_id", "created_at"),)

    job_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    caller_id: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    cancel_requested: bool = Field(default=False)
    attempts: int = Field(default=0)
    executor_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class GenerationJobEvent(SQLModel, table=True):
    __tablename__ = "generation_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BrokerMessage(SQLModel, table=True):
    __tablename__ = "broker_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_broker_messages_ready", "state", "available_at"),)

    message_id: str = Field(primary_key=True)
    job_id: str = Field(index=True)
    state: str = Field(index=True)
    deliveries: int = Field(default=0)
    max_deliveries: int = Field(default=3)
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    consumer_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PooledCredential(SQLModel, table=True):
    __tablename__ = "pooled_credentials"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("value", name="uq_pooled_credentials_value"),)

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str | None = Field(default=None, index=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    label: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
