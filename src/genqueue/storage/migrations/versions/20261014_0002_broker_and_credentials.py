"""Add broker message queue and pooled provider credentials."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261014_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "broker_messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_deliveries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumer_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_broker_messages_job_id", "broker_messages", ["job_id"])
    op.create_index("ix_broker_messages_state", "broker_messages", ["state"])
    op.create_index(
        "idx_broker_messages_ready",
        "broker_messages",
        ["state", "available_at"],
    )

    op.create_table(
        "pooled_credentials",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("label", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("value", name="uq_pooled_credentials_value"),
    )
    op.create_index("ix_pooled_credentials_owner_id", "pooled_credentials", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_pooled_credentials_owner_id", table_name="pooled_credentials")
    op.drop_table("pooled_credentials")
    op.drop_index("idx_broker_messages_ready", table_name="broker_messages")
    op.drop_index("ix_broker_messages_state", table_name="broker_messages")
    op.drop_index("ix_broker_messages_job_id", table_name="broker_messages")
    op.drop_table("broker_messages")
