"""Webhook event log with unique event id

Revision ID: 002
Revises: 001
Create Date: 2026-10-12
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None

TABLE = "webhook_event_logs"


def upgrade() -> None:
    op.create_table(
        TABLE,
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column(
            "related_entity_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("safehaven_identity_mappings.id", ondelete="SET NULL"),
        ),
        sa.Column("signature", sa.String(512)),
        sa.Column("signature_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("payload", sa.Text, nullable=False),
        sa.Column("headers", postgresql.JSONB),
        sa.Column("error_message", sa.Text),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processing_started_at", sa.DateTime(timezone=True)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "signature_status IN ('PENDING', 'VALID', 'INVALID', 'SKIPPED')",
            name="ck_webhook_event_logs_signature_status",
        ),
        sa.CheckConstraint(
            "processing_status IN ('PENDING', 'PROCESSING', 'SUCCESS', 'FAILED', 'DUPLICATE')",
            name="ck_webhook_event_logs_processing_status",
        ),
        sa.CheckConstraint("attempt_count >= 0", name="ck_webhook_event_logs_attempt_count"),
    )

    # Deduplication depends on this index, not on application checks
    op.create_index("ix_webhook_event_logs_event_id", TABLE, ["event_id"], unique=True)

    op.create_index("ix_webhook_event_logs_event_type", TABLE, ["event_type"])
    op.create_index("ix_webhook_event_logs_related_entity_id", TABLE, ["related_entity_id"])
    op.create_index("ix_webhook_event_logs_processing_status", TABLE, ["processing_status"])
    op.create_index("ix_webhook_event_logs_signature_status", TABLE, ["signature_status"])
    op.create_index("ix_webhook_event_logs_created_at", TABLE, ["created_at"])
    op.create_index("ix_webhook_event_logs_processed_at", TABLE, ["processed_at"])
    op.create_index("ix_webhook_event_logs_processing_started_at", TABLE, ["processing_started_at"])
    op.create_index(
        "ix_webhook_event_logs_retry", TABLE,
        ["processing_status", "attempt_count", "processed_at"],
    )


def downgrade() -> None:
    for name in (
        "ix_webhook_event_logs_retry",
        "ix_webhook_event_logs_processing_started_at",
        "ix_webhook_event_logs_processed_at",
        "ix_webhook_event_logs_created_at",
        "ix_webhook_event_logs_signature_status",
        "ix_webhook_event_logs_processing_status",
        "ix_webhook_event_logs_related_entity_id",
        "ix_webhook_event_logs_event_type",
        "ix_webhook_event_logs_event_id",
    ):
        op.drop_index(name, table_name=TABLE)
    op.drop_table(TABLE)
