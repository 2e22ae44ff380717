"""
Webhook event log - one row per SafeHaven event id, ever.

The unique index on event_id is the single source of truth for deduplication:
concurrent inserts of the same id cannot both commit. Rows are never deleted;
only the status/timestamp fields below change after insert.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from safehaven.database import Base


class SignatureStatus(str, enum.Enum):
    PENDING = "PENDING"
    VALID = "VALID"
    INVALID = "INVALID"
    SKIPPED = "SKIPPED"


class ProcessingStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    DUPLICATE = "DUPLICATE"


# States the processing path may start (or restart) an attempt from.
# DUPLICATE only records that a redundant delivery was seen while the
# original delivery was still queued or running.
STARTABLE_STATUSES = frozenset(
    {ProcessingStatus.PENDING, ProcessingStatus.DUPLICATE, ProcessingStatus.FAILED}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEvent(Base):
    __tablename__ = "webhook_event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    related_entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("safehaven_identity_mappings.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Stored for audit only; verification happens at ingress.
    signature: Mapped[Optional[str]] = mapped_column(String(512))
    signature_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SignatureStatus.PENDING.value,
        server_default=SignatureStatus.PENDING.value,
    )
    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value,
        server_default=ProcessingStatus.PENDING.value,
    )

    # Raw body exactly as received, for replay and audit
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    headers: Mapped[Optional[dict]] = mapped_column(JSONB)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_webhook_event_logs_event_id", "event_id", unique=True),
        Index("ix_webhook_event_logs_event_type", "event_type"),
        Index("ix_webhook_event_logs_related_entity_id", "related_entity_id"),
        Index("ix_webhook_event_logs_processing_status", "processing_status"),
        Index("ix_webhook_event_logs_signature_status", "signature_status"),
        Index("ix_webhook_event_logs_created_at", "created_at"),
        Index("ix_webhook_event_logs_processed_at", "processed_at"),
        Index("ix_webhook_event_logs_processing_started_at", "processing_started_at"),
        Index(
            "ix_webhook_event_logs_retry",
            "processing_status", "attempt_count", "processed_at",
        ),
        CheckConstraint(
            "signature_status IN ('PENDING', 'VALID', 'INVALID', 'SKIPPED')",
            name="ck_webhook_event_logs_signature_status",
        ),
        CheckConstraint(
            "processing_status IN ('PENDING', 'PROCESSING', 'SUCCESS', 'FAILED', 'DUPLICATE')",
            name="ck_webhook_event_logs_processing_status",
        ),
        CheckConstraint("attempt_count >= 0", name="ck_webhook_event_logs_attempt_count"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent {self.event_id} type={self.event_type} "
            f"status={self.processing_status} attempts={self.attempt_count}>"
        )
