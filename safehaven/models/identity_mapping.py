"""
SafeHaven identity mapping - links a provider-side user id to an internal user.
Webhook events reference it (related_entity_id) when the payload names a known user.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import CheckConstraint, Column, String, DateTime
from sqlalchemy.dialects.postgresql import UUID, JSONB
from safehaven.database import Base


class IdentityMappingStatus:
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class IdentityMapping(Base):
    __tablename__ = "safehaven_identity_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_user_id = Column(String(255), nullable=False, unique=True, index=True)
    internal_user_id = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=True)
    status = Column(
        String(20), nullable=False, default=IdentityMappingStatus.ACTIVE,
        server_default=IdentityMappingStatus.ACTIVE, index=True,
    )  # ACTIVE, SUSPENDED, DELETED
    provider_metadata = Column("metadata", JSONB, nullable=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'SUSPENDED', 'DELETED')",
            name="ck_safehaven_identity_mappings_status",
        ),
    )

    def suspend(self) -> None:
        self.status = IdentityMappingStatus.SUSPENDED

    def activate(self) -> None:
        self.status = IdentityMappingStatus.ACTIVE
        self.last_verified_at = datetime.now(timezone.utc)

    def mark_deleted(self) -> None:
        self.status = IdentityMappingStatus.DELETED
