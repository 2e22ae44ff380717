"""SafeHaven identity mappings

Revision ID: 001
Revises:
Create Date: 2026-10-12
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "safehaven_identity_mappings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_user_id", sa.String(255), nullable=False),
        sa.Column("internal_user_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("last_verified_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('ACTIVE', 'SUSPENDED', 'DELETED')",
            name="ck_safehaven_identity_mappings_status",
        ),
    )
    op.create_index(
        "ix_safehaven_identity_mappings_provider_user_id", "safehaven_identity_mappings",
        ["provider_user_id"], unique=True,
    )
    op.create_index(
        "ix_safehaven_identity_mappings_internal_user_id", "safehaven_identity_mappings",
        ["internal_user_id"],
    )
    op.create_index(
        "ix_safehaven_identity_mappings_status", "safehaven_identity_mappings",
        ["status"],
    )


def downgrade() -> None:
    op.drop_index("ix_safehaven_identity_mappings_status", table_name="safehaven_identity_mappings")
    op.drop_index("ix_safehaven_identity_mappings_internal_user_id", table_name="safehaven_identity_mappings")
    op.drop_index("ix_safehaven_identity_mappings_provider_user_id", table_name="safehaven_identity_mappings")
    op.drop_table("safehaven_identity_mappings")
