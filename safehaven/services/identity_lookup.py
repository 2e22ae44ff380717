"""
Best-effort lookup of the identity mapping a webhook payload refers to.
Used at ingress to fill webhook_event_logs.related_entity_id; a miss or an
error never blocks ingestion.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.models.identity_mapping import IdentityMapping
from safehaven.services.event_handlers import extract_provider_user_id

logger = logging.getLogger(__name__)


def _mapping_uuid(payload: dict) -> Optional[uuid.UUID]:
    raw = payload.get("identity_mapping_id")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


async def resolve_related_entity_id(db: AsyncSession, payload: dict) -> Optional[uuid.UUID]:
    """Identity mapping id for the payload's user, or None."""
    try:
        mapping_id = _mapping_uuid(payload)
        if mapping_id is not None:
            mapping = await db.get(IdentityMapping, mapping_id)
            if mapping is not None:
                return mapping.id

        user_id = extract_provider_user_id(payload)
        if not user_id:
            return None
        result = await db.execute(
            select(IdentityMapping.id).where(IdentityMapping.provider_user_id == user_id)
        )
        return result.scalar_one_or_none()
    except Exception as e:
        logger.warning("Related entity lookup failed: %s", str(e))
        # An aborted transaction would poison the insert that follows
        await db.rollback()
        return None
