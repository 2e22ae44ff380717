"""
SafeHaven webhook business handlers.

Each handler is `async def handler(payload, event, db)`. Database writes are
flushed only; the processing service commits them in the same transaction
as the SUCCESS transition, so a failing handler leaves no partial writes.

Identity and account events maintain the identity mapping table. Token and
payment events are validated and logged: token storage and payment ledgers
live outside this service.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.models.identity_mapping import IdentityMapping, IdentityMappingStatus
from safehaven.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


def _log_extra(event: WebhookEvent) -> dict:
    return {"event_id": event.event_id, "event_type": event.event_type}


def extract_provider_user_id(payload: dict) -> Optional[str]:
    """SafeHaven user id from the payload, tolerating the field spellings seen in the wild."""
    for key in ("user_id", "userId"):
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    data = payload.get("data")
    if isinstance(data, dict):
        return extract_provider_user_id(data)
    return None


def _require_user_id(payload: dict, event: WebhookEvent) -> str:
    user_id = extract_provider_user_id(payload)
    if not user_id:
        raise ValueError(f"Missing user_id in {event.event_type} event")
    return user_id


async def _get_mapping(db: AsyncSession, provider_user_id: str) -> Optional[IdentityMapping]:
    result = await db.execute(
        select(IdentityMapping).where(IdentityMapping.provider_user_id == provider_user_id)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Identity events
# ---------------------------------------------------------------------------


async def handle_identity_created(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    user_id = _require_user_id(payload, event)
    logger.info("Handling identity.created for user %s", user_id, extra=_log_extra(event))

    mapping = await _get_mapping(db, user_id)
    if mapping is not None:
        logger.info("Identity mapping for %s already exists, skipping", user_id, extra=_log_extra(event))
        return

    mapping = IdentityMapping(
        provider_user_id=user_id,
        internal_user_id=str(payload.get("internal_user_id") or payload.get("reference") or user_id),
        email=payload.get("email"),
        status=IdentityMappingStatus.ACTIVE,
        provider_metadata=payload.get("metadata"),
    )
    db.add(mapping)
    await db.flush()


async def handle_identity_updated(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    user_id = _require_user_id(payload, event)
    logger.info("Handling identity.updated for user %s", user_id, extra=_log_extra(event))

    mapping = await _get_mapping(db, user_id)
    if mapping is None:
        logger.warning("identity.updated for unknown user %s, ignoring", user_id, extra=_log_extra(event))
        return

    if payload.get("email"):
        mapping.email = payload["email"]
    if isinstance(payload.get("metadata"), dict):
        mapping.provider_metadata = {**(mapping.provider_metadata or {}), **payload["metadata"]}
    await db.flush()


async def handle_identity_deleted(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    user_id = _require_user_id(payload, event)
    logger.info("Handling identity.deleted for user %s", user_id, extra=_log_extra(event))

    mapping = await _get_mapping(db, user_id)
    if mapping is None:
        return
    mapping.mark_deleted()
    await db.flush()


# ---------------------------------------------------------------------------
# Account events
# ---------------------------------------------------------------------------


async def handle_account_suspended(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    user_id = _require_user_id(payload, event)
    logger.info("Handling account.suspended for user %s", user_id, extra=_log_extra(event))

    mapping = await _get_mapping(db, user_id)
    if mapping is None:
        raise LookupError(f"No identity mapping for user {user_id}")
    if mapping.status == IdentityMappingStatus.DELETED:
        logger.warning("account.suspended for deleted identity %s, ignoring", user_id, extra=_log_extra(event))
        return
    mapping.suspend()
    await db.flush()


async def handle_account_activated(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    user_id = _require_user_id(payload, event)
    logger.info("Handling account.activated for user %s", user_id, extra=_log_extra(event))

    mapping = await _get_mapping(db, user_id)
    if mapping is None:
        raise LookupError(f"No identity mapping for user {user_id}")
    if mapping.status == IdentityMappingStatus.DELETED:
        raise ValueError(f"Cannot activate deleted identity {user_id}")
    mapping.activate()
    await db.flush()


# ---------------------------------------------------------------------------
# Token events
# ---------------------------------------------------------------------------


async def handle_token_revoked(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    user_id = _require_user_id(payload, event)
    logger.info("Handling token.revoked for user %s", user_id, extra=_log_extra(event))


async def handle_token_expired(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    logger.info(
        "Handling token.expired for user %s", extract_provider_user_id(payload),
        extra=_log_extra(event),
    )


# ---------------------------------------------------------------------------
# Payment events
# ---------------------------------------------------------------------------


async def handle_payment_completed(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    reference = payload.get("reference") or payload.get("payment_id")
    if not reference:
        raise ValueError("Missing reference in payment.completed event")
    logger.info(
        "Payment %s completed: amount=%s currency=%s",
        reference, payload.get("amount"), payload.get("currency"),
        extra=_log_extra(event),
    )


async def handle_payment_failed(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    logger.warning(
        "Payment %s failed: %s",
        payload.get("reference") or payload.get("payment_id"),
        payload.get("reason", "no reason given"),
        extra=_log_extra(event),
    )


async def handle_payment_event(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    """Audit-only handler for payment.* types without a dedicated handler."""
    logger.info(
        "Recorded %s for payment %s", event.event_type,
        payload.get("reference") or payload.get("payment_id"),
        extra=_log_extra(event),
    )
