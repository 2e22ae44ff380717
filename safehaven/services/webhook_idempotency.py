"""
Webhook idempotency store - the only authority on "has this event been seen".

Duplicate detection relies on the unique index on webhook_event_logs.event_id,
never on the read-only pre-check: two racing deliveries may both pass
check_idempotency(), but only one INSERT can commit. The loser gets an
AlreadyExists result instead of an exception.

Processing-state transitions are conditional UPDATEs (compare-and-set on the
current status and attempt number) so a row is owned by at most one worker.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.models.webhook_event import (
    STARTABLE_STATUSES,
    ProcessingStatus,
    SignatureStatus,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

STALE_PROCESSING_ERROR = "Processing timed out"


@dataclass(frozen=True)
class Created:
    event: WebhookEvent


@dataclass(frozen=True)
class AlreadyExists:
    event: WebhookEvent


CreateResult = Union[Created, AlreadyExists]


async def get_event_log(db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
    """Plain lookup by external event id."""
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id)
    )
    return result.scalar_one_or_none()


async def check_idempotency(db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
    """
    Read-only pre-check. Returns the existing row for event_id, if any.
    Lets the ingress short-circuit replays before doing signature work.
    """
    if not event_id:
        logger.warning("Empty event id, cannot perform idempotency check")
        return None

    existing = await get_event_log(db, event_id)
    if existing is not None:
        logger.info(
            "Event %s already exists with status %s",
            event_id, existing.processing_status,
            extra={"event_id": event_id, "processing_status": existing.processing_status},
        )
    return existing


async def create_event_log(
    db: AsyncSession,
    event_id: str,
    event_type: str,
    payload: str,
    signature: Optional[str],
    headers: Optional[dict],
    related_entity_id: Optional[uuid.UUID] = None,
) -> CreateResult:
    """
    Insert the event-log row and commit immediately.

    Exactly one concurrent caller per event_id gets Created; the rest get
    AlreadyExists with the existing row, which is advanced to DUPLICATE
    unless it already reached a terminal status.
    """
    event = WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        signature=signature,
        headers=headers,
        related_entity_id=related_entity_id,
        signature_status=SignatureStatus.PENDING.value,
        processing_status=ProcessingStatus.PENDING.value,
        attempt_count=0,
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_event_log(db, event_id)
        if existing is None:
            # Constraint violation unrelated to event_id
            raise
        logger.warning(
            "Duplicate event detected during creation: %s", event_id,
            extra={"event_id": event_id},
        )
        await mark_duplicate_delivery(db, existing)
        return AlreadyExists(existing)

    logger.info(
        "Created webhook event log %s type=%s", event_id, event_type,
        extra={"event_id": event_id, "event_type": event_type},
    )
    return Created(event)


async def mark_duplicate_delivery(db: AsyncSession, event: WebhookEvent) -> bool:
    """
    Record a redundant delivery on a row that has not reached a terminal status.
    Returns True if the row was changed.
    """
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == event.id,
            WebhookEvent.processing_status.in_(
                [ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value]
            ),
        )
        .values(
            processing_status=ProcessingStatus.DUPLICATE.value,
            processed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    changed = result.rowcount == 1
    if changed:
        await db.refresh(event)
    return changed


async def record_signature_validation(
    db: AsyncSession, event: WebhookEvent, is_valid: bool,
) -> WebhookEvent:
    """Persist the signature verdict for an existing row."""
    event.signature_status = (
        SignatureStatus.VALID.value if is_valid else SignatureStatus.INVALID.value
    )
    await db.commit()
    if not is_valid:
        logger.warning(
            "Invalid signature recorded for event %s", event.event_id,
            extra={"event_id": event.event_id},
        )
    return event


async def claim_for_processing(
    db: AsyncSession, event_pk: uuid.UUID,
) -> Optional[WebhookEvent]:
    """
    Move a row to PROCESSING and bump attempt_count, then commit.
    Returns the claimed row, or None if another worker owns it or it is
    already SUCCESS.
    """
    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == event_pk,
            WebhookEvent.processing_status.in_([s.value for s in STARTABLE_STATUSES]),
        )
        .values(
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_started_at=now,
            processed_at=None,
            error_message=None,
            attempt_count=WebhookEvent.attempt_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None

    row = await db.execute(select(WebhookEvent).where(WebhookEvent.id == event_pk))
    event = row.scalar_one()
    await db.refresh(event)
    return event


async def finish_processing(
    db: AsyncSession,
    event_pk: uuid.UUID,
    attempt: int,
    status: ProcessingStatus,
    error_message: Optional[str] = None,
) -> bool:
    """
    Set SUCCESS or FAILED for the attempt that claimed the row.
    Does not commit: the caller commits together with any handler writes.
    Returns False if the attempt no longer owns the row.
    """
    if status not in (ProcessingStatus.SUCCESS, ProcessingStatus.FAILED):
        raise ValueError(f"Not a terminal processing status: {status}")

    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == event_pk,
            WebhookEvent.attempt_count == attempt,
            WebhookEvent.processing_status.in_(
                [ProcessingStatus.PROCESSING.value, ProcessingStatus.DUPLICATE.value]
            ),
        )
        .values(
            processing_status=status.value,
            processed_at=datetime.now(timezone.utc),
            error_message=error_message,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def count_by_processing_status(db: AsyncSession) -> dict[str, int]:
    """Row counts per processing status, zero-filled."""
    result = await db.execute(
        select(WebhookEvent.processing_status, func.count(WebhookEvent.id))
        .group_by(WebhookEvent.processing_status)
    )
    counts = {status.value: 0 for status in ProcessingStatus}
    for status, count in result.all():
        counts[status] = count
    return counts


# ---------------------------------------------------------------------------
# Out-of-band sweep and audit queries
# ---------------------------------------------------------------------------


async def find_failed_events_ready_for_retry(
    db: AsyncSession,
    max_attempts: int,
    retry_after: datetime,
    limit: int = 25,
) -> list[WebhookEvent]:
    """FAILED rows under the attempt ceiling whose last outcome is older than retry_after."""
    result = await db.execute(
        select(WebhookEvent)
        .where(
            WebhookEvent.processing_status == ProcessingStatus.FAILED.value,
            WebhookEvent.signature_status == SignatureStatus.VALID.value,
            WebhookEvent.attempt_count < max_attempts,
            (WebhookEvent.processed_at.is_(None)) | (WebhookEvent.processed_at < retry_after),
        )
        .order_by(WebhookEvent.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def find_pending_events(
    db: AsyncSession,
    older_than: datetime,
    limit: int = 25,
) -> list[WebhookEvent]:
    """Accepted rows that were never picked up by a worker."""
    result = await db.execute(
        select(WebhookEvent)
        .where(
            WebhookEvent.processing_status.in_(
                [ProcessingStatus.PENDING.value, ProcessingStatus.DUPLICATE.value]
            ),
            WebhookEvent.signature_status == SignatureStatus.VALID.value,
            WebhookEvent.attempt_count == 0,
            WebhookEvent.created_at < older_than,
        )
        .order_by(WebhookEvent.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def expire_stale_processing_events(db: AsyncSession, stale_before: datetime) -> int:
    """
    Fail rows stuck mid-attempt (worker crashed). Covers PROCESSING rows and
    DUPLICATE rows a redelivery flagged while they were PROCESSING; both carry
    processing_started_at. Returns count.
    """
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.processing_status.in_(
                [ProcessingStatus.PROCESSING.value, ProcessingStatus.DUPLICATE.value]
            ),
            WebhookEvent.processing_started_at < stale_before,
        )
        .values(
            processing_status=ProcessingStatus.FAILED.value,
            processed_at=datetime.now(timezone.utc),
            error_message=STALE_PROCESSING_ERROR,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def find_events_by_time_range(
    db: AsyncSession,
    start: datetime,
    end: datetime,
    event_type: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[WebhookEvent]:
    """Newest-first audit listing of rows created in [start, end]."""
    query = select(WebhookEvent).where(
        WebhookEvent.created_at >= start,
        WebhookEvent.created_at <= end,
    )
    if event_type:
        query = query.where(WebhookEvent.event_type == event_type)
    if status:
        query = query.where(WebhookEvent.processing_status == status)
    result = await db.execute(query.order_by(WebhookEvent.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def find_events_by_related_entity(
    db: AsyncSession, related_entity_id: uuid.UUID, limit: int = 100,
) -> list[WebhookEvent]:
    """Webhook history for one identity mapping, newest first."""
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.related_entity_id == related_entity_id)
        .order_by(WebhookEvent.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
