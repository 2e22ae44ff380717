"""
Event-log inspection and manual replay for operators.

All routes require X-Admin-Key. With no admin key configured the routes
behave as if they did not exist (404).
"""
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.api.webhooks import get_dispatcher
from safehaven.config import get_settings
from safehaven.database import get_db
from safehaven.models.webhook_event import ProcessingStatus
from safehaven.schemas.webhook_responses import (
    WebhookAckResponse,
    WebhookEventDetail,
    WebhookEventListResponse,
)
from safehaven.services.event_dispatcher import EventDispatcher
from safehaven.services.webhook_idempotency import (
    find_events_by_time_range,
    get_event_log,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/events", tags=["safehaven-webhook-events"])

DEFAULT_LISTING_WINDOW = timedelta(hours=24)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Dependency that gates operator routes behind the configured admin key."""
    expected = get_settings().admin_api_key
    if not expected:
        raise HTTPException(status_code=404, detail="Not found")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected event-log request with invalid admin key")
        raise HTTPException(status_code=401, detail="Invalid admin key")


@router.get("", dependencies=[Depends(require_admin_key)])
async def list_events(
    status: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Audit listing, newest first. Defaults to the last 24 hours."""
    if status is not None and status not in {s.value for s in ProcessingStatus}:
        raise HTTPException(status_code=422, detail=f"Unknown processing status: {status}")

    end = _as_utc(end) if end else datetime.now(timezone.utc)
    start = _as_utc(start) if start else end - DEFAULT_LISTING_WINDOW
    if start > end:
        raise HTTPException(status_code=422, detail="start must not be after end")

    events = await find_events_by_time_range(
        db, start, end, event_type=event_type, status=status, limit=limit,
    )
    listing = WebhookEventListResponse(
        events=[WebhookEventDetail.from_event(e, include_payload=False) for e in events],
        total=len(events),
    )
    return listing.to_wire()


@router.get("/{event_id}", dependencies=[Depends(require_admin_key)])
async def get_event(event_id: str, db: AsyncSession = Depends(get_db)):
    event = await get_event_log(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return WebhookEventDetail.from_event(event).to_wire()


@router.post("/{event_id}/replay", dependencies=[Depends(require_admin_key)])
async def replay_event(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Resubmit a FAILED event that still has attempts left."""
    event = await get_event_log(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    if event.processing_status != ProcessingStatus.FAILED.value:
        raise HTTPException(
            status_code=409,
            detail=f"Only FAILED events can be replayed (status is {event.processing_status})",
        )

    max_attempts = get_settings().webhook_retry_max_attempts
    if event.attempt_count >= max_attempts:
        raise HTTPException(
            status_code=422,
            detail=f"Event already attempted {event.attempt_count} of {max_attempts} times",
        )

    ack = await dispatcher.submit(event)
    logger.info(
        "Manual replay of event %s submitted", event_id,
        extra={"event_id": event_id, "dispatch_mode": ack.mode.value},
    )
    body = WebhookAckResponse(status="accepted", message="Event resubmitted for processing", event_id=event_id)
    return JSONResponse(status_code=202, content=body.to_wire())
