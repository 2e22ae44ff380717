"""
SafeHaven webhook ingress - accept, deduplicate, and queue provider events.

Per request, in order:
1. Event id + signature headers present, body is UTF-8         (else 400)
2. Pre-check: existing SUCCESS -> 200 replay, DUPLICATE -> 409
3. HMAC signature over the raw body                             (else 401, no row)
4. Event type + related identity from the payload (best effort)
5. Insert the event-log row; losing the unique-index race      -> 409
6. Record the VALID signature, submit to the dispatcher        -> 202

The response never waits for processing. Processing outcomes surface only
through the event-log row and the health statistics.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.config import get_settings
from safehaven.database import get_db
from safehaven.models.webhook_event import ProcessingStatus
from safehaven.schemas.webhook_responses import (
    DispatcherStats,
    WebhookAckResponse,
    WebhookHealthResponse,
)
from safehaven.services.event_dispatcher import DispatcherClosedError, EventDispatcher
from safehaven.services.identity_lookup import resolve_related_entity_id
from safehaven.services.webhook_idempotency import (
    AlreadyExists,
    check_idempotency,
    create_event_log,
    record_signature_validation,
)
from safehaven.services.webhook_processing import get_processing_statistics
from safehaven.utils.webhook_signatures import WebhookSignatureValidator

logger = logging.getLogger(__name__)
router = APIRouter(tags=["safehaven-webhooks"])

UNKNOWN_EVENT_TYPE = "unknown"
MAX_EVENT_ID_LENGTH = 255
MAX_EVENT_TYPE_LENGTH = 100
MAX_SIGNATURE_LENGTH = 512

# Never persisted in the header snapshot
_REDACTED_HEADERS = frozenset({"authorization", "cookie", "x-admin-key"})


def get_dispatcher(request: Request) -> EventDispatcher:
    return request.app.state.webhook_dispatcher


def get_signature_validator(request: Request) -> WebhookSignatureValidator:
    return request.app.state.signature_validator


def extract_event_type(payload: str) -> str:
    """Event type from the body's "type" (or event_type/eventType) field."""
    try:
        parsed = json.loads(payload)
    except ValueError:
        logger.warning("Failed to extract event type from payload, using '%s'", UNKNOWN_EVENT_TYPE)
        return UNKNOWN_EVENT_TYPE
    if not isinstance(parsed, dict):
        return UNKNOWN_EVENT_TYPE

    for key in ("type", "event_type", "eventType"):
        value = parsed.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()[:MAX_EVENT_TYPE_LENGTH]
    return UNKNOWN_EVENT_TYPE


def _parse_object(payload: str) -> Optional[dict]:
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def snapshot_headers(request: Request) -> dict:
    return {
        name: value
        for name, value in request.headers.items()
        if name.lower() not in _REDACTED_HEADERS
    }


def _duplicate_response(event_id: str) -> JSONResponse:
    body = WebhookAckResponse(status="duplicate", message="Event ID already exists", event_id=event_id)
    return JSONResponse(status_code=409, content=body.to_wire())


def _error_response(status_code: int, error: str, **fields) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **fields})


@router.post("")
async def receive_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
    validator: WebhookSignatureValidator = Depends(get_signature_validator),
):
    """Receive one SafeHaven event. Returns 202 once durably recorded and queued."""
    settings = get_settings()
    event_id: Optional[str] = None

    try:
        event_id = request.headers.get(settings.safehaven_event_id_header)
        if not event_id:
            logger.warning("Webhook received without event ID header: %s", settings.safehaven_event_id_header)
            return _error_response(400, "Missing event ID header", header=settings.safehaven_event_id_header)
        if len(event_id) > MAX_EVENT_ID_LENGTH:
            return _error_response(400, "Event ID too long", eventId=event_id[:64])

        signature = request.headers.get(settings.safehaven_signature_header)
        if not signature:
            logger.warning(
                "Webhook received without signature header: %s for event ID: %s",
                settings.safehaven_signature_header, event_id,
                extra={"event_id": event_id},
            )
            return _error_response(400, "Missing signature header", header=settings.safehaven_signature_header)

        body = await request.body()
        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Webhook body for %s is not valid UTF-8", event_id, extra={"event_id": event_id})
            return _error_response(400, "Failed to read request body", eventId=event_id)

        logger.info("Received webhook event %s", event_id, extra={"event_id": event_id})

        existing = await check_idempotency(db, event_id)
        if existing is not None:
            if existing.processing_status == ProcessingStatus.SUCCESS.value:
                logger.info(
                    "Event ID %s already processed successfully, returning idempotent response", event_id,
                    extra={"event_id": event_id},
                )
                replay = WebhookAckResponse(
                    status="success",
                    message="Event already processed",
                    event_id=event_id,
                    processed_at=existing.processed_at,
                )
                return JSONResponse(status_code=200, content=replay.to_wire())
            if existing.processing_status == ProcessingStatus.DUPLICATE.value:
                logger.info("Event ID %s is a duplicate", event_id, extra={"event_id": event_id})
                return _duplicate_response(event_id)

        if not validator.validate(body, signature):
            client_ip = request.client.host if request.client else "unknown"
            logger.warning(
                "Invalid signature for event ID %s from %s", event_id, client_ip,
                extra={"event_id": event_id},
            )
            return _error_response(401, "Invalid signature", eventId=event_id)

        event_type = extract_event_type(payload)
        related_entity_id = None
        parsed = _parse_object(payload)
        if parsed is not None:
            related_entity_id = await resolve_related_entity_id(db, parsed)

        result = await create_event_log(
            db,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            signature=signature[:MAX_SIGNATURE_LENGTH],
            headers=snapshot_headers(request),
            related_entity_id=related_entity_id,
        )
        if isinstance(result, AlreadyExists):
            return _duplicate_response(event_id)

        event = await record_signature_validation(db, result.event, is_valid=True)
        ack = await dispatcher.submit(event)

        logger.info(
            "Webhook event accepted and queued for processing: %s type=%s", event_id, event_type,
            extra={"event_id": event_id, "event_type": event_type, "dispatch_mode": ack.mode.value},
        )
        accepted = WebhookAckResponse(
            status="accepted", message="Event queued for processing", event_id=event_id,
        )
        return JSONResponse(status_code=202, content=accepted.to_wire())

    except DispatcherClosedError:
        # Row is committed PENDING/VALID; the recovery sweep picks it up
        logger.error(
            "Dispatcher closed, event %s left pending for recovery", event_id,
            extra={"event_id": event_id},
        )
        return _error_response(500, "Internal server error", eventId=event_id or "unknown")
    except Exception as e:
        logger.error(
            "Unexpected error processing webhook for event ID %s: %s", event_id, str(e),
            exc_info=True, extra={"event_id": event_id},
        )
        await db.rollback()
        return _error_response(500, "Internal server error", eventId=event_id or "unknown")


@router.get("/health")
async def webhook_health(
    db: AsyncSession = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
    validator: WebhookSignatureValidator = Depends(get_signature_validator),
):
    """Processing statistics, validator configuration, and dispatcher load."""
    try:
        statistics = await get_processing_statistics(db)
        health = WebhookHealthResponse(
            status="healthy",
            statistics=statistics,
            signature_validator_configured=validator.is_configured(),
            dispatcher=DispatcherStats(**dispatcher.stats()),
        )
        return health.to_wire()
    except Exception as e:
        logger.error("Error retrieving webhook health: %s", str(e), exc_info=True)
        return JSONResponse(status_code=500, content={"status": "unhealthy"})
