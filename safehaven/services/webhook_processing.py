"""
Webhook processing - runs one accepted event through the handler pipeline.

Called by the event dispatcher, off the request path. Every step is its own
committed transition so a crash mid-pipeline leaves an inspectable row:

1. Claim: PENDING/DUPLICATE/FAILED -> PROCESSING, attempt_count += 1
2. Signature status must be VALID, otherwise FAILED
3. Parse the stored payload as a JSON object, otherwise FAILED
4. Route to the handler; handler writes + SUCCESS commit together,
   handler errors -> FAILED with the original message

Failures are recorded on the row and logged, never re-raised to the dispatcher.
"""
import json
import logging
import time
import uuid
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.database import async_session_factory
from safehaven.models.webhook_event import ProcessingStatus, SignatureStatus, WebhookEvent
from safehaven.services.event_router import EventRouter, WebhookProcessingError
from safehaven.services.webhook_idempotency import (
    claim_for_processing,
    count_by_processing_status,
    finish_processing,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


def parse_payload(raw: str) -> dict:
    """Parse a stored webhook body. Raises ValueError unless it is a JSON object."""
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


class WebhookProcessor:

    def __init__(self, router: EventRouter, session_factory: Optional[SessionFactory] = None):
        self._router = router
        self._session_factory = session_factory or async_session_factory

    async def process(self, event_pk: uuid.UUID) -> Optional[ProcessingStatus]:
        """
        Process one event row. Returns the terminal status this attempt recorded,
        or None if the attempt did not own the row.
        """
        started = time.monotonic()
        try:
            async with self._session_factory() as db:
                event = await claim_for_processing(db, event_pk)
        except Exception as e:
            logger.error("Could not claim webhook event %s: %s", event_pk, str(e), exc_info=True)
            return None

        if event is None:
            logger.info("Webhook event %s already claimed or completed, skipping", event_pk)
            return None

        attempt = event.attempt_count
        extra = {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "attempt": attempt,
        }
        logger.info("Processing webhook event %s", event.event_id, extra=extra)

        if event.signature_status != SignatureStatus.VALID.value:
            logger.warning("Rejecting event %s due to unverified signature", event.event_id, extra=extra)
            return await self._fail(event, attempt, f"Invalid signature status: {event.signature_status}")

        try:
            payload = parse_payload(event.payload)
        except ValueError as e:
            logger.error("Error parsing payload for event %s: %s", event.event_id, str(e), extra=extra)
            return await self._fail(event, attempt, f"Failed to parse webhook payload: {e}")

        try:
            async with self._session_factory() as db:
                await self._router.route_event(event.event_type, payload, event, db)
                owned = await finish_processing(db, event.id, attempt, ProcessingStatus.SUCCESS)
                if not owned:
                    await db.rollback()
                    logger.warning(
                        "Attempt %d lost ownership of event %s, discarding result",
                        attempt, event.event_id, extra=extra,
                    )
                    return None
                await db.commit()
        except WebhookProcessingError as e:
            return await self._fail(event, attempt, f"Error processing event: {e}")
        except Exception as e:
            logger.error(
                "Unexpected error during webhook processing %s: %s", event.event_id, str(e),
                exc_info=True, extra=extra,
            )
            return await self._fail(event, attempt, f"Unexpected error: {e}")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Successfully processed webhook event %s in %dms", event.event_id, elapsed_ms,
            extra={**extra, "processing_status": ProcessingStatus.SUCCESS.value},
        )
        return ProcessingStatus.SUCCESS

    async def _fail(
        self, event: WebhookEvent, attempt: int, error_message: str,
    ) -> Optional[ProcessingStatus]:
        """Record FAILED. A storage error here is logged, not raised."""
        try:
            async with self._session_factory() as db:
                owned = await finish_processing(
                    db, event.id, attempt, ProcessingStatus.FAILED, error_message,
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to save error status for event %s: %s", event.event_id, str(e),
                exc_info=True, extra={"event_id": event.event_id},
            )
            return None

        if not owned:
            logger.warning("Attempt %d no longer owns event %s", attempt, event.event_id)
            return None
        logger.warning(
            "Webhook event %s failed: %s", event.event_id, error_message,
            extra={
                "event_id": event.event_id,
                "attempt": attempt,
                "processing_status": ProcessingStatus.FAILED.value,
            },
        )
        return ProcessingStatus.FAILED


async def get_processing_statistics(db: AsyncSession) -> dict[str, int]:
    """Counts per processing status for health and monitoring."""
    return await count_by_processing_status(db)
