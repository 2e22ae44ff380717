"""
Routes parsed SafeHaven events to their handler.

Any exception raised by a handler is wrapped in WebhookProcessingError, so the
processing service only has to know "the handler failed", not which one.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.models.webhook_event import WebhookEvent
from safehaven.services.event_registry import EventHandlerRegistry

logger = logging.getLogger(__name__)


class WebhookProcessingError(Exception):
    """A handler failed while processing an event."""

    def __init__(self, event_type: str, cause: BaseException):
        self.event_type = event_type
        self.cause = cause
        super().__init__(f"Handler execution failed for event type {event_type}: {cause}")


class EventRouter:

    def __init__(self, registry: EventHandlerRegistry):
        self._registry = registry

    async def route_event(
        self,
        event_type: str,
        payload: dict,
        event: WebhookEvent,
        db: AsyncSession,
    ) -> None:
        handler = self._registry.get_handler(event_type)
        if handler is None:
            logger.warning(
                "No handler found for event type %s, using default handler", event_type,
                extra={"event_id": event.event_id, "event_type": event_type},
            )
            handler = self._registry.get_default_handler()

        try:
            await handler(payload, event, db)
        except Exception as e:
            logger.error(
                "Error in handler for event type %s: %s", event_type, str(e),
                exc_info=True,
                extra={"event_id": event.event_id, "event_type": event_type},
            )
            raise WebhookProcessingError(event_type, e) from e

        logger.debug("Successfully routed event type %s", event_type)
