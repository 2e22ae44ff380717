"""
Event handler registry - maps SafeHaven event types to handler coroutines.

Built once at startup from a fixed table and frozen; lookups never mutate state.

Resolution order:
1. exact event type ("identity.created")
2. first registered wildcard whose prefix matches ("payment.*" matches "payment.refunded")
3. None - callers fall back to the default handler
"""
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict, WebhookEvent, AsyncSession], Awaitable[None]]

WILDCARD_SUFFIX = ".*"


class RegistryFrozenError(RuntimeError):
    """Raised when registering a handler after startup."""
    pass


class EventHandlerRegistry:

    def __init__(self, default_handler: Optional[EventHandler] = None):
        self._exact: dict[str, EventHandler] = {}
        self._wildcards: list[tuple[str, EventHandler]] = []
        self._default_handler = default_handler or log_unhandled_event
        self._frozen = False

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Registry is frozen, cannot register {event_type}")
        if not event_type:
            raise ValueError("event_type must not be empty")

        if event_type.endswith(WILDCARD_SUFFIX):
            prefix = event_type[: -len(WILDCARD_SUFFIX)]
            for i, (existing, _) in enumerate(self._wildcards):
                if existing == prefix:
                    # Re-registration keeps the original precedence slot
                    self._wildcards[i] = (prefix, handler)
                    break
            else:
                self._wildcards.append((prefix, handler))
        else:
            self._exact[event_type] = handler
        logger.debug("Registered handler for event type: %s", event_type)

    def freeze(self) -> "EventHandlerRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get_handler(self, event_type: str) -> Optional[EventHandler]:
        handler = self._exact.get(event_type)
        if handler is not None:
            return handler

        for prefix, wildcard_handler in self._wildcards:
            if event_type.startswith(prefix + "."):
                return wildcard_handler
        return None

    def get_default_handler(self) -> EventHandler:
        return self._default_handler

    def registered_types(self) -> list[str]:
        return list(self._exact) + [p + WILDCARD_SUFFIX for p, _ in self._wildcards]

    def __len__(self) -> int:
        return len(self._exact) + len(self._wildcards)


async def log_unhandled_event(payload: dict, event: WebhookEvent, db: AsyncSession) -> None:
    """Default handler: acknowledge and record unknown event types, never fail."""
    logger.info(
        "Processing unknown event type %s with default handler", event.event_type,
        extra={"event_id": event.event_id, "event_type": event.event_type},
    )


def build_default_registry() -> EventHandlerRegistry:
    """Registry with every SafeHaven event type this service understands, frozen."""
    from safehaven.services import event_handlers as h

    registry = EventHandlerRegistry()

    # Identity events
    registry.register_handler("identity.created", h.handle_identity_created)
    registry.register_handler("identity.updated", h.handle_identity_updated)
    registry.register_handler("identity.deleted", h.handle_identity_deleted)

    # Token events
    registry.register_handler("token.revoked", h.handle_token_revoked)
    registry.register_handler("token.expired", h.handle_token_expired)

    # Payment events; the wildcard catches types without a dedicated handler
    registry.register_handler("payment.completed", h.handle_payment_completed)
    registry.register_handler("payment.failed", h.handle_payment_failed)
    registry.register_handler("payment.*", h.handle_payment_event)

    # Account events
    registry.register_handler("account.suspended", h.handle_account_suspended)
    registry.register_handler("account.activated", h.handle_account_activated)

    logger.info("Initialized webhook event handler registry with %d handlers", len(registry))
    return registry.freeze()
