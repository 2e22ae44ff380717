"""
Tests for safehaven/services/event_router.py - dispatch to handlers, error wrapping.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from safehaven.services.event_registry import EventHandlerRegistry
from safehaven.services.event_router import EventRouter, WebhookProcessingError


def _event(event_type="identity.created"):
    return MagicMock(event_id="evt-1", event_type=event_type)


class TestRouteEvent:
    async def test_calls_registered_handler(self):
        handler = AsyncMock()
        registry = EventHandlerRegistry()
        registry.register_handler("identity.created", handler)
        db = AsyncMock()
        event = _event()

        await EventRouter(registry).route_event("identity.created", {"user_id": "u1"}, event, db)

        handler.assert_awaited_once_with({"user_id": "u1"}, event, db)

    async def test_unknown_type_uses_default_handler(self):
        default = AsyncMock()
        registry = EventHandlerRegistry(default_handler=default)

        await EventRouter(registry).route_event("unknown.thing", {}, _event("unknown.thing"), AsyncMock())

        default.assert_awaited_once()

    async def test_wildcard_resolution(self):
        wildcard = AsyncMock()
        registry = EventHandlerRegistry()
        registry.register_handler("payment.*", wildcard)

        await EventRouter(registry).route_event("payment.refunded", {}, _event("payment.refunded"), AsyncMock())

        wildcard.assert_awaited_once()

    async def test_handler_error_is_wrapped(self):
        cause = ValueError("Missing user_id in identity.created event")
        registry = EventHandlerRegistry()
        registry.register_handler("identity.created", AsyncMock(side_effect=cause))

        with pytest.raises(WebhookProcessingError) as exc_info:
            await EventRouter(registry).route_event("identity.created", {}, _event(), AsyncMock())

        err = exc_info.value
        assert err.event_type == "identity.created"
        assert err.cause is cause
        assert err.__cause__ is cause
        assert str(err) == (
            "Handler execution failed for event type identity.created: "
            "Missing user_id in identity.created event"
        )

    async def test_default_handler_errors_are_wrapped_too(self):
        registry = EventHandlerRegistry(default_handler=AsyncMock(side_effect=RuntimeError("x")))
        with pytest.raises(WebhookProcessingError):
            await EventRouter(registry).route_event("nope", {}, _event("nope"), AsyncMock())
