"""
Test configuration and fixtures.
Uses SQLite (aiosqlite) in place of PostgreSQL. Settings come from the
environment defaults below, set before any safehaven module is imported.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SAFEHAVEN_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("WEBHOOK_RETRY_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import json
import uuid
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

import safehaven.models  # noqa: F401  registers all tables on Base.metadata
from safehaven.database import Base, get_db
from safehaven.models.webhook_event import ProcessingStatus, SignatureStatus, WebhookEvent
from safehaven.utils.webhook_signatures import compute_hmac_sha256

WEBHOOK_SECRET = os.environ["SAFEHAVEN_WEBHOOK_SECRET"]


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


def _signed_headers(event_id: str, body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Provider-Event-Id": event_id,
        "X-Provider-Signature": compute_hmac_sha256(secret, body),
    }


async def _add_event(
    db: AsyncSession,
    event_id: str | None = None,
    event_type: str = "identity.created",
    payload: str | None = None,
    signature_status: str = SignatureStatus.VALID.value,
    processing_status: str = ProcessingStatus.PENDING.value,
    attempt_count: int = 0,
    **fields,
) -> WebhookEvent:
    """Insert an event-log row directly, bypassing the ingress."""
    event = WebhookEvent(
        event_id=event_id or f"evt-{uuid.uuid4().hex[:12]}",
        event_type=event_type,
        payload=payload if payload is not None else json.dumps({"type": event_type, "user_id": "u1"}),
        signature="sig",
        signature_status=signature_status,
        processing_status=processing_status,
        attempt_count=attempt_count,
        **fields,
    )
    db.add(event)
    await db.commit()
    return event


@pytest.fixture
def signed_headers():
    """Headers for a delivery of body signed with secret (the test secret by default)."""
    return _signed_headers


@pytest.fixture
def add_event():
    """Factory inserting event-log rows directly, bypassing the ingress."""
    return _add_event


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """
    File-backed SQLite shared by several sessions. Concurrent writers hit
    the real unique index, which an in-memory database cannot provide
    (each connection would get its own empty database).
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def app(session_factory):
    """Application wired to the file-backed test database."""
    from safehaven.main import create_app
    from safehaven.services.event_dispatcher import EventDispatcher
    from safehaven.services.event_registry import build_default_registry
    from safehaven.services.event_router import EventRouter
    from safehaven.services.webhook_processing import WebhookProcessor
    from safehaven.utils.webhook_signatures import WebhookSignatureValidator

    with patch("safehaven.main.configure_structured_logging"):
        application = create_app()

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = _get_test_db

    processor = WebhookProcessor(EventRouter(build_default_registry()), session_factory=session_factory)
    application.state.webhook_processor = processor
    application.state.webhook_dispatcher = EventDispatcher(
        processor.process,
        core_workers=2,
        max_workers=4,
        queue_capacity=10,
        keepalive_seconds=1.0,
        shutdown_grace_seconds=5.0,
    )
    application.state.signature_validator = WebhookSignatureValidator(WEBHOOK_SECRET)

    yield application

    await application.state.webhook_dispatcher.shutdown()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
