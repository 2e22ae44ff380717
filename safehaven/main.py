"""
SafeHaven webhook service - idempotent ingestion and async processing of
provider events.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from safehaven.config import APP_VERSION, get_settings
from safehaven.api.router import build_api_router
from safehaven.database import dispose_engine
from safehaven.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("safehaven")

WORKER_STOP_TIMEOUT_SECONDS = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def build_pipeline(app: FastAPI) -> None:
    """Wire registry -> router -> processor -> dispatcher onto app.state."""
    from safehaven.services.event_dispatcher import EventDispatcher
    from safehaven.services.event_registry import build_default_registry
    from safehaven.services.event_router import EventRouter
    from safehaven.services.webhook_processing import WebhookProcessor
    from safehaven.utils.webhook_signatures import build_signature_validator

    processor = WebhookProcessor(EventRouter(build_default_registry()))
    app.state.webhook_processor = processor
    app.state.webhook_dispatcher = EventDispatcher.from_settings(processor.process)
    app.state.signature_validator = build_signature_validator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("SafeHaven webhook service starting up (env=%s)", settings.app_env)

    if not settings.safehaven_webhook_secret:
        logger.warning(
            "SAFEHAVEN_WEBHOOK_SECRET not set - every webhook will be rejected "
            "with 401 until a secret is configured."
        )
    if not settings.admin_api_key:
        logger.info("ADMIN_API_KEY not set - event-log endpoints are disabled")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    dispatcher = getattr(app.state, "webhook_dispatcher", None)
    if dispatcher is None or dispatcher.closed:
        build_pipeline(app)
        dispatcher = app.state.webhook_dispatcher
    dispatcher.start()

    worker_tasks: list[asyncio.Task] = []
    if settings.webhook_retry_enabled:
        from safehaven.workers.retry_worker import run_retry_worker
        worker_tasks.append(asyncio.create_task(run_retry_worker(dispatcher)))
        logger.info("Retry worker started")
    else:
        logger.info("Retry worker disabled (WEBHOOK_RETRY_ENABLED=false)")

    yield

    # Stop the sweep first so it cannot resubmit into a draining dispatcher
    logger.info("SafeHaven webhook service shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=WORKER_STOP_TIMEOUT_SECONDS)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    drained = await dispatcher.shutdown()
    if not drained:
        logger.warning("Dispatcher did not drain in time; unfinished events are left for the retry sweep")

    await dispose_engine()
    logger.info("SafeHaven webhook service shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="SafeHaven Webhooks",
        description="Idempotent ingestion and processing of SafeHaven webhook events",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)

    build_pipeline(application)
    application.include_router(build_api_router(settings.safehaven_webhook_path))

    return application


app = create_app()
