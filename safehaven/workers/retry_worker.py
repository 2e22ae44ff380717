"""
Retry worker - recovers webhook events the request path could not finish.
Runs every webhook_retry_poll_seconds. Each sweep:

1. expires PROCESSING rows whose worker died (-> FAILED "Processing timed out")
2. resubmits FAILED rows under the attempt ceiling, after the retry delay
3. resubmits accepted rows that never reached a worker (crash, closed dispatcher)

Everything goes back through the dispatcher; its compare-and-set claim
skips rows that were picked up elsewhere in the meantime.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from safehaven.services.event_dispatcher import DispatcherClosedError, EventDispatcher

logger = logging.getLogger(__name__)


async def run_retry_worker(
    dispatcher: EventDispatcher,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
):
    """Main retry worker loop. Runs continuously until cancelled."""
    from safehaven.config import get_settings
    settings = get_settings()
    logger.info(
        "Retry worker started (poll=%ds, max_attempts=%d)",
        settings.webhook_retry_poll_seconds, settings.webhook_retry_max_attempts,
    )

    while True:
        try:
            counts = await sweep_once(dispatcher, session_factory)
            if any(counts.values()):
                logger.info(
                    "Retry sweep: expired=%d retried=%d recovered=%d",
                    counts["expired"], counts["retried"], counts["recovered"],
                )
        except DispatcherClosedError:
            logger.info("Dispatcher closed, retry worker stopping")
            return
        except Exception as e:
            logger.error("Retry worker error: %s", str(e), exc_info=True)

        await asyncio.sleep(settings.webhook_retry_poll_seconds)


async def sweep_once(
    dispatcher: EventDispatcher,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """One recovery pass. Returns counts per step."""
    from safehaven.config import get_settings
    from safehaven.database import async_session_factory
    from safehaven.services.webhook_idempotency import (
        expire_stale_processing_events,
        find_failed_events_ready_for_retry,
        find_pending_events,
    )

    settings = get_settings()
    session_factory = session_factory or async_session_factory
    now = now or datetime.now(timezone.utc)
    counts = {"expired": 0, "retried": 0, "recovered": 0}

    async with session_factory() as db:
        counts["expired"] = await expire_stale_processing_events(
            db, now - timedelta(minutes=settings.webhook_stale_processing_minutes),
        )
        if counts["expired"]:
            logger.warning("Expired %d stale PROCESSING webhook events", counts["expired"])

        failed = await find_failed_events_ready_for_retry(
            db,
            max_attempts=settings.webhook_retry_max_attempts,
            retry_after=now - timedelta(minutes=settings.webhook_retry_after_minutes),
            limit=settings.webhook_retry_batch_size,
        )
        orphaned = await find_pending_events(
            db,
            older_than=now - timedelta(minutes=settings.webhook_pending_grace_minutes),
            limit=settings.webhook_retry_batch_size,
        )

    for event in failed:
        logger.info(
            "Retrying webhook event %s (attempt %d)", event.event_id, event.attempt_count + 1,
            extra={"event_id": event.event_id, "attempt": event.attempt_count + 1},
        )
        await dispatcher.submit(event)
        counts["retried"] += 1

    for event in orphaned:
        logger.info(
            "Recovering never-dispatched webhook event %s", event.event_id,
            extra={"event_id": event.event_id},
        )
        await dispatcher.submit(event)
        counts["recovered"] += 1

    return counts
