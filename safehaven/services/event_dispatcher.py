"""
Event dispatcher - bounded asyncio worker pool for webhook processing.

Decouples acceptance (must be fast) from processing (may be slow or fail):
submit() enqueues the accepted row and returns without waiting.

Pool policy, in order:
1. queue has room           -> enqueue for one of the core workers
2. queue full, below max    -> start an extra worker that takes the item directly
3. queue full, at max       -> run on the caller (backpressure)

Nothing is ever dropped: under saturation the ingress request pays the
latency instead. Extra workers exit after sitting idle for keepalive_seconds.

Shutdown stops new submissions, waits up to the grace period for queued and
in-flight work, then cancels whatever is left. Rows abandoned that way stay
PENDING/PROCESSING and are recovered by the retry sweep.
"""
import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from safehaven.models.webhook_event import WebhookEvent
from safehaven.utils.logging import get_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

DRAIN_POLL_INTERVAL = 0.05  # 50ms

ProcessFn = Callable[[uuid.UUID], Awaitable[Any]]


class DispatchMode(str, enum.Enum):
    QUEUED = "queued"
    NEW_WORKER = "new_worker"
    CALLER_RUNS = "caller_runs"


@dataclass(frozen=True)
class DispatchAck:
    event_pk: uuid.UUID
    mode: DispatchMode


@dataclass(frozen=True)
class _WorkItem:
    event_pk: uuid.UUID
    event_id: str
    correlation_id: Optional[str]


class DispatcherClosedError(RuntimeError):
    """Raised by submit() once shutdown has begun."""
    pass


class EventDispatcher:

    def __init__(
        self,
        process: ProcessFn,
        core_workers: int = 5,
        max_workers: int = 10,
        queue_capacity: int = 100,
        keepalive_seconds: float = 60.0,
        shutdown_grace_seconds: float = 60.0,
    ):
        if core_workers < 1:
            raise ValueError("core_workers must be at least 1")
        if max_workers < core_workers:
            raise ValueError("max_workers must be >= core_workers")
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be at least 1")

        self._process = process
        self._core_workers = core_workers
        self._max_workers = max_workers
        self._queue_capacity = queue_capacity
        self._keepalive_seconds = keepalive_seconds
        self._shutdown_grace_seconds = shutdown_grace_seconds

        self._queue: asyncio.Queue[_WorkItem] = asyncio.Queue(maxsize=queue_capacity)
        self._workers: set[asyncio.Task] = set()
        self._started = False
        self._closed = False
        self._in_flight = 0
        self._caller_runs = 0
        self._processed = 0
        self._errors = 0

    @classmethod
    def from_settings(cls, process: ProcessFn) -> "EventDispatcher":
        from safehaven.config import get_settings
        settings = get_settings()
        return cls(
            process,
            core_workers=settings.webhook_dispatcher_core_workers,
            max_workers=settings.webhook_dispatcher_max_workers,
            queue_capacity=settings.webhook_dispatcher_queue_capacity,
            keepalive_seconds=settings.webhook_dispatcher_keepalive_seconds,
            shutdown_grace_seconds=settings.webhook_shutdown_grace_seconds,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Spawn the core workers. Must be called from a running event loop."""
        if self._started:
            return
        self._started = True
        for _ in range(self._core_workers):
            self._spawn_worker(core=True)
        logger.info(
            "Webhook dispatcher started: core=%d max=%d queue=%d",
            self._core_workers, self._max_workers, self._queue_capacity,
        )

    async def submit(self, event: WebhookEvent) -> DispatchAck:
        """Hand an accepted event to the pool. Never drops work."""
        if self._closed:
            raise DispatcherClosedError(f"Dispatcher is shut down, cannot accept {event.event_id}")
        if not self._started:
            self.start()

        item = _WorkItem(event.id, event.event_id, get_correlation_id())
        try:
            self._queue.put_nowait(item)
            return self._ack(item, DispatchMode.QUEUED)
        except asyncio.QueueFull:
            pass

        if len(self._workers) < self._max_workers:
            self._spawn_worker(core=False, first_item=item)
            return self._ack(item, DispatchMode.NEW_WORKER)

        self._caller_runs += 1
        logger.warning(
            "Webhook dispatcher saturated (%d workers, %d queued), processing %s on caller",
            len(self._workers), self._queue.qsize(), item.event_id,
            extra={"event_id": item.event_id, "dispatch_mode": DispatchMode.CALLER_RUNS.value},
        )
        await self._run(item)
        return self._ack(item, DispatchMode.CALLER_RUNS)

    async def shutdown(self, grace_seconds: Optional[float] = None) -> bool:
        """
        Stop accepting work and drain. Returns True if everything finished
        within the grace period.
        """
        if self._closed:
            return self._queue.empty() and self._in_flight == 0
        self._closed = True
        grace = self._shutdown_grace_seconds if grace_seconds is None else grace_seconds

        logger.info(
            "Webhook dispatcher shutting down: %d queued, %d in flight, grace=%.1fs",
            self._queue.qsize(), self._in_flight, grace,
        )
        try:
            await asyncio.wait_for(self._wait_until_idle(), timeout=grace)
            drained = True
        except asyncio.TimeoutError:
            drained = False
            logger.warning(
                "Shutdown grace period expired, abandoning %d queued and %d in-flight events",
                self._queue.qsize(), self._in_flight,
            )

        workers = list(self._workers)
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Webhook dispatcher stopped (drained=%s)", drained)
        return drained

    async def wait_until_idle(self) -> None:
        """Block until nothing is queued or running. Used by tests and tooling."""
        await self._wait_until_idle()

    def stats(self) -> dict:
        return {
            "workers": len(self._workers),
            "core_workers": self._core_workers,
            "max_workers": self._max_workers,
            "queue_depth": self._queue.qsize(),
            "queue_capacity": self._queue_capacity,
            "in_flight": self._in_flight,
            "processed": self._processed,
            "errors": self._errors,
            "caller_runs": self._caller_runs,
            "closed": self._closed,
        }

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _ack(self, item: _WorkItem, mode: DispatchMode) -> DispatchAck:
        logger.debug(
            "Dispatched %s (%s)", item.event_id, mode.value,
            extra={"event_id": item.event_id, "dispatch_mode": mode.value},
        )
        return DispatchAck(item.event_pk, mode)

    def _spawn_worker(self, core: bool, first_item: Optional[_WorkItem] = None) -> None:
        task = asyncio.create_task(self._worker(core, first_item))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)

    async def _worker(self, core: bool, first_item: Optional[_WorkItem]) -> None:
        if first_item is not None:
            await self._run(first_item)

        while True:
            if core:
                item = await self._queue.get()
            else:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=self._keepalive_seconds)
                except asyncio.TimeoutError:
                    return
            try:
                await self._run(item)
            finally:
                self._queue.task_done()

    async def _run(self, item: _WorkItem) -> None:
        self._in_flight += 1
        # Workers outlive requests; None clears the previous item's id
        set_correlation_id(item.correlation_id)
        try:
            await self._process(item.event_pk)
            self._processed += 1
        except Exception as e:
            # The processor records its own failures; this is a last resort
            self._errors += 1
            logger.error(
                "Unhandled error processing webhook event %s: %s", item.event_id, str(e),
                exc_info=True, extra={"event_id": item.event_id},
            )
        finally:
            self._in_flight -= 1

    async def _wait_until_idle(self) -> None:
        while not self._queue.empty() or self._in_flight:
            await asyncio.sleep(DRAIN_POLL_INTERVAL)
