"""Generation lifecycle events.

The controller publishes one GenerationEvent when a generation starts and
one when it ends (completed, cancelled or failed).  Audit and persistence
collaborators subscribe here; the controller never waits on them.
Publishing is synchronous and lossy under pressure, delivery happens on a
background task, and a failing subscriber is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

GENERATION_STARTED = "generation_started"
GENERATION_COMPLETED = "generation_completed"
GENERATION_CANCELLED = "generation_cancelled"
GENERATION_FAILED = "generation_failed"

LIFECYCLE_EVENTS = (
    GENERATION_STARTED,
    GENERATION_COMPLETED,
    GENERATION_CANCELLED,
    GENERATION_FAILED,
)

Subscriber = Callable[["GenerationEvent"], Awaitable[None]]


@dataclass
class GenerationEvent:
    """Something that happened to one session's generation."""

    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Queue of GenerationEvents fanned out to async subscribers."""

    def __init__(self, max_queue: int = 1000):
        self._subscribers: defaultdict[str, list[Subscriber]] = defaultdict(list)
        self._queue: asyncio.Queue[GenerationEvent] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None

    def on(self, event_type: str, subscriber: Subscriber) -> None:
        self._subscribers[event_type].append(subscriber)
        logger.debug("%s subscribed to %s", subscriber.__qualname__, event_type)

    def on_all(self, subscriber: Subscriber) -> None:
        """Subscribe to every lifecycle event type."""
        for event_type in LIFECYCLE_EVENTS:
            self.on(event_type, subscriber)

    def emit(self, event: GenerationEvent) -> None:
        """Enqueue without waiting.  Drops (with a warning) when full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Lifecycle queue full, dropping %s for session %s", event.type, event.session_id
            )

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._deliver_forever(), name="lifecycle-events")
        logger.info("Lifecycle event delivery started")

    async def stop(self) -> None:
        """Stop the worker, then deliver whatever is still queued."""
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        drained = 0
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())
            drained += 1
        logger.info("Lifecycle event delivery stopped (%d drained)", drained)

    async def _deliver_forever(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Delivering %s failed", event.type)

    async def _deliver(self, event: GenerationEvent) -> None:
        subscribers = self._subscribers.get(event.type)
        if subscribers:
            await asyncio.gather(*(self._notify(s, event) for s in subscribers))

    async def _notify(self, subscriber: Subscriber, event: GenerationEvent) -> None:
        try:
            await subscriber(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Subscriber %s failed on %s (session %s)",
                subscriber.__qualname__,
                event.type,
                event.session_id,
            )


async def log_generation_event(event: GenerationEvent) -> None:
    """Audit subscriber: one log line per lifecycle event, never message text."""
    data = event.data
    if event.type == GENERATION_FAILED:
        logger.warning(
            "audit %s session=%s kind=%s", event.type, event.session_id, data.get("kind")
        )
        return
    logger.info(
        "audit %s session=%s model=%s tokens=%s eval_count=%s",
        event.type,
        event.session_id,
        data.get("model"),
        data.get("token_count"),
        data.get("eval_count"),
    )
