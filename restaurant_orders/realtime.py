"""Live dashboard updates over server-sent events.

Each connected client owns a ``Subscription``: a bounded outbound queue drained
by the client's own streaming response. Broadcasting only enqueues, so a slow
client never holds up the others. When a queue is full the oldest pending
message is dropped; every message is a full snapshot, so the newest one
supersedes whatever was lost.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import AsyncIterator, Callable, ContextManager, Optional

from sqlmodel import Session
from starlette.concurrency import run_in_threadpool
from starlette.responses import StreamingResponse

from . import crud
from .models import utcnow
from .schemas import DashboardEvent, DashboardSnapshot

logger = logging.getLogger(__name__)

DASHBOARD_UPDATE = "dashboard_update"
KEEPALIVE_FRAME = ": keep-alive\n\n"
_CLOSE = object()


def format_sse(event: DashboardEvent) -> str:
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"


class Subscription:
    def __init__(self, queue_size: int):
        self.id = uuid.uuid4().hex[:12]
        self.connected_at: datetime = utcnow()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self.closed = False

    def offer(self, frame) -> None:
        """Enqueue without waiting, evicting the oldest frame when full."""
        while True:
            try:
                self.queue.put_nowait(frame)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()
                self.dropped += 1
                logger.warning("Subscriber %s is falling behind, dropped oldest update", self.id)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.offer(_CLOSE)

    async def frames(self, keepalive_seconds: float) -> AsyncIterator[str]:
        while True:
            try:
                frame = await asyncio.wait_for(self.queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            if frame is _CLOSE:
                return
            yield frame


class SubscriptionRegistry:
    """Live push channels of this process. Only touched from the event loop."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: set[Subscription] = set()
        self._closed = False

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription: Subscription) -> bool:
        return subscription in self._subscriptions

    def subscribe(self) -> Subscription:
        if self._closed:
            raise RuntimeError("Subscription registry is shut down")
        subscription = Subscription(self.queue_size)
        self._subscriptions.add(subscription)
        logger.info("New SSE client connected: %s (%d live)", subscription.id, len(self._subscriptions))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription not in self._subscriptions:
            return
        self._subscriptions.discard(subscription)
        subscription.close()
        logger.info(
            "SSE client disconnected: %s (%d live, %d dropped)",
            subscription.id,
            len(self._subscriptions),
            subscription.dropped,
        )

    def broadcast(self, frame: str) -> int:
        delivered = 0
        for subscription in list(self._subscriptions):
            try:
                subscription.offer(frame)
                delivered += 1
            except Exception:  # noqa: BLE001
                logger.exception("Could not queue update for subscriber %s", subscription.id)
        return delivered

    def close(self) -> None:
        self._closed = True
        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)


class ChangeNotifier:
    """Computes dashboard snapshots and pushes them to subscribers.

    All aggregates of one snapshot are read in a single session. On
    PostgreSQL's default READ COMMITTED isolation this is best effort: a commit
    landing between two aggregate queries can show up in only some figures.
    The next update corrects it.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        session_factory: Callable[[], ContextManager[Session]],
        tz_name: str,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.tz_name = tz_name
        # One snapshot-and-send at a time keeps every channel in trigger order.
        self._lock = asyncio.Lock()

    def compute_snapshot(self) -> DashboardSnapshot:
        with self.session_factory() as session:
            return crud.compute_dashboard_snapshot(session, self.tz_name)

    async def _build_frame(self, trigger: str) -> Optional[str]:
        try:
            snapshot = await run_in_threadpool(self.compute_snapshot)
        except Exception:  # noqa: BLE001
            logger.exception("Could not compute dashboard snapshot for %s, update skipped", trigger)
            return None
        event = DashboardEvent(type=DASHBOARD_UPDATE, data=snapshot, timestamp=utcnow())
        return format_sse(event)

    async def publish(self, trigger: str) -> None:
        async with self._lock:
            frame = await self._build_frame(trigger)
            if frame is None:
                return
            delivered = self.registry.broadcast(frame)
        logger.info("Sent real-time update after %s to %d client(s)", trigger, delivered)

    async def send_snapshot(self, subscription: Subscription) -> None:
        async with self._lock:
            frame = await self._build_frame("subscribe")
            if frame is not None:
                subscription.offer(frame)


async def event_stream(
    registry: SubscriptionRegistry,
    change_notifier: ChangeNotifier,
    keepalive_seconds: float,
) -> AsyncIterator[str]:
    """Body of one SSE response.

    The channel is registered when the body starts streaming and unregistered
    however it ends, so a client that goes away before the first frame never
    leaves a subscription behind.
    """
    subscription = registry.subscribe()
    try:
        await change_notifier.send_snapshot(subscription)
        async for frame in subscription.frames(keepalive_seconds):
            yield frame
    finally:
        registry.unsubscribe(subscription)


class EventStreamResponse(StreamingResponse):
    """``text/event-stream`` response that always closes its body generator."""

    media_type = "text/event-stream"

    def __init__(self, content, **kwargs):
        headers = {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
        headers.update(kwargs.pop("headers", None) or {})
        super().__init__(content, headers=headers, **kwargs)

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()
