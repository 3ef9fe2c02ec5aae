"""Domain events produced by order commands and their post-commit delivery.

Commands never notify anyone themselves. They return a ``CommandResult``
holding the committed value plus the events it produced; the API layer hands
those events to ``EventDispatcher.dispatch`` once the transaction is done.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Iterable, List, Optional, TypeVar

from starlette.concurrency import run_in_threadpool

from .models import utcnow
from .schemas import OrderRead

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
ORDER_STATUS_CHANGED = "order_status_changed"
ORDER_DELETED = "order_deleted"

T = TypeVar("T")


@dataclass(frozen=True)
class OrderEvent:
    kind: str
    order_id: int
    order: Optional[OrderRead] = None
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class CommandResult(Generic[T]):
    value: T
    events: List[OrderEvent] = field(default_factory=list)


class EventDispatcher:
    """Delivers committed order events to the change notifier and the alert sink."""

    def __init__(self, change_notifier, sink):
        self.change_notifier = change_notifier
        self.sink = sink

    async def dispatch(self, events: Iterable[OrderEvent]) -> None:
        for event in events:
            if event.kind == ORDER_CREATED and event.order is not None:
                await self._alert(event.order)
            await self.change_notifier.publish(event.kind)

    async def _alert(self, order: OrderRead) -> None:
        try:
            await run_in_threadpool(self.sink.order_received, order)
        except Exception:  # noqa: BLE001
            logger.exception("Order-received alert failed for %s", order.order_number)
