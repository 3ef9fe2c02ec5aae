import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Iterable, List

import httpx

from .config import Settings
from .schemas import OrderRead

logger = logging.getLogger(__name__)

LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"
LINE_BROADCAST_URL = "https://api.line.me/v2/bot/message/broadcast"


def _money(amount: float) -> str:
    return f"Rp {Decimal(str(amount)):,.0f}"


def _format_items(order: OrderRead) -> List[str]:
    lines = []
    for index, item in enumerate(order.items, start=1):
        if not item.menu_item_name:
            continue
        lines.append(
            f"{index}. {item.menu_item_name} x{item.quantity} - {_money(item.price * item.quantity)}"
        )
    return lines


def format_order_message(order: OrderRead) -> str:
    text = (
        "🆕 NEW ORDER RECEIVED 🆕\n"
        f"📋 Order #: {order.order_number}\n"
        f"👤 Customer: {order.customer_name}\n"
        f"📞 Phone: {order.customer_phone or 'N/A'}\n"
        f"🪑 Table: {order.table_number or 'Takeaway'}\n"
        f"💰 Total: {_money(order.total_amount)}\n"
        f"📝 Notes: {order.notes or 'No notes'}\n"
        "\n📦 Order Items:\n"
    )
    return text + "\n".join(_format_items(order))


class NotificationSink(ABC):
    """Destination for best-effort staff alerts. Failures must stay inside the sink."""

    @abstractmethod
    def order_received(self, order: OrderRead) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    def order_received(self, order: OrderRead) -> None:
        logger.info("Order alert:\n%s", format_order_message(order))


class LineNotificationSink(NotificationSink):
    """Pushes the alert to LINE targets, or broadcasts to all followers when none are configured."""

    def __init__(self, token: str, targets: Iterable[str] = (), timeout: float = 5):
        self.token = token
        self.targets = list(targets)
        self.timeout = timeout

    def order_received(self, order: OrderRead) -> None:
        text = format_order_message(order)
        if self.targets:
            for recipient in self.targets:
                self._push(recipient, text)
        else:
            self._broadcast(text)

    def _post_line(self, url: str, payload: dict) -> None:
        try:
            response = httpx.post(
                url,
                headers={"Authorization": f"Bearer {self.token}"},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to send LINE message: %s", exc)

    def _push(self, recipient: str, text: str) -> None:
        payload = {
            "to": recipient,
            "messages": [{"type": "text", "text": text}],
        }
        self._post_line(LINE_PUSH_URL, payload)

    def _broadcast(self, text: str) -> None:
        payload = {
            "messages": [{"type": "text", "text": text}],
        }
        self._post_line(LINE_BROADCAST_URL, payload)


def build_notification_sink(settings: Settings) -> NotificationSink:
    if settings.line_channel_access_token:
        return LineNotificationSink(settings.line_channel_access_token, settings.line_target_ids)
    return LoggingNotificationSink()
