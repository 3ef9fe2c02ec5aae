"""Order Builder, Status Machine and deletion.

Each command runs in one transaction on the session it is given and returns a
``CommandResult`` whose events must be dispatched only after it returns.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import crud
from .errors import NotFoundError, OrderError, StoreError, UnavailableError, ValidationError
from .events import ORDER_CREATED, ORDER_DELETED, ORDER_STATUS_CHANGED, CommandResult, OrderEvent
from .models import ALLOWED_TRANSITIONS, OrderStatus
from .schemas import OrderCreate, OrderRead

logger = logging.getLogger(__name__)


def _rollback(session: Session, action: str, exc: Exception) -> None:
    session.rollback()
    if isinstance(exc, OrderError) and not isinstance(exc, StoreError):
        logger.info("%s rejected: %s", action, exc.message)
    else:
        logger.error("%s failed, transaction rolled back: %s", action, exc)


class OrderBuilder:
    def create_order(self, session: Session, payload: OrderCreate) -> CommandResult[OrderRead]:
        try:
            order = self._write(session, payload)
            # Read back inside the transaction; nothing touches the store after commit.
            session.refresh(order)
            result = crud.order_to_read(order)
            session.commit()
        except OrderError as exc:
            _rollback(session, "Order creation", exc)
            raise
        except SQLAlchemyError as exc:
            _rollback(session, "Order creation", exc)
            raise StoreError("Error creating order", detail=str(exc)) from exc

        logger.info(
            "Order %s created for %s: %d item(s), total %s",
            result.order_number,
            result.customer_name,
            len(result.items),
            result.total_amount,
        )
        return CommandResult(result, [OrderEvent(ORDER_CREATED, result.id, result)])

    def _write(self, session: Session, payload: OrderCreate):
        if not payload.items:
            raise ValidationError("Order must contain at least one item")
        name = (payload.customer_name or "").strip()
        phone = (payload.customer_phone or "").strip()
        if not name or not phone:
            raise ValidationError("Customer name and phone are required")

        total = Decimal(0)
        for line in payload.items:
            if line.quantity < 1:
                raise ValidationError(f"Quantity for menu item {line.menu_item_id} must be at least 1")
            menu_item = self._orderable(session, line.menu_item_id)
            total += Decimal(menu_item.price) * line.quantity

        if not total.is_finite() or total < 0:
            raise ValidationError("Order total must be a non-negative amount")

        order = crud.add_order(
            session,
            {
                "customer_name": name,
                "customer_phone": phone,
                "table_number": payload.table_number,
                "notes": payload.notes,
                "total_amount": total,
            },
        )
        for line in payload.items:
            # Price is read again at insert time; the row lock from the check above still holds.
            menu_item = self._orderable(session, line.menu_item_id)
            crud.add_order_item(session, order, menu_item, line.quantity, line.notes)
        session.flush()
        return order

    @staticmethod
    def _orderable(session: Session, menu_item_id: int):
        menu_item = crud.get_menu_item(session, menu_item_id, for_update=True)
        if menu_item is None:
            raise NotFoundError(f"Menu item with ID {menu_item_id} not found")
        if not menu_item.is_available:
            raise UnavailableError(f'Menu item "{menu_item.name}" is not available')
        return menu_item


class StatusMachine:
    """Writes order status changes.

    By default any recognised status may follow any other. With
    ``enforce_transitions`` only the forward moves in ``ALLOWED_TRANSITIONS``
    are accepted; re-applying the current status is always allowed.
    """

    def __init__(self, enforce_transitions: bool = False):
        self.enforce_transitions = enforce_transitions

    def update_status(self, session: Session, order_id: int, status: str) -> CommandResult[OrderRead]:
        try:
            target = OrderStatus(status)
        except ValueError:
            raise ValidationError(
                "Invalid status. Must be one of: " + ", ".join(OrderStatus.values())
            ) from None

        try:
            order = crud.get_order(session, order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order not found")
            self._check_transition(order.status, target)
            previous = order.status
            crud.set_order_status(session, order, target.value)
            session.flush()
            result = crud.order_to_read(order)
            session.commit()
        except OrderError as exc:
            _rollback(session, "Status update", exc)
            raise
        except SQLAlchemyError as exc:
            _rollback(session, "Status update", exc)
            raise StoreError("Error updating order status", detail=str(exc)) from exc

        logger.info("Order %s status %s -> %s", result.order_number, previous, result.status)
        return CommandResult(result, [OrderEvent(ORDER_STATUS_CHANGED, result.id, result)])

    def _check_transition(self, current: str, target: OrderStatus) -> None:
        if not self.enforce_transitions or current == target.value:
            return
        try:
            allowed = ALLOWED_TRANSITIONS[OrderStatus(current)]
        except ValueError:
            allowed = set()
        if target not in allowed:
            choices = ", ".join(s.value for s in OrderStatus if s in allowed) or "none"
            raise ValidationError(
                f"Cannot change status from '{current}' to '{target.value}'. Allowed: {choices}"
            )


def delete_order(session: Session, order_id: int) -> CommandResult[OrderRead]:
    try:
        order = crud.get_order(session, order_id, for_update=True)
        if order is None:
            raise NotFoundError("Order not found")
        snapshot = crud.order_to_read(order)
        session.delete(order)
        session.commit()
    except OrderError as exc:
        _rollback(session, "Order deletion", exc)
        raise
    except SQLAlchemyError as exc:
        _rollback(session, "Order deletion", exc)
        raise StoreError("Error deleting order", detail=str(exc)) from exc

    logger.info("Order %s deleted", snapshot.order_number)
    return CommandResult(snapshot, [OrderEvent(ORDER_DELETED, snapshot.id, snapshot)])
