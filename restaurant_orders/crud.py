from __future__ import annotations

import secrets
from datetime import datetime, time, timedelta, timezone
from typing import List
from zoneinfo import ZoneInfo

from sqlalchemy import case, func
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from .errors import StoreError
from .menu_data import DEFAULT_MENU_ITEMS
from .models import ACTIVE_STATUSES, MenuItem, Order, OrderItem, OrderStatus, utcnow
from .schemas import DashboardSnapshot, OrderItemRead, OrderRead, PopularItem, StatusCount

ORDER_NUMBER_MAX_RETRIES = 5
POPULAR_ITEMS_LIMIT = 5


# -------------------------
# Order operations
# -------------------------

def list_orders(session: Session, status: str | None = None) -> List[Order]:
    statement = select(Order).options(
        selectinload(Order.items).selectinload(OrderItem.menu_item)
    )
    if status is not None:
        statement = statement.where(Order.status == status)
    statement = statement.order_by(Order.created_at.desc(), Order.id.desc())
    return list(session.exec(statement))


def get_order(session: Session, order_id: int, *, for_update: bool = False) -> Order | None:
    statement = select(Order).where(Order.id == order_id)
    if for_update:
        statement = statement.with_for_update()
    return session.exec(statement).first()


def generate_order_number(session: Session, now: datetime | None = None) -> str:
    now = now or utcnow()
    for _ in range(ORDER_NUMBER_MAX_RETRIES):
        candidate = f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"
        taken = session.exec(select(Order.id).where(Order.order_number == candidate)).first()
        if taken is None:
            return candidate
    raise StoreError("Could not allocate a unique order number")


def add_order(session: Session, data: dict) -> Order:
    """Stage an order row and flush it so its id is available for line items. Does not commit."""
    now = utcnow()
    order = Order(order_number=generate_order_number(session, now), **data)
    order.status = OrderStatus.PENDING.value
    order.created_at = now
    order.updated_at = now
    session.add(order)
    session.flush()
    return order


def add_order_item(session: Session, order: Order, menu_item: MenuItem, quantity: int, notes: str | None) -> OrderItem:
    item = OrderItem(
        order_id=order.id,
        menu_item_id=menu_item.id,
        quantity=quantity,
        price=menu_item.price,
        notes=notes or "",
    )
    session.add(item)
    return item


def set_order_status(session: Session, order: Order, status: str) -> Order:
    order.status = status
    order.updated_at = utcnow()
    session.add(order)
    return order


def order_to_read(order: Order) -> OrderRead:
    return OrderRead(
        id=order.id,
        order_number=order.order_number,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        table_number=order.table_number,
        notes=order.notes,
        total_amount=order.total_amount,
        status=order.status,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[
            OrderItemRead(
                id=item.id,
                menu_item_id=item.menu_item_id,
                menu_item_name=item.menu_item.name if item.menu_item else None,
                quantity=item.quantity,
                price=item.price,
                notes=item.notes or "",
            )
            for item in order.items
        ],
    )


# -------------------------
# Dashboard aggregation
# -------------------------

def today_bounds(tz_name: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    """UTC bounds of the current calendar day in ``tz_name``."""
    tz = ZoneInfo(tz_name)
    local_now = (now or utcnow()).astimezone(tz)
    start = datetime.combine(local_now.date(), time.min, tzinfo=tz)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def compute_dashboard_snapshot(session: Session, tz_name: str, now: datetime | None = None) -> DashboardSnapshot:
    not_cancelled = Order.status != OrderStatus.CANCELLED.value
    start, end = today_bounds(tz_name, now)
    is_today = (Order.created_at >= start) & (Order.created_at < end)

    totals = session.exec(
        select(
            func.count(Order.id),
            func.coalesce(func.sum(Order.total_amount), 0),
            func.coalesce(func.avg(Order.total_amount), 0),
            func.coalesce(func.sum(case((is_today, 1), else_=0)), 0),
            func.coalesce(func.sum(case((is_today, Order.total_amount), else_=0)), 0),
        ).where(not_cancelled)
    ).one()
    total_orders, total_revenue, avg_order_value, today_orders, today_revenue = totals

    completed_revenue = session.exec(
        select(func.coalesce(func.sum(Order.total_amount), 0)).where(
            Order.status == OrderStatus.COMPLETED.value
        )
    ).one()

    status_rows = session.exec(
        select(Order.status, func.count(Order.id)).group_by(Order.status)
    ).all()
    counts = {status: int(count or 0) for status, count in status_rows}
    rank = {value: index for index, value in enumerate(OrderStatus.values())}
    orders_by_status = [
        StatusCount(status=status, count=count)
        for status, count in sorted(counts.items(), key=lambda row: rank.get(row[0], len(rank)))
    ]

    total_quantity = func.sum(OrderItem.quantity)
    popular_stmt = (
        select(
            MenuItem.id,
            MenuItem.name,
            func.count(OrderItem.id),
            total_quantity,
            func.sum(OrderItem.quantity * OrderItem.price),
        )
        .select_from(OrderItem)
        .join(MenuItem, OrderItem.menu_item_id == MenuItem.id)
        .join(Order, OrderItem.order_id == Order.id)
        .where(not_cancelled)
        .group_by(MenuItem.id, MenuItem.name)
        .order_by(total_quantity.desc(), MenuItem.id.asc())
        .limit(POPULAR_ITEMS_LIMIT)
    )
    popular_items = [
        PopularItem(
            id=row[0],
            name=row[1],
            order_count=int(row[2] or 0),
            total_quantity=int(row[3] or 0),
            total_revenue=float(row[4] or 0),
        )
        for row in session.exec(popular_stmt).all()
    ]

    total_orders = int(total_orders or 0)
    completed_orders = counts.get(OrderStatus.COMPLETED.value, 0)
    completion_rate = round(completed_orders / total_orders * 100, 1) if total_orders else 0.0

    return DashboardSnapshot(
        total_orders=total_orders,
        today_orders=int(today_orders or 0),
        total_revenue=float(total_revenue or 0),
        today_revenue=float(today_revenue or 0),
        completed_revenue=float(completed_revenue or 0),
        avg_order_value=float(avg_order_value or 0),
        active_orders=sum(counts.get(status.value, 0) for status in ACTIVE_STATUSES),
        completed_orders=completed_orders,
        cancelled_orders=counts.get(OrderStatus.CANCELLED.value, 0),
        completion_rate=completion_rate,
        popular_items=popular_items,
        orders_by_status=orders_by_status,
    )


# -------------------------
# Menu operations
# -------------------------

def list_menu_items(session: Session, *, available_only: bool = False) -> List[MenuItem]:
    statement = select(MenuItem)
    if available_only:
        statement = statement.where(MenuItem.is_available.is_(True))
    statement = statement.order_by(MenuItem.id.asc())
    return list(session.exec(statement))


def get_menu_item(session: Session, menu_item_id: int, *, for_update: bool = False) -> MenuItem | None:
    statement = select(MenuItem).where(MenuItem.id == menu_item_id)
    if for_update:
        statement = statement.with_for_update().execution_options(populate_existing=True)
    return session.exec(statement).first()


def ensure_default_menu_items(session: Session) -> None:
    existing_count = session.exec(select(func.count(MenuItem.id))).one()
    if existing_count:
        return
    now = utcnow()
    for item in DEFAULT_MENU_ITEMS:
        session.add(
            MenuItem(
                name=item["name"],
                price=item["price"],
                category=item.get("category"),
                preparation_time=item.get("preparation_time", 10),
                is_available=True,
                created_at=now,
                updated_at=now,
            )
        )
    session.commit()
