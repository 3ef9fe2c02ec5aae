"""
Shared fixtures: an in-memory SQLite store and a small catalog.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SEED_DEFAULT_MENU"] = "false"
os.environ["TIMEZONE"] = "UTC"
os.environ.pop("LINE_CHANNEL_ACCESS_TOKEN", None)

import json
from decimal import Decimal

import pytest
from sqlalchemy import func
from sqlmodel import Session, SQLModel, select

from restaurant_orders.database import engine as store_engine
from restaurant_orders.models import MenuItem, Order, OrderItem
from restaurant_orders.schemas import OrderCreate


@pytest.fixture
def engine():
    SQLModel.metadata.drop_all(store_engine)
    SQLModel.metadata.create_all(store_engine)
    yield store_engine
    SQLModel.metadata.drop_all(store_engine)


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture
def menu(session_factory):
    """Catalog ids by name: Latte 25000, Croissant 15000, Muffin 18000 (sold out)."""
    with session_factory() as session:
        items = [
            MenuItem(name="Latte", price=Decimal("25000"), category="Coffee"),
            MenuItem(name="Croissant", price=Decimal("15000"), category="Pastry"),
            MenuItem(name="Muffin", price=Decimal("18000"), category="Pastry", is_available=False),
        ]
        session.add_all(items)
        session.commit()
        return {item.name: item.id for item in items}


def make_cart(menu, *lines, name="Budi", phone="08123", **extra):
    """Build an OrderCreate from ``(item name, quantity)`` pairs."""
    return OrderCreate(
        customer_name=name,
        customer_phone=phone,
        items=[{"menu_item_id": menu.get(item, item), "quantity": quantity} for item, quantity in lines],
        **extra,
    )


def count_rows(session_factory):
    with session_factory() as session:
        orders = session.exec(select(func.count(Order.id))).one()
        items = session.exec(select(func.count(OrderItem.id))).one()
    return orders, items


def decode_frame(frame):
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])
