"""
HTTP surface: envelopes, status codes and the post-commit broadcast.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import count_rows, decode_frame, make_cart
from restaurant_orders.main import app, stream_orders
from restaurant_orders.orders import OrderBuilder
from restaurant_orders.realtime import ChangeNotifier, SubscriptionRegistry


@pytest.fixture
def client(engine):
    with TestClient(app) as client:
        yield client


def _cart(menu, *lines, **extra):
    body = {
        "customer_name": "Budi",
        "customer_phone": "08123",
        "items": [{"menu_item_id": menu[name], "quantity": qty} for name, qty in lines],
    }
    body.update(extra)
    return body


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "OK"


def test_menu_listing(client, menu):
    body = client.get("/api/menu").json()
    assert body["count"] == 3

    available = client.get("/api/menu", params={"available_only": True}).json()
    assert [item["name"] for item in available["data"]] == ["Latte", "Croissant"]


def test_create_order(client, menu):
    response = client.post("/api/orders", json=_cart(menu, ("Latte", 2), ("Croissant", 1), table_number="4"))

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Order created successfully"
    order = body["data"]
    assert order["total_amount"] == 65000
    assert order["status"] == "pending"
    assert order["table_number"] == "4"
    assert order["order_number"].startswith("ORD-")
    assert datetime.fromisoformat(order["created_at"].replace("Z", "+00:00")).utcoffset() == timedelta(0)
    assert [(i["menu_item_name"], i["quantity"], i["price"], i["notes"]) for i in order["items"]] == [
        ("Latte", 2, 25000, ""),
        ("Croissant", 1, 15000, ""),
    ]


def test_create_order_with_unavailable_item(client, menu, session_factory):
    response = client.post("/api/orders", json=_cart(menu, ("Latte", 2), ("Muffin", 1)))

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["message"] == 'Menu item "Muffin" is not available'
    assert count_rows(session_factory) == (0, 0)


def test_create_order_with_unknown_item(client, menu, session_factory):
    body = _cart(menu, ("Latte", 1))
    body["items"].append({"menu_item_id": 999, "quantity": 1})

    response = client.post("/api/orders", json=body)

    assert response.status_code == 404
    assert response.json()["message"] == "Menu item with ID 999 not found"
    assert count_rows(session_factory) == (0, 0)


def test_create_order_with_empty_cart(client, menu):
    response = client.post("/api/orders", json=_cart(menu))

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Order must contain at least one item",
        "error": "Order must contain at least one item",
    }


@pytest.mark.parametrize(
    "override",
    [
        {"customer_name": "   "},
        {"customer_phone": ""},
        {"items": [{"menu_item_id": 1, "quantity": 0}]},
    ],
)
def test_malformed_order_is_a_bad_request(client, menu, override):
    body = _cart(menu, ("Latte", 1))
    body.update(override)

    response = client.post("/api/orders", json=body)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["message"] == "Invalid request"


def test_list_and_get_orders(client, menu):
    first = client.post("/api/orders", json=_cart(menu, ("Latte", 1))).json()["data"]
    second = client.post("/api/orders", json=_cart(menu, ("Croissant", 2))).json()["data"]

    listing = client.get("/api/orders").json()
    assert listing["count"] == 2
    assert {order["id"] for order in listing["data"]} == {first["id"], second["id"]}

    fetched = client.get(f"/api/orders/{first['id']}").json()
    assert fetched["data"]["items"][0]["menu_item_name"] == "Latte"

    missing = client.get("/api/orders/9999")
    assert missing.status_code == 404
    assert missing.json()["message"] == "Order not found"


def test_update_status(client, menu):
    order = client.post("/api/orders", json=_cart(menu, ("Latte", 1))).json()["data"]

    response = client.put(f"/api/orders/{order['id']}/status", json={"status": "ready"})

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ready"
    by_status = client.get("/api/orders/status/ready").json()
    assert by_status["count"] == 1
    assert by_status["message"] == "Orders with status 'ready' retrieved successfully"


def test_update_status_rejects_unknown_value(client, menu):
    order = client.post("/api/orders", json=_cart(menu, ("Latte", 1))).json()["data"]

    response = client.put(f"/api/orders/{order['id']}/status", json={"status": "bogus"})

    assert response.status_code == 400
    assert response.json()["message"].startswith("Invalid status. Must be one of: pending")
    assert client.get(f"/api/orders/{order['id']}").json()["data"]["status"] == "pending"


def test_update_status_of_missing_order(client, menu):
    response = client.put("/api/orders/9999/status", json={"status": "confirmed"})

    assert response.status_code == 404


def test_orders_by_unknown_status(client):
    response = client.get("/api/orders/status/lost")

    assert response.status_code == 400


def test_delete_order(client, menu, session_factory):
    order = client.post("/api/orders", json=_cart(menu, ("Latte", 2), ("Croissant", 1))).json()["data"]

    response = client.delete(f"/api/orders/{order['id']}")

    assert response.status_code == 200
    assert response.json()["data"]["order_number"] == order["order_number"]
    assert count_rows(session_factory) == (0, 0)
    assert client.delete(f"/api/orders/{order['id']}").status_code == 404


def test_dashboard_stats(client, menu):
    order = client.post("/api/orders", json=_cart(menu, ("Latte", 2), ("Croissant", 1))).json()["data"]
    client.post("/api/orders", json=_cart(menu, ("Croissant", 1)))
    client.put(f"/api/orders/{order['id']}/status", json={"status": "cancelled"})

    data = client.get("/api/dashboard/stats").json()["data"]

    assert data["totalOrders"] == 1
    assert data["totalRevenue"] == 15000
    assert data["cancelledOrders"] == 1
    assert {"status": "cancelled", "count": 1} in data["ordersByStatus"]


def test_writes_push_updates_to_live_subscribers(client, menu):
    registry = app.state.registry
    subscription = registry.subscribe()
    try:
        order = client.post("/api/orders", json=_cart(menu, ("Latte", 2), ("Croissant", 1))).json()["data"]
        client.put(f"/api/orders/{order['id']}/status", json={"status": "confirmed"})
        client.delete(f"/api/orders/{order['id']}")
        client.post("/api/orders", json=_cart(menu, ("Muffin", 1)))

        events = [decode_frame(subscription.queue.get_nowait()) for _ in range(subscription.queue.qsize())]
    finally:
        registry.unsubscribe(subscription)

    assert [event["type"] for event in events] == ["dashboard_update"] * 3
    assert [event["data"]["totalOrders"] for event in events] == [1, 1, 0]
    assert events[1]["data"]["ordersByStatus"] == [{"status": "confirmed", "count": 1}]


# ============================================================================
# Live stream endpoint
# ============================================================================


@pytest.fixture
def live(session_factory):
    registry = SubscriptionRegistry(queue_size=10)
    return registry, ChangeNotifier(registry, session_factory, "UTC")


def _stream_scope():
    return {"type": "http", "method": "GET", "path": "/api/orders/stream", "headers": []}


async def _client_stays_connected():
    await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_stream_opens_with_one_snapshot_and_unregisters_on_close(live, menu, session_factory):
    registry, change_notifier = live
    with session_factory() as session:
        OrderBuilder().create_order(session, make_cart(menu, ("Latte", 2), ("Croissant", 1)))

    response = await stream_orders(registry=registry, change_notifier=change_notifier)

    assert response.media_type == "text/event-stream"
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert len(registry) == 0

    event = decode_frame(await response.body_iterator.__anext__())
    assert event["type"] == "dashboard_update"
    assert event["data"]["totalOrders"] == 1
    assert event["data"]["totalRevenue"] == 65000
    assert len(registry) == 1

    await response.body_iterator.aclose()
    assert len(registry) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("failing_message", ["http.response.start", "http.response.body"])
async def test_stream_client_gone_leaves_no_subscription(live, menu, failing_message):
    registry, change_notifier = live
    response = await stream_orders(registry=registry, change_notifier=change_notifier)

    async def send(message):
        if message["type"] == failing_message:
            raise OSError("client went away")

    with pytest.raises(Exception):
        await response(_stream_scope(), _client_stays_connected, send)

    assert len(registry) == 0
