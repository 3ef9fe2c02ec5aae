from __future__ import annotations

import logging

from fastapi import BackgroundTasks, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from . import crud, schemas
from .config import get_settings
from .database import engine, get_session, init_db, session_scope
from .errors import NotFoundError, OrderError, ValidationError, store_errors
from .events import EventDispatcher
from .logging_config import setup_logging
from .models import OrderStatus, utcnow
from .notifier import build_notification_sink
from .orders import OrderBuilder, StatusMachine, delete_order as delete_order_command
from .realtime import ChangeNotifier, EventStreamResponse, SubscriptionRegistry, event_stream

logger = logging.getLogger(__name__)

app = FastAPI(title="Restaurant Orders", version="0.1.0")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    setup_logging(settings)
    init_db()
    if settings.seed_default_menu:
        with Session(engine) as session:
            crud.ensure_default_menu_items(session)

    registry = SubscriptionRegistry(queue_size=settings.subscriber_queue_size)
    change_notifier = ChangeNotifier(registry, session_scope, settings.timezone)
    app.state.registry = registry
    app.state.change_notifier = change_notifier
    app.state.dispatcher = EventDispatcher(change_notifier, build_notification_sink(settings))
    app.state.order_builder = OrderBuilder()
    app.state.status_machine = StatusMachine(enforce_transitions=settings.enforce_status_transitions)
    logger.info("Restaurant order service started")


@app.on_event("shutdown")
def on_shutdown() -> None:
    app.state.registry.close()
    logger.info("Restaurant order service stopped")


# -------------------------
# Dependencies
# -------------------------

def get_registry(request: Request) -> SubscriptionRegistry:
    return request.app.state.registry


def get_change_notifier(request: Request) -> ChangeNotifier:
    return request.app.state.change_notifier


def get_dispatcher(request: Request) -> EventDispatcher:
    return request.app.state.dispatcher


def get_order_builder(request: Request) -> OrderBuilder:
    return request.app.state.order_builder


def get_status_machine(request: Request) -> StatusMachine:
    return request.app.state.status_machine


# -------------------------
# Error handling
# -------------------------

def _error_response(status_code: int, message: str, error: str | None = None) -> JSONResponse:
    body = schemas.ErrorResponse(message=message, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    return _error_response(exc.status_code, exc.message, exc.detail or exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in exc.errors()
    )
    return _error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", details)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", str(exc))


# -------------------------
# Routes
# -------------------------

@app.get("/api/health")
def health_check() -> dict:
    return {
        "status": "OK",
        "message": "Restaurant API is running!",
        "timestamp": utcnow().isoformat(),
    }


@app.get("/api/menu", response_model=schemas.MenuListResponse)
def list_menu_items(
    available_only: bool = False,
    session: Session = Depends(get_session),
):
    with store_errors("Error fetching menu items"):
        menu_items = crud.list_menu_items(session, available_only=available_only)
    items = [schemas.MenuItemRead.model_validate(item) for item in menu_items]
    return schemas.MenuListResponse(message="Menu items retrieved successfully", data=items, count=len(items))


@app.post("/api/orders", response_model=schemas.OrderResponse, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: schemas.OrderCreate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    builder: OrderBuilder = Depends(get_order_builder),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = builder.create_order(session, payload)
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return schemas.OrderResponse(message="Order created successfully", data=result.value)


@app.get("/api/orders", response_model=schemas.OrderListResponse)
def list_orders(session: Session = Depends(get_session)):
    with store_errors("Error fetching orders"):
        orders = [crud.order_to_read(order) for order in crud.list_orders(session)]
    return schemas.OrderListResponse(message="Orders retrieved successfully", data=orders, count=len(orders))


@app.get("/api/orders/stream")
async def stream_orders(
    registry: SubscriptionRegistry = Depends(get_registry),
    change_notifier: ChangeNotifier = Depends(get_change_notifier),
):
    return EventStreamResponse(event_stream(registry, change_notifier, settings.sse_keepalive_seconds))


@app.get("/api/orders/status/{order_status}", response_model=schemas.OrderListResponse)
def list_orders_by_status(order_status: str, session: Session = Depends(get_session)):
    if order_status not in OrderStatus.values():
        raise ValidationError("Invalid status. Must be one of: " + ", ".join(OrderStatus.values()))
    with store_errors("Error fetching orders by status"):
        orders = [crud.order_to_read(order) for order in crud.list_orders(session, order_status)]
    return schemas.OrderListResponse(
        message=f"Orders with status '{order_status}' retrieved successfully",
        data=orders,
        count=len(orders),
    )


@app.get("/api/orders/{order_id}", response_model=schemas.OrderResponse)
def get_order(order_id: int, session: Session = Depends(get_session)):
    with store_errors("Error fetching order"):
        order = crud.get_order(session, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        data = crud.order_to_read(order)
    return schemas.OrderResponse(message="Order retrieved successfully", data=data)


@app.put("/api/orders/{order_id}/status", response_model=schemas.OrderResponse)
def update_order_status(
    order_id: int,
    payload: schemas.StatusUpdate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    status_machine: StatusMachine = Depends(get_status_machine),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = status_machine.update_status(session, order_id, payload.status)
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return schemas.OrderResponse(message="Order status updated successfully", data=result.value)


@app.delete("/api/orders/{order_id}", response_model=schemas.OrderResponse)
def delete_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    result = delete_order_command(session, order_id)
    background_tasks.add_task(dispatcher.dispatch, result.events)
    return schemas.OrderResponse(message="Order deleted successfully", data=result.value)


@app.get("/api/dashboard/stats", response_model=schemas.DashboardResponse)
def dashboard_stats(session: Session = Depends(get_session)):
    with store_errors("Failed to load dashboard stats"):
        snapshot = crud.compute_dashboard_snapshot(session, settings.timezone)
    return schemas.DashboardResponse(message="Dashboard stats loaded successfully", data=snapshot)
