from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class OrderItemCreate(BaseModel):
    menu_item_id: int
    quantity: int = Field(default=1, ge=1)
    notes: Optional[str] = None


class OrderCreate(BaseModel):
    customer_name: str
    customer_phone: str
    table_number: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItemCreate] = Field(default_factory=list)

    @field_validator("customer_name", "customer_phone")
    @classmethod
    def require_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("table_number", "notes", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class StatusUpdate(BaseModel):
    # Plain string so unknown values reach the status machine and get its error message.
    status: str


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: int
    menu_item_name: Optional[str] = None
    quantity: int
    price: float
    notes: str = ""


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    customer_name: str
    customer_phone: str
    table_number: Optional[str] = None
    notes: Optional[str] = None
    total_amount: float
    status: str
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemRead] = Field(default_factory=list)


class MenuItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    price: float
    category: Optional[str] = None
    preparation_time: int
    is_available: bool
    description: Optional[str] = None


class PopularItem(BaseModel):
    id: int
    name: str
    order_count: int
    total_quantity: int
    total_revenue: float


class StatusCount(BaseModel):
    status: str
    count: int


class DashboardSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_orders: int = 0
    today_orders: int = 0
    total_revenue: float = 0
    today_revenue: float = 0
    completed_revenue: float = 0
    avg_order_value: float = 0
    active_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    completion_rate: float = 0
    popular_items: List[PopularItem] = Field(default_factory=list)
    orders_by_status: List[StatusCount] = Field(default_factory=list)


class DashboardEvent(BaseModel):
    type: str = "dashboard_update"
    data: DashboardSnapshot
    timestamp: datetime


class Envelope(BaseModel):
    success: bool = True
    message: str


class OrderResponse(Envelope):
    data: OrderRead


class OrderListResponse(Envelope):
    data: List[OrderRead]
    count: int


class MenuListResponse(Envelope):
    data: List[MenuItemRead]
    count: int


class DashboardResponse(Envelope):
    data: DashboardSnapshot


class ErrorResponse(Envelope):
    success: bool = False
    error: Optional[str] = None
