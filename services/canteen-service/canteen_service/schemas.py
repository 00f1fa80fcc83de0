from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import Canteen, MAX_NOTES_LENGTH, Order
from .statuses import (
    ORDER_STATUS_LABELS,
    PAYMENT_STATUS_LABELS,
    OrderStatus,
    PaymentStatus,
)


class HealthResponse(BaseModel):
    status: Literal["ok"]


class MenuItem(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: float
    canteen: Optional[Canteen] = None
    available: bool


class CreateMenuItemRequest(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    canteen: Canteen
    description: Optional[str] = None
    available: bool = True


class UpdateMenuItemRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    price: Optional[float] = Field(default=None, gt=0)
    canteen: Optional[Canteen] = None
    description: Optional[str] = None
    available: Optional[bool] = None


class Requester(BaseModel):
    id: str
    name: str
    email: Optional[str] = None


class CreateOrderRequest(BaseModel):
    user: Requester
    food_id: str
    quantity: Union[int, str] = Field(..., description="Positive Ganzzahl")
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)


class OrderLineItem(BaseModel):
    id: str
    name: str
    price: float
    quantity: int


class OrderSummary(BaseModel):
    id: Optional[str]
    payment_reference: str
    canteen: Canteen
    canteen_name: str
    user_id: str
    user_name: str
    user_email: Optional[str]
    items: List[OrderLineItem]
    total_amount: float
    notes: str
    status: OrderStatus
    status_label: str
    payment_status: PaymentStatus
    payment_status_label: str
    payment_source: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: Optional[str] = None
    reconciled_at: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderSummary":
        return cls(
            id=order.store_id,
            payment_reference=order.payment_reference,
            canteen=order.canteen,
            canteen_name=order.canteen.display_name,
            user_id=order.user_id,
            user_name=order.user_name,
            user_email=order.user_email,
            items=[
                OrderLineItem(id=item.id, name=item.name, price=item.price, quantity=item.quantity)
                for item in order.items
            ],
            total_amount=order.total_amount,
            notes=order.notes,
            status=order.status,
            status_label=ORDER_STATUS_LABELS[order.status],
            payment_status=order.payment_status,
            payment_status_label=PAYMENT_STATUS_LABELS[order.payment_status],
            payment_source=order.payment_source.value if order.payment_source else None,
            payment_method=order.payment_method,
            created_at=order.created_at,
            reconciled_at=order.reconciled_at,
        )


class SubmissionResponse(BaseModel):
    order: OrderSummary
    payment_reference: str
    checkout_url: str


class ReconciliationResponse(BaseModel):
    payment_reference: str
    payment_status: PaymentStatus
    order_status: OrderStatus
    attempts: int
    raw_status: Optional[str] = None
    inconclusive: bool
    manual_override_available: bool


class GatewayStatusResponse(BaseModel):
    payment_reference: str
    raw_status: Optional[str] = None
    payment_method: Optional[str] = None
    settled_at: Optional[str] = None


class PaymentOverrideRequest(BaseModel):
    status: PaymentStatus
    operator: Optional[str] = Field(default=None, description="Admin, der den Status setzt")


class OrderStatusRequest(BaseModel):
    status: OrderStatus


class OrderStats(BaseModel):
    menu_count: int
    today_orders: int
    total_orders: int
    pending_orders: int
    completed_orders: int


class BulkDeleteResponse(BaseModel):
    scope: str
    deleted: int
