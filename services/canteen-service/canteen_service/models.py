from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from .statuses import OrderStatus, PaymentSource, PaymentStatus

GLOBAL_ORDERS_COLLECTION = "orders"
FOODS_COLLECTION = "foods"
MAX_NOTES_LENGTH = 500


class OrderValidationError(ValueError):
    """Raised when order input is rejected before any side effect."""


class InvalidCanteenError(OrderValidationError):
    """Raised when a canteen tag is missing or not one of A-D."""


class Canteen(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"

    @property
    def collection_name(self) -> str:
        # Existing data lives in these collections; the name must not change.
        return f"orders_kantin_{self.value.lower()}"

    @property
    def display_name(self) -> str:
        return f"Kantin {self.value}"

    @classmethod
    def parse(cls, value: object) -> "Canteen":
        if isinstance(value, Canteen):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidCanteenError(f"Ungültige Kantine: {value!r}") from None


@dataclass(frozen=True)
class LineItem:
    id: str
    name: str
    price: float
    quantity: int

    @property
    def line_total(self) -> float:
        return self.price * self.quantity

    def to_document(self, canteen: Canteen) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "kantin": canteen.value,
        }

    @classmethod
    def from_document(cls, data: dict) -> "LineItem":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            price=data.get("price", 0),
            quantity=int(data.get("quantity", 0)),
        )


@dataclass(frozen=True)
class Requester:
    id: str
    name: str
    email: Optional[str] = None


@dataclass(frozen=True)
class Order:
    """One order as stored in a canteen collection or the global collection."""

    canteen: Canteen
    user_id: str
    user_name: str
    user_email: Optional[str]
    items: List[LineItem]
    total_amount: float
    payment_reference: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    notes: str = ""
    store_id: Optional[str] = None
    created_at: Optional[str] = None
    payment_token: Optional[str] = None
    checkout_url: Optional[str] = None
    payment_source: Optional[PaymentSource] = None
    payment_method: Optional[str] = None
    settled_at: Optional[str] = None
    reconciled_at: Optional[str] = None
    overridden_by: Optional[str] = None
    canteen_order_id: Optional[str] = None

    def to_document(self) -> dict:
        document: dict[str, Any] = {
            "userId": self.user_id,
            "userName": self.user_name,
            "userEmail": self.user_email,
            "kantin": self.canteen.value,
            "kantinName": self.canteen.display_name,
            "items": [item.to_document(self.canteen) for item in self.items],
            "totalAmount": self.total_amount,
            "notes": self.notes,
            "status": self.status.value,
            "paymentStatus": self.payment_status.value,
            "paymentReference": self.payment_reference,
        }
        optional = {
            "paymentToken": self.payment_token,
            "checkoutUrl": self.checkout_url,
            "paymentSource": self.payment_source.value if self.payment_source else None,
            "paymentMethod": self.payment_method,
            "settledAt": self.settled_at,
            "reconciledAt": self.reconciled_at,
            "overriddenBy": self.overridden_by,
            "canteenOrderId": self.canteen_order_id,
        }
        document.update({key: value for key, value in optional.items() if value is not None})
        return document

    @classmethod
    def from_document(cls, store_id: str, data: dict) -> "Order":
        source = data.get("paymentSource")
        return cls(
            canteen=Canteen.parse(data.get("kantin")),
            user_id=data.get("userId", ""),
            user_name=data.get("userName", ""),
            user_email=data.get("userEmail"),
            items=[LineItem.from_document(item) for item in data.get("items", [])],
            total_amount=data.get("totalAmount", 0),
            payment_reference=data.get("paymentReference", ""),
            status=OrderStatus.coerce(data.get("status")),
            payment_status=PaymentStatus.coerce(data.get("paymentStatus")),
            notes=data.get("notes") or "",
            store_id=store_id,
            created_at=data.get("createdAt"),
            payment_token=data.get("paymentToken"),
            checkout_url=data.get("checkoutUrl"),
            payment_source=PaymentSource(source) if source else None,
            payment_method=data.get("paymentMethod"),
            settled_at=data.get("settledAt"),
            reconciled_at=data.get("reconciledAt"),
            overridden_by=data.get("overriddenBy"),
            canteen_order_id=data.get("canteenOrderId"),
        )


def parse_quantity(value: object) -> int:
    """Accept positive integers or strings of digits."""
    if isinstance(value, bool):
        raise OrderValidationError("Menge muss mindestens 1 sein.")
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise OrderValidationError("Menge muss eine Zahl sein.")
        value = int(text)
    elif isinstance(value, float):
        if not value.is_integer():
            raise OrderValidationError("Menge muss eine ganze Zahl sein.")
        value = int(value)
    if not isinstance(value, int) or value < 1:
        raise OrderValidationError("Menge muss mindestens 1 sein.")
    return value
