"""Status vocabularies used by orders and payments.

Three vocabularies are kept apart:

* ``RawTransactionStatus`` - the words the payment gateway reports.
* ``PaymentStatus`` - the normalized three-state value stored on orders.
* ``OrderStatus`` - the fulfilment lifecycle driven by canteen admins.

``normalize_payment_status`` is the only bridge between the first two.
Display labels live in ``ORDER_STATUS_LABELS``/``PAYMENT_STATUS_LABELS`` and are
only consumed by the HTTP layer.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional


class RawTransactionStatus(str, Enum):
    CAPTURE = "capture"
    SETTLEMENT = "settlement"
    PENDING = "pending"
    DENY = "deny"
    CANCEL = "cancel"
    EXPIRE = "expire"
    FAILURE = "failure"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"

    @classmethod
    def coerce(cls, value: object) -> "PaymentStatus":
        """Read a stored payment status, accepting legacy gateway words."""
        if isinstance(value, PaymentStatus):
            return value
        if value is None or value == "":
            return cls.PENDING
        try:
            return cls(value)
        except ValueError:
            raw = parse_raw_status(value)
            if raw is None:
                raise
            return normalize_payment_status(raw)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def coerce(cls, value: object) -> "OrderStatus":
        """Read a stored order status, accepting the legacy ``confirmed``."""
        if isinstance(value, OrderStatus):
            return value
        if value is None or value == "":
            return cls.PENDING
        if isinstance(value, str) and value.strip().lower() in _LEGACY_ORDER_STATUSES:
            return _LEGACY_ORDER_STATUSES[value.strip().lower()]
        return cls(value)


# Older orders were moved to "confirmed" once paid.
_LEGACY_ORDER_STATUSES: Dict[str, OrderStatus] = {"confirmed": OrderStatus.PROCESSING}


class PaymentSource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


_PAYMENT_MAPPING: Dict[RawTransactionStatus, PaymentStatus] = {
    RawTransactionStatus.CAPTURE: PaymentStatus.PAID,
    RawTransactionStatus.SETTLEMENT: PaymentStatus.PAID,
    RawTransactionStatus.PENDING: PaymentStatus.PENDING,
    RawTransactionStatus.DENY: PaymentStatus.FAILED,
    RawTransactionStatus.CANCEL: PaymentStatus.FAILED,
    RawTransactionStatus.EXPIRE: PaymentStatus.FAILED,
    RawTransactionStatus.FAILURE: PaymentStatus.FAILED,
}

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ORDER_STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Menunggu",
    OrderStatus.PROCESSING: "Diproses",
    OrderStatus.COMPLETED: "Selesai",
    OrderStatus.CANCELLED: "Dibatalkan",
}

PAYMENT_STATUS_LABELS: Dict[PaymentStatus, str] = {
    PaymentStatus.PAID: "Lunas",
    PaymentStatus.PENDING: "Menunggu Pembayaran",
    PaymentStatus.FAILED: "Gagal",
}


def parse_raw_status(value: object) -> Optional[RawTransactionStatus]:
    """Return the gateway status for ``value`` or ``None`` when it is unusable."""
    if not isinstance(value, str):
        return None
    try:
        return RawTransactionStatus(value.strip().lower())
    except ValueError:
        return None


def normalize_payment_status(raw: RawTransactionStatus) -> PaymentStatus:
    return _PAYMENT_MAPPING[raw]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS[current]
