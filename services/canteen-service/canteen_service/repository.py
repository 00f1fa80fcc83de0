from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import GLOBAL_ORDERS_COLLECTION, Canteen, Order
from .record_store import CollectionUnavailableError, RecordStore

logger = logging.getLogger(__name__)


class OrderNotFoundError(Exception):
    """Raised when no stored copy carries the requested payment reference."""


@dataclass(frozen=True)
class OrderCopies:
    """Both stored copies of one order; either may be missing."""

    payment_reference: str
    canteen: Optional[Canteen]
    canteen_copy: Optional[Order]
    global_copy: Optional[Order]

    @property
    def primary(self) -> Order:
        order = self.canteen_copy or self.global_copy
        if order is None:
            raise OrderNotFoundError(f"Bestellung {self.payment_reference} ist unbekannt.")
        return order


class OrderRepository:
    """Typed access to the canteen-scoped and global order collections."""

    def __init__(self, store: RecordStore):
        self._store = store

    def create_canteen_copy(self, order: Order) -> str:
        return self._store.create(order.canteen.collection_name, order.to_document())

    def create_global_copy(self, order: Order, canteen_order_id: str) -> str:
        document = order.to_document()
        document["canteenOrderId"] = canteen_order_id
        return self._store.create(GLOBAL_ORDERS_COLLECTION, document)

    def update_canteen_copy(self, canteen: Canteen, store_id: str, changes: dict) -> None:
        self._store.update(canteen.collection_name, store_id, changes)

    def update_global_copy(self, store_id: str, changes: dict) -> None:
        self._store.update(GLOBAL_ORDERS_COLLECTION, store_id, changes)

    def find_copies(self, payment_reference: str) -> OrderCopies:
        global_copy = self._find_global(payment_reference)
        if global_copy is not None:
            search: Iterable[Canteen] = [global_copy.canteen]
        else:
            search = list(Canteen)

        for canteen in search:
            matches = self._store.query(
                canteen.collection_name,
                lambda body: body.get("paymentReference") == payment_reference,
            )
            if matches:
                store_id, body = matches[0]
                return OrderCopies(
                    payment_reference=payment_reference,
                    canteen=canteen,
                    canteen_copy=Order.from_document(store_id, body),
                    global_copy=global_copy,
                )

        return OrderCopies(
            payment_reference=payment_reference,
            canteen=global_copy.canteen if global_copy else None,
            canteen_copy=None,
            global_copy=global_copy,
        )

    def _find_global(self, payment_reference: str) -> Optional[Order]:
        try:
            matches = self._store.query(
                GLOBAL_ORDERS_COLLECTION,
                lambda body: body.get("paymentReference") == payment_reference,
            )
        except CollectionUnavailableError:
            logger.warning("Global orders unavailable while locating %s", payment_reference)
            return None
        if not matches:
            return None
        store_id, body = matches[0]
        return Order.from_document(store_id, body)

    def list_canteen_orders(self, canteen: Canteen) -> List[Order]:
        return [
            Order.from_document(store_id, body)
            for store_id, body in self._store.query(canteen.collection_name, is_order_document)
        ]

    def list_global_orders(self, canteen: Canteen | None = None) -> List[Order]:
        def matches(body: dict) -> bool:
            return is_order_document(body) and (canteen is None or body.get("kantin") == canteen.value)

        return [
            Order.from_document(store_id, body)
            for store_id, body in self._store.query(GLOBAL_ORDERS_COLLECTION, matches)
        ]

    def list_user_orders(self, user_id: str) -> List[Order]:
        return [
            Order.from_document(store_id, body)
            for store_id, body in self._store.query(
                GLOBAL_ORDERS_COLLECTION,
                lambda body: is_order_document(body) and body.get("userId") == user_id,
            )
        ]


def is_order_document(body: dict) -> bool:
    # Collections may still hold the placeholder documents of the initial setup.
    return not body.get("dummy") and body.get("kantin") in {c.value for c in Canteen}
