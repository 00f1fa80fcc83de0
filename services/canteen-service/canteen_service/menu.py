from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .models import FOODS_COLLECTION, Canteen
from .record_store import RecordStore


class MenuItemValidationError(ValueError):
    """Raised when a menu item payload is incomplete or invalid."""


class MenuItemNotFoundError(Exception):
    """Raised when a menu item id is unknown."""


@dataclass(frozen=True)
class MenuItem:
    id: str
    name: str
    description: Optional[str]
    price: float
    canteen: Optional[Canteen]
    available: bool = True

    def as_order_item(self) -> dict:
        # Untagged items are rejected when the order is submitted.
        tag = self.canteen.value if self.canteen else None
        return {"id": self.id, "name": self.name, "price": self.price, "kantin": tag}


class MenuRepository:
    """Menu items of all canteens, kept in the ``foods`` collection."""

    def __init__(self, store: RecordStore):
        self._store = store

    def list_items(self, canteen: Canteen | None = None) -> List[MenuItem]:
        rows = self._store.query(
            FOODS_COLLECTION,
            lambda body: canteen is None or _canteen_tag(body) == canteen.value,
        )
        items = [_to_item(store_id, body) for store_id, body in rows]
        return sorted(items, key=lambda item: item.name.lower())

    def get_item(self, item_id: str) -> MenuItem:
        body = self._store.get(FOODS_COLLECTION, item_id)
        if body is None:
            raise MenuItemNotFoundError(f"Menüeintrag {item_id} ist unbekannt.")
        return _to_item(item_id, body)

    def add_item(
        self,
        name: str,
        price: float,
        canteen: object,
        description: str | None = None,
        available: bool = True,
    ) -> MenuItem:
        tag = Canteen.parse(canteen)
        _validate(name, price)
        item_id = self._store.create(
            FOODS_COLLECTION,
            {
                "name": name.strip(),
                "description": description,
                "price": price,
                "kantin": tag.value,
                "available": available,
            },
        )
        return self.get_item(item_id)

    def update_item(self, item_id: str, **changes) -> MenuItem:
        current = self.get_item(item_id)
        name = changes.get("name", current.name)
        price = changes.get("price", current.price)
        _validate(name, price)
        payload = {"name": name.strip(), "price": price}
        if "description" in changes:
            payload["description"] = changes["description"]
        if "available" in changes:
            payload["available"] = bool(changes["available"])
        if "canteen" in changes:
            payload["kantin"] = Canteen.parse(changes["canteen"]).value
        self._store.update(FOODS_COLLECTION, item_id, payload)
        return self.get_item(item_id)

    def delete_item(self, item_id: str) -> None:
        self.get_item(item_id)
        self._store.batch_delete([(FOODS_COLLECTION, item_id)])


_TAGS = {canteen.value for canteen in Canteen}


def _canteen_tag(body: dict) -> Optional[str]:
    return body.get("canteen") or body.get("kantin")


def _validate(name: str, price: object) -> None:
    if not name or not name.strip():
        raise MenuItemValidationError("Name des Menüeintrags fehlt.")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
        raise MenuItemValidationError("Preis muss größer als 0 sein.")


def _to_item(store_id: str, body: dict) -> MenuItem:
    return MenuItem(
        id=store_id,
        name=body.get("name", ""),
        description=body.get("description"),
        price=body.get("price", 0),
        canteen=_parse_tag(body),
        available=bool(body.get("available", True)),
    )


def _parse_tag(body: dict) -> Optional[Canteen]:
    tag = _canteen_tag(body)
    return Canteen(tag) if tag in _TAGS else None
