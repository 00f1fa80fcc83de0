from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from canteen_service.database import apply_schema
from canteen_service.engine import OrderSyncEngine
from canteen_service.gateway_client import (
    CheckoutSession,
    TransactionStatus,
)
from canteen_service.models import Requester
from canteen_service.record_store import (
    BatchDeleteError,
    CollectionUnavailableError,
    DocumentNotFoundError,
    SQLRecordStore,
)

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

FOOD = {"id": "f1", "name": "Nasi Goreng", "price": 15000, "kantin": "A"}
CUSTOMER = Requester(id="user-1", name="Budi", email="budi@example.com")


@pytest.fixture()
def connection_factory(tmp_path):
    db_path = tmp_path / "canteen.db"

    def factory():
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        return conn

    with factory() as conn:
        apply_schema(conn)

    return factory


@pytest.fixture()
def sql_store(connection_factory):
    return SQLRecordStore(connection_factory=connection_factory)


@pytest.fixture()
def store(sql_store):
    return RecordingStore(sql_store)


@pytest.fixture()
def gateway():
    return ScriptedGateway(["settlement"])


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def engine(store, gateway, sleeps):
    return OrderSyncEngine(store, gateway, sleep=sleeps.append, clock=lambda: FIXED_NOW)


class ScriptedGateway:
    """Answers status queries from a script; the last entry repeats."""

    def __init__(self, statuses=(), initiate_error: Exception | None = None):
        self.statuses = list(statuses)
        self.initiate_error = initiate_error
        self.initiated = []
        self.queries = []

    def initiate(self, payment_reference, gross_amount, items, payer):
        self.initiated.append((payment_reference, gross_amount, list(items), payer))
        if self.initiate_error is not None:
            raise self.initiate_error
        return CheckoutSession(
            checkout_url=f"https://pay.example/{payment_reference}",
            token=f"tok-{payment_reference}",
        )

    def query_status(self, payment_reference):
        self.queries.append(payment_reference)
        if not self.statuses:
            return TransactionStatus(raw_status=None)
        value = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(value, Exception):
            raise value
        return TransactionStatus(raw_status=value, payment_method="qris" if value else None)


class RecordingStore:
    """Wraps a real store, records writes and injects collection failures."""

    def __init__(self, inner: SQLRecordStore):
        self.inner = inner
        self.creates: list[str] = []
        self.updates: list[tuple[str, str, dict]] = []
        self.batches: list[list] = []
        self.fail_create: set[str] = set()
        self.fail_update: set[str] = set()
        self.vanished: set[str] = set()
        self.fail_query: set[str] = set()
        self.fail_batch = False

    def create(self, collection, record):
        self.creates.append(collection)
        if collection in self.fail_create:
            raise CollectionUnavailableError(collection)
        return self.inner.create(collection, record)

    def get(self, collection, store_id):
        return self.inner.get(collection, store_id)

    def update(self, collection, store_id, changes):
        self.updates.append((collection, store_id, dict(changes)))
        if collection in self.fail_update:
            raise CollectionUnavailableError(collection)
        if collection in self.vanished:
            raise DocumentNotFoundError(f"{collection}/{store_id} was deleted")
        self.inner.update(collection, store_id, changes)

    def query(self, collection, predicate=None):
        if collection in self.fail_query:
            raise CollectionUnavailableError(collection)
        return self.inner.query(collection, predicate)

    def subscribe(self, collection, predicate, on_change):
        return self.inner.subscribe(collection, predicate, on_change)

    def batch_delete(self, refs):
        self.batches.append(list(refs))
        if self.fail_batch:
            raise BatchDeleteError("simulated outage")
        self.inner.batch_delete(refs)

