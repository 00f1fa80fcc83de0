from __future__ import annotations

import pytest

from canteen_service.engine import OrderSyncEngine
from canteen_service.gateway_client import PaymentInitiationError
from canteen_service.models import InvalidCanteenError, MAX_NOTES_LENGTH, OrderValidationError
from canteen_service.record_store import CollectionUnavailableError
from canteen_service.statuses import OrderStatus, PaymentStatus

from conftest import CUSTOMER, FOOD, ScriptedGateway


def test_submission_writes_both_copies(engine, store, gateway):
    result = engine.submit_order(CUSTOMER, FOOD, 3, notes="pedas")

    assert result.order.total_amount == 45000
    assert result.order.status is OrderStatus.PENDING
    assert result.order.payment_status is PaymentStatus.PENDING
    assert result.checkout_url == f"https://pay.example/{result.payment_reference}"
    assert store.creates == ["orders_kantin_a", "orders"]
    assert result.secondary_failure is None

    reference, amount, items, payer = gateway.initiated[0]
    assert reference == result.payment_reference
    assert amount == 45000
    assert items == [{"id": "f1", "name": "Nasi Goreng", "price": 15000, "quantity": 3, "kantin": "A"}]
    assert payer.email == "budi@example.com"

    [(canteen_id, canteen_doc)] = store.query("orders_kantin_a")
    [(_, global_doc)] = store.query("orders")
    assert canteen_doc["paymentReference"] == global_doc["paymentReference"] == reference
    assert global_doc["canteenOrderId"] == canteen_id
    assert canteen_doc["totalAmount"] == 45000
    assert canteen_doc["notes"] == "pedas"
    assert canteen_doc["paymentToken"] == f"tok-{reference}"


def test_payment_reference_names_the_canteen(engine):
    result = engine.submit_order(CUSTOMER, {**FOOD, "kantin": "C"}, 1)
    assert result.payment_reference.startswith("kantin-c-")


def test_canteen_tag_may_come_from_canteen_field(engine, store):
    item = {"id": "f9", "name": "Soto", "price": 14000, "canteen": "B"}
    engine.submit_order(CUSTOMER, item, 2)
    assert store.creates[0] == "orders_kantin_b"


@pytest.mark.parametrize("tag", [None, "", "E", "a"])
def test_unknown_canteen_has_no_side_effects(engine, store, gateway, tag):
    item = {key: value for key, value in FOOD.items() if key != "kantin"}
    if tag is not None:
        item["kantin"] = tag
    with pytest.raises(InvalidCanteenError):
        engine.submit_order(CUSTOMER, item, 1)
    assert store.creates == []
    assert gateway.initiated == []


@pytest.mark.parametrize("quantity", [0, -2, "dua", "", None])
def test_invalid_quantity_rejected_before_gateway(engine, store, gateway, quantity):
    with pytest.raises(OrderValidationError):
        engine.submit_order(CUSTOMER, FOOD, quantity)
    assert gateway.initiated == []
    assert store.creates == []


def test_notes_are_bounded(engine, gateway):
    with pytest.raises(OrderValidationError):
        engine.submit_order(CUSTOMER, FOOD, 1, notes="x" * (MAX_NOTES_LENGTH + 1))
    assert gateway.initiated == []


def test_gateway_failure_aborts_before_writes(store, sleeps):
    gateway = ScriptedGateway(initiate_error=PaymentInitiationError("HTTP 401"))
    engine = OrderSyncEngine(store, gateway, sleep=sleeps.append)
    with pytest.raises(PaymentInitiationError):
        engine.submit_order(CUSTOMER, FOOD, 1)
    assert store.creates == []


def test_required_write_failure_surfaces(engine, store, gateway):
    store.fail_create.add("orders_kantin_a")
    with pytest.raises(CollectionUnavailableError) as excinfo:
        engine.submit_order(CUSTOMER, FOOD, 1)
    assert excinfo.value.collection == "orders_kantin_a"
    assert store.creates == ["orders_kantin_a"]
    # gateway transaction stays orphaned
    assert len(gateway.initiated) == 1


def test_global_write_failure_is_contained(engine, store):
    store.fail_create.add("orders")
    result = engine.submit_order(CUSTOMER, FOOD, 2)

    assert store.creates == ["orders_kantin_a", "orders"]
    assert result.secondary_failure is not None
    assert len(store.query("orders_kantin_a")) == 1
    assert store.query("orders") == []
