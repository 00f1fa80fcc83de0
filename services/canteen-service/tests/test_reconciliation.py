from __future__ import annotations

import pytest

from canteen_service.engine import OrderSyncEngine
from canteen_service.gateway_client import GatewayQueryError
from canteen_service.repository import OrderNotFoundError
from canteen_service.statuses import OrderStatus, PaymentSource, PaymentStatus

from conftest import CUSTOMER, FIXED_NOW, FOOD, ScriptedGateway


def _engine(store, gateway, sleeps):
    return OrderSyncEngine(store, gateway, sleep=sleeps.append, clock=lambda: FIXED_NOW)


def _stored(store, collection):
    [(_, body)] = store.query(collection)
    return body


def test_settlement_marks_order_paid(engine, store, gateway):
    reference = engine.submit_order(CUSTOMER, FOOD, 3).payment_reference

    outcome = engine.reconcile(reference)

    assert outcome.payment_status is PaymentStatus.PAID
    assert outcome.order_status is OrderStatus.PROCESSING
    assert outcome.attempts == 1
    assert not outcome.inconclusive
    for collection in ("orders_kantin_a", "orders"):
        body = _stored(store, collection)
        assert body["paymentStatus"] == "paid"
        assert body["status"] == "processing"
        assert body["paymentSource"] == PaymentSource.AUTO.value
        assert body["reconciledAt"] == FIXED_NOW.isoformat()
        assert body["totalAmount"] == 45000


def test_reconciliation_is_idempotent(engine, store):
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    engine.reconcile(reference)
    first = (_stored(store, "orders_kantin_a"), _stored(store, "orders"))
    engine.reconcile(reference)
    second = (_stored(store, "orders_kantin_a"), _stored(store, "orders"))

    assert first == second


def test_retries_until_usable_status(store, sleeps):
    gateway = ScriptedGateway([None, None, "capture"])
    engine = _engine(store, gateway, sleeps)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    outcome = engine.reconcile(reference)

    assert len(gateway.queries) == 3
    assert sleeps == [1.0, 2.0, 3.0]
    assert outcome.attempts == 3
    assert outcome.payment_status is PaymentStatus.PAID


def test_gateway_errors_count_as_unusable_attempts(store, sleeps):
    gateway = ScriptedGateway([GatewayQueryError("timeout"), "settlement"])
    engine = _engine(store, gateway, sleeps)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    outcome = engine.reconcile(reference)

    assert outcome.attempts == 2
    assert outcome.payment_status is PaymentStatus.PAID


def test_inconclusive_after_retries_offers_override(store, sleeps):
    gateway = ScriptedGateway([GatewayQueryError("down")])
    engine = _engine(store, gateway, sleeps)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference
    store.updates.clear()

    outcome = engine.reconcile(reference)

    assert outcome.inconclusive
    assert outcome.manual_override_available
    assert outcome.payment_status is PaymentStatus.PENDING
    assert outcome.order_status is OrderStatus.PENDING
    assert len(gateway.queries) == 3
    assert store.updates == []


def test_automatic_path_does_not_offer_override(store, sleeps):
    gateway = ScriptedGateway([None])
    engine = _engine(store, gateway, sleeps)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    outcome = engine.reconcile(reference, explicit=False)

    assert outcome.inconclusive
    assert not outcome.manual_override_available


def test_backoff_schedule_is_configurable(store):
    gateway = ScriptedGateway([None])
    delays = []
    engine = OrderSyncEngine(store, gateway, backoff=(0.5, 0.5), sleep=delays.append)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    outcome = engine.reconcile(reference)

    assert delays == [0.5, 0.5]
    assert outcome.attempts == 2


@pytest.mark.parametrize("raw", ["deny", "cancel", "expire", "failure"])
def test_failed_payment_leaves_order_status(store, sleeps, raw):
    gateway = ScriptedGateway([raw])
    engine = _engine(store, gateway, sleeps)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    outcome = engine.reconcile(reference)

    assert outcome.payment_status is PaymentStatus.FAILED
    assert outcome.order_status is OrderStatus.PENDING
    body = _stored(store, "orders_kantin_a")
    assert body["paymentStatus"] == "failed"
    assert body["status"] == "pending"


def test_raw_pending_is_usable_and_stops_retries(store, sleeps):
    gateway = ScriptedGateway(["pending"])
    engine = _engine(store, gateway, sleeps)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    outcome = engine.reconcile(reference)

    assert len(gateway.queries) == 1
    assert not outcome.inconclusive
    assert outcome.payment_status is PaymentStatus.PENDING


def test_paid_order_is_not_downgraded(store, sleeps):
    gateway = ScriptedGateway(["settlement"])
    engine = _engine(store, gateway, sleeps)
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference
    engine.reconcile(reference)

    gateway.statuses = ["expire"]
    outcome = engine.reconcile(reference)

    assert outcome.payment_status is PaymentStatus.PAID
    assert _stored(store, "orders_kantin_a")["paymentStatus"] == "paid"


def test_global_write_failure_does_not_fail_reconciliation(engine, store):
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference
    store.fail_update.add("orders")

    outcome = engine.reconcile(reference)

    assert outcome.payment_status is PaymentStatus.PAID
    assert outcome.secondary_failure is not None
    assert _stored(store, "orders_kantin_a")["paymentStatus"] == "paid"
    assert _stored(store, "orders")["paymentStatus"] == "pending"


def test_missing_global_copy_still_updates_canteen_copy(engine, store):
    store.fail_create.add("orders")
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference

    outcome = engine.reconcile(reference)

    assert outcome.payment_status is PaymentStatus.PAID
    assert _stored(store, "orders_kantin_a")["paymentStatus"] == "paid"


def test_missing_canteen_copy_still_updates_global_copy(engine, store):
    reference = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference
    [(canteen_id, _)] = store.query("orders_kantin_a")
    store.inner.batch_delete([("orders_kantin_a", canteen_id)])

    outcome = engine.reconcile(reference)

    assert outcome.payment_status is PaymentStatus.PAID
    assert _stored(store, "orders")["paymentStatus"] == "paid"


def test_global_copy_matched_by_reference_not_store_id(engine, store):
    first = engine.submit_order(CUSTOMER, FOOD, 1).payment_reference
    second = engine.submit_order(CUSTOMER, FOOD, 2).payment_reference

    engine.reconcile(second)

    by_reference = {body["paymentReference"]: body for _, body in store.query("orders")}
    assert by_reference[second]["paymentStatus"] == "paid"
    assert by_reference[first]["paymentStatus"] == "pending"


def test_unknown_reference(engine, gateway):
    with pytest.raises(OrderNotFoundError):
        engine.reconcile("kantin-a-unknown")
    assert gateway.queries == []
