from __future__ import annotations

import pytest

from canteen_service.engine import BulkDeleteFailure
from canteen_service.models import InvalidCanteenError

from conftest import CUSTOMER, FOOD


def _place(engine, canteen, count=1):
    for _ in range(count):
        engine.submit_order(CUSTOMER, {**FOOD, "kantin": canteen}, 1)


def test_delete_single_canteen(engine, store):
    _place(engine, "A", 2)
    _place(engine, "B", 1)

    deleted = engine.bulk_delete("A")

    assert deleted == 4
    assert store.query("orders_kantin_a") == []
    assert len(store.query("orders_kantin_b")) == 1
    assert [body["kantin"] for _, body in store.query("orders")] == ["B"]


def test_scope_is_case_insensitive(engine, store):
    _place(engine, "D")
    assert engine.bulk_delete("d") == 2


def test_delete_all_canteens(engine, store):
    for canteen in "ABCD":
        _place(engine, canteen)

    assert engine.bulk_delete("all") == 8
    assert store.query("orders") == []
    assert len(store.batches) == 1


def test_empty_scope_skips_batch(engine, store):
    assert engine.bulk_delete("C") == 0
    assert store.batches == []


def test_unknown_scope(engine, store):
    with pytest.raises(InvalidCanteenError):
        engine.bulk_delete("E")
    assert store.batches == []


def test_failed_batch_removes_nothing(engine, store):
    _place(engine, "A", 2)
    store.fail_batch = True

    with pytest.raises(BulkDeleteFailure):
        engine.bulk_delete("A")

    assert len(store.batches[0]) == 4
    assert len(store.query("orders_kantin_a")) == 2
    assert len(store.query("orders")) == 2


def test_unreadable_canteen_is_skipped_in_all_scope(engine, store):
    for canteen in "ABCD":
        _place(engine, canteen)
    store.fail_query.add("orders_kantin_b")

    deleted = engine.bulk_delete("all")

    assert deleted == 6
    store.fail_query.clear()
    assert len(store.query("orders_kantin_b")) == 1
    assert [body["kantin"] for _, body in store.query("orders")] == ["B"]


def test_unreadable_canteen_fails_single_scope(engine, store):
    _place(engine, "B")
    store.fail_query.add("orders_kantin_b")

    with pytest.raises(BulkDeleteFailure):
        engine.bulk_delete("B")
    assert store.batches == []


def test_unreadable_global_collection_fails(engine, store):
    _place(engine, "A")
    store.fail_query.add("orders")

    with pytest.raises(BulkDeleteFailure):
        engine.bulk_delete("all")
    assert store.batches == []


def test_placeholder_documents_are_kept(engine, store):
    store.inner.create("orders_kantin_a", {"dummy": True})
    store.inner.create("orders", {"dummy": True})
    _place(engine, "A")

    assert engine.bulk_delete("A") == 2
    assert [body.get("dummy") for _, body in store.query("orders_kantin_a")] == [True]
    assert [body.get("dummy") for _, body in store.query("orders")] == [True]
