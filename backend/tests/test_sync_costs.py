import pytest

from backend.app.costing import sync as sync_mod
from backend.app.costing.sync import CostSyncError, collect_lot_pairs, plan_line_cost_updates, sync_batch
from backend.app.costing.cost_index import CostSources, LotKey, build_cost_index
from backend.tests.fake_store import FakeStore


def _patch_db(monkeypatch, store):
    monkeypatch.setattr(sync_mod, "get_conn", store.conn)
    return store


def _sale(order_id, *lines):
    return {"_id": order_id, "lineItems": list(lines)}


def test_end_to_end_opening_balance_cost_is_written_back(monkeypatch):
    store = _patch_db(monkeypatch, FakeStore(
        opening_balances=[{"_id": "ob1", "sku": "S1", "lotNumber": "L1", "cost": 2.00}],
        purchase_orders=[{"_id": "po1", "lineItems": [{"sku": "S1", "lotNumber": "L1", "cost": 3.50}]}],
        sale_orders=[_sale("so1", {"_id": "li1", "sku": "S1", "lotNumber": "L1", "cost": 0})],
    ))

    out = sync_batch(0, 10)

    assert out["processed"] == 1
    assert out["ops"] == 1
    assert out["updated"] == 1
    assert out["failed"] == 0
    assert out["stats"]["matchedItems"] == 1
    assert out["stats"]["openingBalance"] == 1
    assert store.doc("sale_orders", "so1")["lineItems"][0]["cost"] == 2.00


def test_second_run_is_a_no_op(monkeypatch):
    _patch_db(monkeypatch, FakeStore(
        opening_balances=[{"_id": "ob1", "sku": "S1", "lotNumber": "L1", "cost": 2.00}],
        sale_orders=[_sale("so1", {"_id": "li1", "sku": {"_id": "S1"}, "lotNumber": "L1", "cost": 0})],
    ))

    assert sync_batch(0, 10)["ops"] == 1
    again = sync_batch(0, 10)
    assert again["ops"] == 0
    assert again["updated"] == 0


@pytest.mark.parametrize("resolved,expected_ops", [(1.2349, 0), (1.236, 1)])
def test_epsilon_threshold(monkeypatch, resolved, expected_ops):
    _patch_db(monkeypatch, FakeStore(
        opening_balances=[{"_id": "ob1", "sku": "S1", "lotNumber": "L1", "cost": resolved}],
        sale_orders=[_sale("so1", {"_id": "li1", "sku": "S1", "lotNumber": "L1", "cost": 1.2345})],
    ))
    assert sync_batch(0, 10)["ops"] == expected_ops


def test_lookup_miss_emits_nothing(monkeypatch):
    _patch_db(monkeypatch, FakeStore(
        opening_balances=[{"_id": "ob1", "sku": "S1", "lotNumber": "L1", "cost": 2.0}],
        sale_orders=[_sale("so1", {"_id": "li1", "sku": "S1", "lotNumber": "NOPE", "cost": 0}, {"_id": "li2", "sku": "S1"})],
    ))
    out = sync_batch(0, 10)
    assert out["ops"] == 0
    assert out["stats"]["totalLineItems"] == 2
    assert out["stats"]["matchedItems"] == 0


def test_empty_page_skips_source_reads(monkeypatch):
    store = _patch_db(monkeypatch, FakeStore(sale_orders=[_sale("so1")]))
    out = sync_batch(5, 10)
    assert out["processed"] == 0
    assert store.reads_of("opening_balances") == 0


def test_paging_walks_orders_in_creation_order(monkeypatch):
    orders = [_sale(f"so{i}", {"_id": f"li{i}", "sku": "S1", "lotNumber": "L1", "cost": 0}) for i in range(5)]
    store = _patch_db(monkeypatch, FakeStore(
        opening_balances=[{"_id": "ob1", "sku": "S1", "lotNumber": "L1", "cost": 1.0}],
        sale_orders=orders,
    ))
    first = sync_batch(0, 2)
    second = sync_batch(2, 2)
    third = sync_batch(4, 2)
    assert [first["processed"], second["processed"], third["processed"]] == [2, 2, 1]
    assert all(store.doc("sale_orders", f"so{i}")["lineItems"][0]["cost"] == 1.0 for i in range(5))


def test_read_failure_is_fatal_and_names_the_skip(monkeypatch):
    store = _patch_db(monkeypatch, FakeStore(
        sale_orders=[_sale("so1", {"_id": "li1", "sku": "S1", "lotNumber": "L1"})],
    ))
    store.fail_on_read = "sale_orders"
    with pytest.raises(CostSyncError) as ei:
        sync_batch(40, 10)
    assert ei.value.skip == 40
    assert "skip=40" in str(ei.value)


def test_concurrent_source_read_failure_is_fatal(monkeypatch):
    store = _patch_db(monkeypatch, FakeStore(
        sale_orders=[_sale("so1", {"_id": "li1", "sku": "S1", "lotNumber": "L1"})],
    ))
    store.fail_on_read = "purchase_orders"
    with pytest.raises(CostSyncError) as ei:
        sync_batch(0, 10)
    assert ei.value.skip == 0


def test_failed_update_does_not_block_the_others(monkeypatch):
    store = _patch_db(monkeypatch, FakeStore(
        opening_balances=[{"_id": "ob1", "sku": "S1", "lotNumber": "L1", "cost": 2.0}],
        sale_orders=[
            _sale("bad", {"_id": "li1", "sku": "S1", "lotNumber": "L1", "cost": 0}),
            _sale("good", {"_id": "li2", "sku": "S1", "lotNumber": "L1", "cost": 0}),
        ],
    ))
    store.fail_update_ids = {"bad"}
    out = sync_batch(0, 10)
    assert out["ops"] == 2
    assert out["failed"] == 1
    assert out["updated"] == 1
    assert store.doc("sale_orders", "good")["lineItems"][0]["cost"] == 2.0


def test_planning_helpers():
    orders = [_sale("so1", {"_id": "li1", "sku": "S1", "lotNumber": "L1", "cost": 5}, "junk", {"_id": "li2", "sku": "S2", "lotNumber": "X"})]
    assert collect_lot_pairs(orders) == {LotKey("S1", "L1"), LotKey("S2", "X")}
    index = build_cost_index(None, CostSources(opening_balances=[{"sku": "S1", "lotNumber": "L1", "cost": 4}]))
    ops, matched, total = plan_line_cost_updates(orders, index, 0.001)
    assert ops == [{"order_id": "so1", "line_item_id": "li1", "cost": 4.0}]
    assert (matched, total) == (1, 2)


def test_typed_line_ids_are_updated_once(monkeypatch):
    oid = "60f1a2b3c4d5e6f7a8b9c0d1"
    store = _patch_db(monkeypatch, FakeStore(
        opening_balances=[{"_id": "ob1", "sku": "S1", "lotNumber": "L1", "cost": 2.0}],
        sale_orders=[_sale("so1", {"_id": {"$oid": oid}, "sku": "S1", "lotNumber": "L1", "cost": 0})],
    ))

    first = sync_batch(0, 10)
    second = sync_batch(0, 10)

    assert (first["ops"], first["updated"]) == (1, 1)
    assert (second["ops"], second["updated"]) == (0, 0)
    assert store.doc("sale_orders", "so1")["lineItems"][0]["cost"] == 2.0
