from datetime import date, datetime, timezone

from backend.app.costing.cost_index import CostSources, build_cost_index
from backend.app.costing.ledger import (
    LedgerFilters,
    available_lots,
    build_ledger,
    ledger_financials,
    summarize_lots,
)
from backend.app.costing.movements import AUDIT, OPENING, PURCHASE, SALE, InventoryMovement


def _m(id, day, type, lot, qty, cost=0.0, sale_price=0.0):
    return InventoryMovement(
        id=id,
        date=datetime(2024, 1, day, 12, tzinfo=timezone.utc),
        type=type,
        reference=id,
        lot_number=lot,
        quantity=qty,
        cost=cost,
        sale_price=sale_price,
    )


MOVES = [
    _m("a", 1, OPENING, "L1", 10, cost=2.0),
    _m("b", 2, PURCHASE, "L2", 5, cost=3.0),
    _m("c", 3, SALE, "L1", -3, cost=2.0, sale_price=10),
    _m("d", 4, SALE, "L1", -2, cost=2.0, sale_price=10),
    _m("e", 5, AUDIT, "L3", -1),
]


def test_whole_sku_running_balance():
    ledger = build_ledger("S1", list(reversed(MOVES)), order="asc")
    assert [t.movement.id for t in ledger.transactions] == ["a", "b", "c", "d", "e"]
    assert [t.balance for t in ledger.transactions] == [10, 15, 12, 10, 9]


def test_single_lot_filter_recomputes_balance_for_that_lot():
    ledger = build_ledger("S1", MOVES, filters=LedgerFilters(lot_number="L1"), order="asc")
    assert [t.movement.id for t in ledger.transactions] == ["a", "c", "d"]
    assert [t.balance for t in ledger.transactions] == [10, 7, 5]


def test_other_filters_keep_whole_sku_balances_and_desc_order():
    ledger = build_ledger("S1", MOVES, filters=LedgerFilters(exclude_types=frozenset({PURCHASE}), lot_number="All"))
    assert [t.movement.id for t in ledger.transactions] == ["e", "d", "c", "a"]
    assert [t.balance for t in ledger.transactions] == [9, 10, 12, 10]


def test_date_range_end_is_inclusive():
    ledger = build_ledger("S1", MOVES, filters=LedgerFilters(start_date=date(2024, 1, 2), end_date=date(2024, 1, 3)), order="asc")
    assert [t.movement.id for t in ledger.transactions] == ["b", "c"]


def test_missing_cost_filter():
    ledger = build_ledger("S1", MOVES, filters=LedgerFilters(missing_cost=True))
    assert [t.movement.id for t in ledger.transactions] == ["e"]


def test_paging_is_a_prefix():
    ledger = build_ledger("S1", MOVES)
    assert ledger.total_count == 5
    assert [t.movement.id for t in ledger.page(2)] == ["e", "d"]
    assert ledger.page(0) == []


def test_lot_summaries():
    index = build_cost_index(["S1"], CostSources(opening_balances=[{"sku": "S1", "lotNumber": "L1", "cost": 2.5}]))
    ledger = build_ledger("S1", MOVES, cost_index=index)
    lots = {l.lot_number: l for l in ledger.lots}
    assert [l.lot_number for l in ledger.lots] == ["L1", "L2", "L3"]
    assert lots["L1"].balance == 5 and lots["L1"].source == "Opening Balance" and lots["L1"].cost == 2.5
    assert lots["L2"].source == "Purchase Order" and lots["L2"].cost == 3.0
    # A negative audit never originates a lot.
    assert lots["L3"].source == "Unknown Source"
    assert ledger.lot_numbers == ("L1", "L2", "L3")


def test_zero_balance_lots_are_hidden():
    moves = MOVES + [_m("f", 6, SALE, "L2", -5)]
    ledger = build_ledger("S1", moves)
    assert "L2" not in [l.lot_number for l in ledger.lots]
    assert "L2" in ledger.lot_numbers


def test_available_lots_are_fifo():
    moves = [
        _m("x", 3, PURCHASE, "NEW", 5),
        _m("y", 1, OPENING, "OLD", 5),
        _m("z", 2, PURCHASE, "EMPTY", 5),
        _m("w", 4, SALE, "EMPTY", -5),
    ]
    assert [l.lot_number for l in available_lots(summarize_lots(moves))] == ["OLD", "NEW"]


def test_financials():
    out = ledger_financials(MOVES, today=date(2024, 3, 15))
    assert out["totalRevenue"] == 50
    assert out["costOfSales"] == 10
    assert out["grossProfit"] == 40
    assert len(out["chartData"]) == 12
    assert out["chartData"][-1]["date"] == "2024-03"
    jan = [p for p in out["chartData"] if p["date"] == "2024-01"][0]
    assert jan == {"date": "2024-01", "revenue": 50, "qty": 5}
