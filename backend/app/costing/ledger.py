"""
Per-SKU lot ledger.

Running balances are computed once over the whole SKU in chronological order.
Views filter that list; only a single-lot view recomputes balances, because
the whole-SKU balance says nothing about one lot's position.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Literal, Optional

from .cost_index import CostIndex
from .movements import AUDIT, SALE, SOURCE_TYPES, WEB, InventoryMovement

SortOrder = Literal["asc", "desc"]
ALL_LOTS = "All"
BALANCE_PLACES = 6


@dataclass(frozen=True)
class RankedTransaction:
    movement: InventoryMovement
    balance: float

    def to_dict(self) -> dict:
        m = self.movement
        return {
            "id": m.id,
            "date": m.date.isoformat(),
            "type": m.type,
            "reference": m.reference,
            "lotNumber": m.lot_number,
            "quantity": m.quantity,
            "uom": m.uom,
            "balance": self.balance,
            "cost": m.cost,
            "link": m.link,
            "docId": m.doc_id,
            "salePrice": m.sale_price,
        }


@dataclass(frozen=True)
class LotSummary:
    lot_number: str
    source: str
    date: Optional[datetime]
    cost: float
    balance: float

    def to_dict(self) -> dict:
        return {
            "lotNumber": self.lot_number,
            "source": self.source,
            "date": self.date.isoformat() if self.date else None,
            "cost": self.cost,
            "balance": self.balance,
        }


@dataclass(frozen=True)
class LedgerFilters:
    exclude_types: frozenset = frozenset()
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    lot_number: Optional[str] = None
    missing_lot: bool = False
    missing_cost: bool = False

    @property
    def single_lot(self) -> Optional[str]:
        lot = (self.lot_number or "").strip()
        if not lot or lot == ALL_LOTS:
            return None
        return lot

    def matches(self, m: InventoryMovement) -> bool:
        if m.type in self.exclude_types:
            return False
        day = m.date.astimezone(timezone.utc).date()
        if self.start_date and day < self.start_date:
            return False
        # End date covers the whole day.
        if self.end_date and day > self.end_date:
            return False
        if self.missing_lot and m.lot_number:
            return False
        if self.missing_cost and m.cost > 0:
            return False
        lot = self.single_lot
        if lot is not None and m.lot_number != lot:
            return False
        return True


@dataclass(frozen=True)
class Ledger:
    sku_id: str
    transactions: tuple
    lots: tuple
    lot_numbers: tuple = field(default_factory=tuple)

    @property
    def total_count(self) -> int:
        return len(self.transactions)

    def page(self, visible_count: int) -> list[RankedTransaction]:
        # Infinite scroll: always a prefix of the already-sorted result.
        return list(self.transactions[: max(0, int(visible_count))])


def _chronological(movements: Iterable[InventoryMovement]) -> list[InventoryMovement]:
    # sorted() is stable, so same-timestamp movements keep their load order.
    return sorted(movements, key=lambda m: m.date)


def _running(movements: list[InventoryMovement]) -> list[RankedTransaction]:
    balance = 0.0
    out = []
    for m in movements:
        balance += m.quantity
        out.append(RankedTransaction(m, round(balance, BALANCE_PLACES)))
    return out


def summarize_lots(movements: Iterable[InventoryMovement], cost_index: Optional[CostIndex] = None, sku_id: Optional[str] = None) -> list[LotSummary]:
    balances: dict[str, float] = {}
    origin: dict[str, InventoryMovement] = {}
    for m in _chronological(movements):
        if not m.lot_number:
            continue
        balances[m.lot_number] = balances.get(m.lot_number, 0.0) + m.quantity
        is_source = m.type in SOURCE_TYPES and (m.type != AUDIT or m.quantity > 0)
        if is_source and m.lot_number not in origin:
            origin[m.lot_number] = m

    out = []
    for lot, balance in balances.items():
        src = origin.get(lot)
        cost = None
        if cost_index is not None and sku_id:
            cost = cost_index.cost_for(sku_id, lot)
        if cost is None:
            cost = src.cost if src else 0.0
        out.append(LotSummary(
            lot_number=lot,
            source=SOURCE_TYPES[src.type] if src else "Unknown Source",
            date=src.date if src else None,
            cost=cost,
            balance=round(balance, BALANCE_PLACES),
        ))
    return out


def available_lots(lots: Iterable[LotSummary]) -> list[LotSummary]:
    """Positive-balance lots, oldest first (FIFO allocation order)."""
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    return sorted((l for l in lots if l.balance > 0), key=lambda l: l.date or epoch)


def build_ledger(
    sku_id: str,
    movements: Iterable[InventoryMovement],
    *,
    cost_index: Optional[CostIndex] = None,
    filters: Optional[LedgerFilters] = None,
    order: SortOrder = "desc",
) -> Ledger:
    filters = filters or LedgerFilters()
    chronological = _chronological(movements)

    # Whole-SKU position, computed once before any filtering.
    ranked = _running(chronological)
    visible = [t for t in ranked if filters.matches(t.movement)]
    if filters.single_lot is not None:
        visible = _running([t.movement for t in visible])
    if order == "desc":
        visible.reverse()

    lots = [l for l in summarize_lots(chronological, cost_index, sku_id) if l.balance != 0]
    lots.sort(key=lambda l: l.balance, reverse=True)
    lot_numbers = tuple(dict.fromkeys(m.lot_number for m in chronological if m.lot_number))

    return Ledger(sku_id=sku_id, transactions=tuple(visible), lots=tuple(lots), lot_numbers=lot_numbers)


def ledger_financials(movements: Iterable[InventoryMovement], *, today: Optional[date] = None, months: int = 12) -> dict:
    today = today or datetime.now(timezone.utc).date()
    buckets: dict[str, dict] = {}
    y, mth = today.year, today.month
    for _ in range(months):
        buckets[f"{y:04d}-{mth:02d}"] = {"revenue": 0.0, "qty": 0.0}
        mth -= 1
        if mth == 0:
            y, mth = y - 1, 12

    revenue = 0.0
    cost_of_sales = 0.0
    for m in movements:
        if m.type not in (SALE, WEB):
            continue
        qty = abs(m.quantity)
        rev = qty * m.sale_price
        revenue += rev
        cost_of_sales += qty * m.cost
        bucket = buckets.get(m.date.strftime("%Y-%m"))
        if bucket is not None:
            bucket["revenue"] += rev
            bucket["qty"] += qty

    return {
        "totalRevenue": revenue,
        "costOfSales": cost_of_sales,
        "grossProfit": revenue - cost_of_sales,
        "chartData": [{"date": k, **v} for k, v in sorted(buckets.items())],
    }
