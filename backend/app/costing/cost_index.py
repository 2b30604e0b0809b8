"""
Lot cost index: one authoritative unit cost per (sku, lot).

Sources are resolved tier by tier, in this order:
  1. opening balances   (duplicates: highest cost wins, ties keep the first)
  2. purchase order lines
  3. manufacturing output
  4. audit adjustments
Within tiers 2-4 the first record seen for a lot key wins. A later tier never
overwrites a key set by an earlier tier.

The index is rebuilt for every call and never cached; it is a pure function of
the documents passed in.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, NamedTuple, Optional

from .refs import normalize_lot, normalize_ref


class LotKey(NamedTuple):
    sku: str
    lot: str


@dataclass(frozen=True)
class CostSources:
    opening_balances: list = field(default_factory=list)
    purchase_orders: list = field(default_factory=list)
    manufacturing_jobs: list = field(default_factory=list)
    audit_adjustments: list = field(default_factory=list)


def to_number(v: Any) -> float:
    if v is None or isinstance(v, bool):
        return 0.0
    try:
        n = float(v)
    except (TypeError, ValueError):
        return 0.0
    if n != n:  # NaN
        return 0.0
    return n


def lot_key(sku: Any, lot: Any) -> Optional[LotKey]:
    s = normalize_ref(sku)
    l = normalize_lot(lot)
    if not s or not l:
        return None
    return LotKey(s, l)


# Fallback chains, one named step each.

def purchase_line_unit_cost(line: dict) -> float:
    cost = line.get("cost")
    if cost is not None:
        return to_number(cost)
    price = line.get("price")
    if price is not None:
        return to_number(price)
    return 0.0


def manufacturing_lot(job: dict) -> Optional[str]:
    return normalize_lot(job.get("lotNumber")) or normalize_lot(job.get("label"))


def manufacturing_unit_cost(job: dict) -> float:
    total = to_number(job.get("totalCost"))
    qty = to_number(job.get("qty"))
    if total and qty:
        return total / qty
    return 0.0


# Each extractor yields (LotKey, unit_cost) for the records of one tier.

def _opening_entries(docs: Iterable[dict]) -> Iterator[tuple[LotKey, float]]:
    for ob in docs or []:
        key = lot_key(ob.get("sku"), ob.get("lotNumber"))
        if key:
            yield key, to_number(ob.get("cost"))


def _purchase_entries(docs: Iterable[dict]) -> Iterator[tuple[LotKey, float]]:
    for po in docs or []:
        for line in po.get("lineItems") or []:
            if not isinstance(line, dict):
                continue
            key = lot_key(line.get("sku"), line.get("lotNumber"))
            if key:
                yield key, purchase_line_unit_cost(line)


def _manufacturing_entries(docs: Iterable[dict]) -> Iterator[tuple[LotKey, float]]:
    for job in docs or []:
        key = lot_key(job.get("sku"), manufacturing_lot(job))
        if key:
            yield key, manufacturing_unit_cost(job)


def _audit_entries(docs: Iterable[dict]) -> Iterator[tuple[LotKey, float]]:
    for adj in docs or []:
        key = lot_key(adj.get("sku"), adj.get("lotNumber"))
        if key:
            yield key, to_number(adj.get("cost"))


@dataclass(frozen=True)
class Tier:
    name: str
    source: str
    entries: Callable[[Iterable[dict]], Iterator[tuple[LotKey, float]]]
    prefer_higher_cost: bool = False


TIERS: tuple[Tier, ...] = (
    Tier("openingBalance", "opening_balances", _opening_entries, prefer_higher_cost=True),
    Tier("purchaseOrder", "purchase_orders", _purchase_entries),
    Tier("manufacturing", "manufacturing_jobs", _manufacturing_entries),
    Tier("auditAdjustment", "audit_adjustments", _audit_entries),
)


class CostIndex(Mapping):
    """Immutable LotKey -> unit cost mapping."""

    def __init__(self, costs: dict, tier_counts: dict):
        self._costs = dict(costs)
        self._tier_counts = dict(tier_counts)

    def __getitem__(self, key):
        return self._costs[key]

    def __iter__(self):
        return iter(self._costs)

    def __len__(self):
        return len(self._costs)

    def __repr__(self):
        return f"CostIndex({len(self._costs)} lots)"

    @property
    def tier_counts(self) -> dict:
        return dict(self._tier_counts)

    def cost_for(self, sku: Any, lot: Any) -> Optional[float]:
        key = lot_key(sku, lot)
        if key is None:
            return None
        return self._costs.get(key)


def build_cost_index(sku_ids: Optional[Iterable[Any]], sources: CostSources) -> CostIndex:
    allowed: Optional[set[str]] = None
    if sku_ids:
        allowed = {s for s in (normalize_ref(x) for x in sku_ids) if s}

    costs: dict[LotKey, float] = {}
    tier_counts: dict[str, int] = {}
    for tier in TIERS:
        written: set[LotKey] = set()
        for key, cost in tier.entries(getattr(sources, tier.source)):
            if allowed is not None and key.sku not in allowed:
                continue
            if key in written:
                if tier.prefer_higher_cost and cost > costs[key]:
                    costs[key] = cost
                continue
            if key in costs:
                continue
            costs[key] = cost
            written.add(key)
        tier_counts[tier.name] = len(written)
    return CostIndex(costs, tier_counts)
