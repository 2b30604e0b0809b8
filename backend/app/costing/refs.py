"""
Reference normalization.

Documents point at SKUs (and other entities) either with a bare identifier
(`"60f1..."`) or with an embedded object carrying the id plus display fields
(`{"_id": "60f1...", "name": "Kratom 1kg"}`). Typed ids exported as extended
JSON show up as `{"$oid": "60f1..."}`.

`parse_ref` is the only place that looks at the raw shape; everything else
compares the `key` it produces.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")

# Looked up in order on embedded objects.
_ID_FIELDS = ("_id", "$oid", "id")


@dataclass(frozen=True)
class RawId:
    value: str

    @property
    def key(self) -> str:
        return self.value


@dataclass(frozen=True)
class Embedded:
    id: str

    @property
    def key(self) -> str:
        return self.id


Reference = Union[RawId, Embedded]


def _scalar_id(v: Any) -> Optional[str]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (str, int)):
        s = str(v).strip()
        return s or None
    return None


def _embedded_id(obj: dict, depth: int = 0) -> Optional[str]:
    if depth > 3:
        return None
    for name in _ID_FIELDS:
        if name not in obj:
            continue
        inner = obj[name]
        if isinstance(inner, dict):
            return _embedded_id(inner, depth + 1)
        return _scalar_id(inner)
    return None


def parse_ref(value: Any) -> Optional[Reference]:
    if isinstance(value, dict):
        ident = _embedded_id(value)
        if ident is None:
            return None
        return Embedded(id=ident)
    ident = _scalar_id(value)
    if ident is None:
        return None
    return RawId(ident)


def normalize_ref(value: Any) -> Optional[str]:
    ref = parse_ref(value)
    return ref.key if ref is not None else None


def normalize_lot(value: Any) -> Optional[str]:
    # Lot numbers are free text: trimmed, never case-folded.
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    s = str(value).strip()
    return s or None


def same_ref(a: Any, b: Any) -> bool:
    ka = normalize_ref(a)
    return ka is not None and ka == normalize_ref(b)


def is_object_id(value: Any) -> bool:
    return isinstance(value, str) and bool(OBJECT_ID_RE.match(value))


def identifier_forms(ids: Iterable[Any]) -> list[Any]:
    """
    Values to match a stored reference field against: the raw string, plus the
    typed `{"$oid": ...}` form when the id looks like an ObjectId. The same
    logical SKU can be stored either way depending on which collection wrote it.
    """
    out: list[Any] = []
    seen: set[str] = set()
    for raw in ids or []:
        ident = normalize_ref(raw)
        if not ident:
            continue
        forms: list[Any] = [ident]
        if is_object_id(ident):
            forms.append({"$oid": ident})
        for f in forms:
            k = json.dumps(f, sort_keys=True)
            if k not in seen:
                seen.add(k)
                out.append(f)
    return out
