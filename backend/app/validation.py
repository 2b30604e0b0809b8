from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Movement types mirror `backend/app/costing/movements.py`.
MovementType = Annotated[
    Literal["opening", "production", "consumption", "purchase", "sale", "web", "audit"],
    BeforeValidator(_to_lower_str),
]
SortOrder = Annotated[Literal["asc", "desc"], BeforeValidator(_to_lower_str)]


# Lot numbers are free text compared exactly after trimming; never case-folded.
LotNumber = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=128),
]


# Document ids: stored as text; keep the character set conservative.
DocumentId = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$"),
]
