"""Sequential, human-readable record ids (``GKF00007``, ``ENQ003``, ``FEE12``).

The next id is one past the highest numeric suffix currently stored, so ids of
deleted records are never handed out again as long as a higher one survives.
This scan is not safe on its own against two creators racing; the storage
backend either serialises creation (file) or rejects the duplicate on insert
so the caller can allocate again (document).
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any


@dataclass(frozen=True)
class IdSpec:
    prefix: str
    width: int = 0

    @property
    def pattern(self) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(self.prefix)}(\d+)$")

    def format(self, number: int) -> str:
        if self.width:
            return f"{self.prefix}{number:0{self.width}d}"
        return f"{self.prefix}{number}"


def highest_suffix(spec: IdSpec, ids: Iterable[Any]) -> int:
    pattern = spec.pattern
    highest = 0
    for value in ids:
        if not isinstance(value, str):
            continue
        match = pattern.match(value)
        if match is None:
            continue
        highest = max(highest, int(match.group(1)))
    return highest


def next_id(spec: IdSpec, existing: Iterable[Mapping[str, Any]]) -> str:
    return spec.format(highest_suffix(spec, (record.get("id") for record in existing)) + 1)


_PRODUCT_PREFIXES = {"Mortgages": "MTG", "Protection": "PRO"}


def product_reference_prefix(category: str | None) -> str:
    return _PRODUCT_PREFIXES.get(category or "", "INS")


def next_product_reference(
    category: str | None,
    existing: Iterable[Mapping[str, Any]],
    today: date | None = None,
) -> str:
    """Customer product reference ``MTG-2025-004``, numbered per prefix and year."""
    year = (today or date.today()).year
    spec = IdSpec(prefix=f"{product_reference_prefix(category)}-{year}-", width=3)
    refs = (record.get("productReferenceNumber") for record in existing)
    return spec.format(highest_suffix(spec, refs) + 1)
