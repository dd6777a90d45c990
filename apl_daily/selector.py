"""Pattern-of-the-day selection.

The day's pattern comes from a fixed permutation of the catalog ids, built once
with a seeded Fisher-Yates shuffle and indexed by the number of whole UTC days
since the Unix epoch. The shuffle draws its positions from ``sin(seed + i)``:

    x = sin(seed + i) * 10000
    j = floor((x - floor(x)) * (i + 1))

for ``i`` running from the last index down to 1, swapping ``i`` and ``j``.
With ids 1..253 and seed 39241012 this yields the same list the frame has
always cycled through. Each advance raises a persistent offset that shifts the
index forward for that day and every later day, so an advanced pick is never
repeated by the next day.
"""
from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence, TypeVar

from apl_daily.catalog import PatternCatalog
from apl_daily.errors import CatalogError

T = TypeVar("T")

EPOCH = date(1970, 1, 1)


def seeded_shuffle(items: Sequence[T], seed: int) -> List[T]:
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        x = math.sin(seed + i) * 10000
        j = math.floor((x - math.floor(x)) * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def utc_day(now: datetime) -> date:
    # Naive timestamps are treated as UTC.
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(timezone.utc).date()


def days_since_epoch(now: datetime) -> int:
    return (utc_day(now) - EPOCH).days


class DailySelector:
    def __init__(self, pattern_ids: Sequence[int], seed: int) -> None:
        if not pattern_ids:
            raise CatalogError("cannot select from an empty pattern list")
        self.seed = seed
        self.table: List[int] = seeded_shuffle(sorted(pattern_ids), seed)
        self._positions: Dict[int, int] = {pid: idx for idx, pid in enumerate(self.table)}

    @classmethod
    def for_catalog(cls, catalog: PatternCatalog, seed: int) -> "DailySelector":
        selector = cls(catalog.ids(), seed)
        selector.validate(catalog)
        return selector

    def index_for(self, now: datetime, offset: int = 0) -> int:
        if offset < 0:
            raise ValueError(f"offset must be non-negative, got {offset}")
        return (days_since_epoch(now) + offset) % len(self.table)

    def select(self, now: datetime, offset: int = 0) -> int:
        return self.table[self.index_for(now, offset)]

    def neighbor(self, pattern_id: int, step: int) -> Optional[int]:
        position = self._positions.get(pattern_id)
        if position is None:
            return None
        return self.table[(position + step) % len(self.table)]

    def validate(self, catalog: PatternCatalog) -> None:
        missing = [pid for pid in self.table if pid not in catalog]
        if missing:
            raise CatalogError(f"selector produces ids missing from the catalog: {missing[:10]}")
