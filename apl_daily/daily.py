from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from apl_daily.catalog import Pattern, PatternCatalog
from apl_daily.errors import CatalogError
from apl_daily.logs import EventLog, default_event_log
from apl_daily.notifications import DeliveryOutcome, Notification, NotificationDispatcher, summarize
from apl_daily.selector import DailySelector, utc_day
from apl_daily.store import StateStore, StoreKeys


def has_changed(previous_id: Optional[int], current_id: int) -> bool:
    return previous_id is None or previous_id != current_id


def pattern_deep_link(app_url: str, pattern_id: int) -> str:
    return f"{app_url.rstrip('/')}/frames/pattern/{pattern_id}"


class DailyPattern:
    """Today's pattern, honoring the advance counters kept in the store.

    ``run_count:{date}`` numbers the advances within one UTC day and expires
    with it. ``run_offset`` counts every advance ever made and never expires;
    selection adds it to the day index, so the day after an advance moves on
    to a new pattern instead of repeating the advanced one.
    """

    def __init__(
        self,
        store: StateStore,
        keys: StoreKeys,
        catalog: PatternCatalog,
        selector: DailySelector,
        run_counter_ttl_seconds: int = 24 * 60 * 60,
    ) -> None:
        self.store = store
        self.keys = keys
        self.catalog = catalog
        self.selector = selector
        self.run_counter_ttl_seconds = run_counter_ttl_seconds

    async def _counter(self, key: str) -> int:
        raw = await self.store.get(key)
        if raw is None:
            return 0
        try:
            return max(0, int(raw))
        except ValueError:
            return 0

    async def run_number(self, now: datetime) -> int:
        return await self._counter(self.keys.run_count(utc_day(now)))

    async def offset(self) -> int:
        return await self._counter(self.keys.run_offset())

    async def advance(self, now: datetime) -> Tuple[int, int]:
        """Move to the next pattern; returns ``(run, offset)`` after the bump."""
        offset = await self.store.increment(self.keys.run_offset())
        key = self.keys.run_count(utc_day(now))
        run = await self.store.increment(key)
        await self.store.expire(key, self.run_counter_ttl_seconds)
        return run, offset

    def pattern_for(self, now: datetime, offset: int = 0) -> Pattern:
        pattern_id = self.selector.select(now, offset)
        pattern = self.catalog.get(pattern_id)
        if pattern is None:
            raise CatalogError(f"selected pattern {pattern_id} is not in the catalog")
        return pattern

    async def current(self, now: datetime) -> Pattern:
        return self.pattern_for(now, await self.offset())


@dataclass
class CheckResult:
    pattern_id: int
    previous_id: Optional[int]
    changed: bool
    run: int = 0
    offset: int = 0
    outcomes: List[DeliveryOutcome] = field(default_factory=list)

    def summary(self) -> dict:
        return summarize(self.outcomes)

    def to_dict(self) -> dict:
        return {
            "patternId": self.pattern_id,
            "previousPatternId": self.previous_id,
            "changed": self.changed,
            "run": self.run,
            "offset": self.offset,
            "notifications": self.summary(),
        }


class PatternCheck:
    def __init__(
        self,
        daily: DailyPattern,
        dispatcher: NotificationDispatcher,
        app_url: str,
        log: Optional[EventLog] = None,
    ) -> None:
        self.daily = daily
        self.dispatcher = dispatcher
        self.app_url = app_url
        self.log = log or default_event_log

    async def last_pattern_id(self) -> Optional[int]:
        raw = await self.daily.store.get(self.daily.keys.last_pattern_id())
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            self.log.error("last_pattern_id_invalid", value=raw)
            return None

    def notification_for(self, pattern: Pattern, now: datetime, run: int) -> Notification:
        notification_id = f"pattern-{pattern.id}-{utc_day(now).isoformat()}"
        if run:
            notification_id = f"{notification_id}-{run}"
        return Notification(
            title=pattern.title,
            body=f"Check out Pattern! {pattern.id}",
            target_url=pattern_deep_link(self.app_url, pattern.id),
            notification_id=notification_id,
        )

    async def run(self, now: datetime, advance: bool = False) -> CheckResult:
        if advance:
            run, offset = await self.daily.advance(now)
        else:
            run, offset = await self.daily.run_number(now), await self.daily.offset()
        pattern = self.daily.pattern_for(now, offset)
        previous_id = await self.last_pattern_id()
        result = CheckResult(
            pattern_id=pattern.id, previous_id=previous_id, changed=False, run=run, offset=offset
        )

        if not has_changed(previous_id, pattern.id):
            self.log.emit("pattern_unchanged", pattern_id=pattern.id)
            return result

        self.log.emit("pattern_changed", pattern_id=pattern.id, previous_id=previous_id, run=run)
        result.changed = True
        result.outcomes = await self.dispatcher.broadcast(self.notification_for(pattern, now, run))
        # Written after dispatch: a crash in between re-notifies on the next run.
        await self.daily.store.set(self.daily.keys.last_pattern_id(), str(pattern.id))
        return result
