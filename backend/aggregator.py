"""
Per-color duration rollups over stored status intervals.

Each stored interval is clipped to the query window; open intervals are
treated as running until `now`. Daily, weekly and monthly rollups are the
same window query repeated once per day.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ledger import TRACKED_COLORS, day_window, utc_now_naive

# Kept in every breakdown for older dashboards; the ledger never writes them.
LEGACY_COLORS: Sequence[str] = ("blue", "off")

CORE_COLOR_NAMES: Sequence[str] = tuple(color.value for color in TRACKED_COLORS)
ALL_COLOR_NAMES: Sequence[str] = tuple(CORE_COLOR_NAMES) + tuple(LEGACY_COLORS)


def overlap_seconds(
    start: datetime,
    end: Optional[datetime],
    window_start: datetime,
    window_end: datetime,
    now: datetime,
) -> int:
    effective_end = end if end is not None else now
    clipped_start = max(start, window_start)
    clipped_end = min(effective_end, window_end)
    if clipped_end <= clipped_start:
        return 0
    return int((clipped_end - clipped_start).total_seconds())


def sum_by_color(
    intervals: Iterable[Dict[str, Any]],
    window_start: datetime,
    window_end: datetime,
    now: datetime,
    colors: Sequence[str] = ALL_COLOR_NAMES,
) -> Dict[str, int]:
    totals = {name: 0 for name in colors}
    for row in intervals:
        name = row.get("color")
        if name not in totals:
            continue
        totals[name] += overlap_seconds(
            row["start_time"], row.get("end_time"), window_start, window_end, now
        )
    return totals


def as_buckets(totals: Dict[str, int]) -> List[Dict[str, Any]]:
    return [{"color": name, "seconds": seconds} for name, seconds in totals.items()]


class OverlapAggregator:
    def __init__(self, client: Any) -> None:
        self._client = client

    async def seconds_by_color(
        self,
        machine_id: int,
        window_start: datetime,
        window_end: datetime,
        *,
        now: Optional[datetime] = None,
        colors: Sequence[str] = ALL_COLOR_NAMES,
    ) -> Dict[str, int]:
        if window_end <= window_start:
            return {name: 0 for name in colors}
        current = now or utc_now_naive()
        intervals = await self._client.list_intervals(
            machine_id,
            window_start=window_start,
            window_end=window_end,
            now=current,
        )
        return sum_by_color(intervals, window_start, window_end, current, colors)

    async def daily(
        self,
        machine_id: int,
        day: date,
        *,
        now: Optional[datetime] = None,
        colors: Sequence[str] = ALL_COLOR_NAMES,
    ) -> Dict[str, int]:
        window_start, window_end = day_window(day)
        return await self.seconds_by_color(
            machine_id, window_start, window_end, now=now, colors=colors
        )

    async def days(
        self,
        machine_id: int,
        first_day: date,
        count: int,
        *,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        current = now or utc_now_naive()
        out: List[Dict[str, Any]] = []
        for offset in range(max(0, count)):
            day = first_day + timedelta(days=offset)
            totals = await self.daily(machine_id, day, now=current)
            out.append({"date": day.isoformat(), "buckets": as_buckets(totals)})
        return out

    async def weekly(
        self, machine_id: int, week_start: date, *, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        return await self.days(machine_id, week_start, 7, now=now)

    async def monthly(
        self,
        machine_id: int,
        year: int,
        month: int,
        *,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        _, day_count = calendar.monthrange(year, month)
        return await self.days(machine_id, date(year, month, 1), day_count, now=now)
