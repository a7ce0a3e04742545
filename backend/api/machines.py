"""
Machines API - read-only views over the status ledger.

Per-color breakdowns always list green, yellow, red, blue and off; the
last two are legacy placeholders the ledger never writes.
"""

import re
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledger import day_window, utc_now_naive
from aggregator import as_buckets
from runtime_state import RuntimeState

from .common import (
    bad_request,
    get_runtime_state,
    ledger_errors,
    require_day,
    require_instant,
)

router = APIRouter(tags=["machines"])

_MONTH_PATTERN = re.compile(r"^(?P<year>\d{4})-(?P<month>\d{2})$")


@router.get("/health/db")
async def health_db(runtime: RuntimeState = Depends(get_runtime_state)):
    try:
        await runtime.client.ping()
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "db_unavailable", "reason": str(exc)},
        ) from exc
    return {"ok": True, "db": "sqlite"}


@router.get("/colors")
async def list_colors(runtime: RuntimeState = Depends(get_runtime_state)):
    with ledger_errors("list_colors"):
        return await runtime.client.list_colors()


@router.get("/machines")
async def list_machines(runtime: RuntimeState = Depends(get_runtime_state)):
    with ledger_errors("list_machines"):
        return await runtime.client.list_machines()


@router.get("/machines/{code}/status/current")
async def current_status(code: str, runtime: RuntimeState = Depends(get_runtime_state)):
    with ledger_errors("current_status"):
        machine_id = await runtime.require_machine(code)
        current = await runtime.ledger.current_status(machine_id)
    return {"machine": code, **current}


@router.get("/machines/{code}/status/by-date")
async def status_by_date(
    code: str,
    date: Optional[str] = Query(None),
    runtime: RuntimeState = Depends(get_runtime_state),
):
    day = require_day(date)
    with ledger_errors("status_by_date"):
        machine_id = await runtime.require_machine(code)
        totals = await runtime.aggregator.daily(machine_id, day)
    return as_buckets(totals)


@router.get("/machines/{code}/status/weekly")
async def status_weekly(
    code: str,
    week_start: Optional[str] = Query(None),
    runtime: RuntimeState = Depends(get_runtime_state),
):
    first_day = require_day(week_start, "week_start")
    with ledger_errors("status_weekly"):
        machine_id = await runtime.require_machine(code)
        return await runtime.aggregator.weekly(machine_id, first_day)


@router.get("/machines/{code}/status/by-month")
async def status_by_month(
    code: str,
    month: Optional[str] = Query(None),
    runtime: RuntimeState = Depends(get_runtime_state),
):
    if not month:
        raise bad_request("month required")
    match = _MONTH_PATTERN.match(month.strip())
    if not match or not 1 <= int(match.group("month")) <= 12:
        raise bad_request(f"Invalid month (expected YYYY-MM): {month!r}")
    with ledger_errors("status_by_month"):
        machine_id = await runtime.require_machine(code)
        return await runtime.aggregator.monthly(
            machine_id, int(match.group("year")), int(match.group("month"))
        )


@router.get("/machines/{code}/timeline")
async def timeline_for_day(
    code: str,
    date: Optional[str] = Query(None),
    runtime: RuntimeState = Depends(get_runtime_state),
):
    window_start, window_end = day_window(require_day(date))
    with ledger_errors("timeline"):
        machine_id = await runtime.require_machine(code)
        return await runtime.ledger.timeline(machine_id, window_start, window_end)


@router.get("/machines/{code}/timeline/span")
async def timeline_span(
    code: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    runtime: RuntimeState = Depends(get_runtime_state),
):
    window_start = require_instant(start, "start")
    window_end = require_instant(end, "end")
    if window_end <= window_start:
        raise bad_request("end must be after start")
    if window_end - window_start > timedelta(days=366):
        raise bad_request("span longer than 366 days")
    with ledger_errors("timeline_span"):
        machine_id = await runtime.require_machine(code)
        return await runtime.ledger.timeline(
            machine_id, window_start, window_end, now=utc_now_naive()
        )
