"""Overview API - all machines at a glance, plus runtime internals."""

from fastapi import APIRouter, Depends

from aggregator import CORE_COLOR_NAMES, as_buckets
from ledger import utc_now_naive
from runtime_state import RuntimeState

from .common import get_runtime_state, ledger_errors

router = APIRouter(tags=["overview"])


@router.get("/overview/today")
async def overview_today(runtime: RuntimeState = Depends(get_runtime_state)):
    now = utc_now_naive()
    today = now.date()
    overview = []
    with ledger_errors("overview_today"):
        for machine in await runtime.client.list_machines():
            current = await runtime.ledger.current_status(machine["id"])
            totals = await runtime.aggregator.daily(
                machine["id"], today, now=now, colors=CORE_COLOR_NAMES
            )
            overview.append(
                {"machine": machine, "current": current, "buckets": as_buckets(totals)}
            )
    return {"date": today.isoformat(), "overview": overview}


@router.get("/runtime/status")
async def runtime_status(runtime: RuntimeState = Depends(get_runtime_state)):
    return await runtime.status()
