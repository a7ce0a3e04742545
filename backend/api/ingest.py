"""
Ingest API - device heartbeats into the status ledger.

`/ingest`, `/ingest/now` and `/ingest/upsert` apply synchronously and report
the ledger action. `/ingest/async` acknowledges immediately and leaves the
write to the ingest queue.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from errors import Overloaded
from ledger import TRACKED_COLORS, ColorState
from runtime_state import RuntimeState

from .common import bad_request, get_runtime_state, ledger_errors, optional_instant

router = APIRouter(prefix="/ingest", tags=["ingest"])

_STRICT_COLORS = {color.value: color for color in TRACKED_COLORS}


class HeartbeatRequest(BaseModel):
    machine_code: Optional[str] = None
    color: Optional[str] = None
    at: Optional[str] = None


class UpsertRequest(BaseModel):
    machine_code: Optional[str] = None
    color: Optional[str] = None
    ts: Optional[str] = None


def _require_code(value: Optional[str]) -> str:
    code = (value or "").strip()
    if not code:
        raise bad_request("machine_code required")
    return code


@router.post("")
async def ingest(
    payload: HeartbeatRequest,
    runtime: RuntimeState = Depends(get_runtime_state),
):
    code = _require_code(payload.machine_code)
    at = optional_instant(payload.at, "at")
    with ledger_errors("ingest"):
        action = await runtime.ingest(code, payload.color, at=at)
    return {"ok": True, "machine_code": code, **action.to_payload()}


@router.post("/now")
async def ingest_now(
    payload: HeartbeatRequest,
    runtime: RuntimeState = Depends(get_runtime_state),
):
    code = _require_code(payload.machine_code)
    if not (payload.color or "").strip():
        raise bad_request("color required")
    with ledger_errors("ingest_now"):
        action = await runtime.ingest(code, payload.color)
    return {"ok": True, "machine_code": code, **action.to_payload()}


@router.post("/upsert")
async def ingest_upsert(
    payload: UpsertRequest,
    runtime: RuntimeState = Depends(get_runtime_state),
):
    code = _require_code(payload.machine_code)
    color: Optional[ColorState] = _STRICT_COLORS.get(payload.color or "")
    if color is None:
        raise bad_request("bad color")
    at = optional_instant(payload.ts, "ts")
    with ledger_errors("ingest_upsert"):
        action = await runtime.ingest(code, color, at=at)
    return {"ok": True, "machine_code": code, **action.to_payload()}


@router.post("/async", status_code=status.HTTP_202_ACCEPTED)
async def ingest_async(
    payload: HeartbeatRequest,
    runtime: RuntimeState = Depends(get_runtime_state),
):
    code = _require_code(payload.machine_code)
    at = optional_instant(payload.at, "at")
    try:
        return await runtime.accept_heartbeat(code, payload.color, at=at)
    except Overloaded as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.to_detail(),
        ) from exc


@router.get("/jobs/{job_id}")
async def get_ingest_job(
    job_id: str,
    runtime: RuntimeState = Depends(get_runtime_state),
):
    result = await runtime.ingest_queue.get_job(job_id=job_id)
    if not result.get("ok"):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "reason": str(result.get("error") or "job not found")},
        )
    return result["job"]
