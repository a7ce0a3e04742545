import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from db.sqlite_client import SQLiteClient
from errors import InvalidTimeRange, Overloaded, StorageUnavailable
from ledger import ActionKind, ColorState, LedgerAction
from runtime_state import (
    IdentifierCache,
    IngestJob,
    IngestQueue,
    LivenessWatchdog,
    MachineLaneCoordinator,
    RuntimeState,
)

BASE = datetime(2024, 5, 6, 12, 0, 0)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _FakeLookupClient:
    def __init__(self, machines: Optional[Dict[str, int]] = None) -> None:
        self.machines = dict(machines or {})
        self.calls: List[str] = []

    async def get_machine_id(self, code: str) -> Optional[int]:
        self.calls.append(code)
        return self.machines.get(code)

    async def get_color_id(self, name: str) -> Optional[int]:
        return {"green": 1, "yellow": 2, "red": 3}.get(name)


class _ScriptedLedger:
    """Stands in for StatusLedger; records closes and raises on demand."""

    def __init__(self) -> None:
        self.closes: List[tuple] = []
        self.raise_on_close: Optional[Exception] = None
        self.before_precondition = None
        self.sweep_failures = 0
        self.sweep_calls = 0

    async def close_open(self, machine_id, at, *, precondition=None):
        if self.raise_on_close is not None:
            raise self.raise_on_close
        if self.before_precondition is not None:
            await self.before_precondition(machine_id)
        if precondition is not None and not precondition():
            return LedgerAction(ActionKind.SKIPPED, machine_id, at)
        self.closes.append((machine_id, at))
        return LedgerAction(ActionKind.CLOSED, machine_id, at, closed_interval_id=1)

    async def close_stale_open(self, *, older_than_seconds: float) -> int:
        self.sweep_calls += 1
        if self.sweep_calls <= self.sweep_failures:
            raise StorageUnavailable("database is locked")
        return 3


def _watchdog(ledger: Any, client: Any = None, **overrides: Any) -> LivenessWatchdog:
    options: Dict[str, Any] = {
        "enabled": False,
        "inactivity_seconds": 4.0,
        "boot_retry_attempts": 3,
        "boot_retry_base_seconds": 0.0,
    }
    options.update(overrides)
    return LivenessWatchdog(
        ledger=ledger,
        identifiers=IdentifierCache(client or _FakeLookupClient(), timeout_seconds=1.0),
        **options,
    )


@pytest.mark.asyncio
async def test_identifier_cache_does_not_remember_misses() -> None:
    client = _FakeLookupClient()
    cache = IdentifierCache(client, timeout_seconds=1.0)

    assert await cache.resolve_machine("M7") is None
    client.machines["M7"] = 7
    assert await cache.resolve_machine("M7") == 7
    assert await cache.resolve_machine("M7") == 7

    assert client.calls == ["M7", "M7"]
    assert cache.cached_machine_id("M7") == 7
    assert (await cache.status())["machines"] == 1


@pytest.mark.asyncio
async def test_lanes_serialize_one_machine_but_not_others() -> None:
    lanes = MachineLaneCoordinator()
    release = asyncio.Event()
    order: List[str] = []

    async def _blocked() -> str:
        order.append("m1-first-start")
        await release.wait()
        order.append("m1-first-end")
        return "first"

    async def _quick(tag: str) -> str:
        order.append(tag)
        return tag

    first = asyncio.create_task(lanes.run_write(machine_id=1, operation="a", task=_blocked))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(
        lanes.run_write(machine_id=1, operation="b", task=lambda: _quick("m1-second"))
    )
    other = await lanes.run_write(machine_id=2, operation="c", task=lambda: _quick("m2"))
    await asyncio.sleep(0.01)

    assert other == "m2"
    assert "m1-second" not in order
    assert (await lanes.status())["waiting"] == 1

    release.set()
    await asyncio.gather(first, second)
    assert order == ["m1-first-start", "m2", "m1-first-end", "m1-second"]


@pytest.mark.asyncio
async def test_watchdog_closes_inactive_machine_at_last_heartbeat() -> None:
    ledger = _ScriptedLedger()
    watchdog = _watchdog(ledger)
    await watchdog.touch(1, event_at=BASE, received_at=BASE)
    await watchdog.touch(2, event_at=BASE + timedelta(seconds=3), received_at=BASE + timedelta(seconds=3))

    summary = await watchdog.tick(now=BASE + timedelta(seconds=5))

    assert ledger.closes == [(1, BASE)]
    assert summary["stale"] == 1
    status = await watchdog.status()
    assert status["tracked_machines"] == 1
    assert status["stats"]["closed"] == 1


@pytest.mark.asyncio
async def test_watchdog_closes_stored_interval_at_last_heartbeat(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "watchdog.db"))
    await client.init_db()
    machine = await client.create_machine("M1")
    runtime = RuntimeState(
        client, watchdog_options={"enabled": False, "inactivity_seconds": 4.0}
    )
    t1 = BASE
    t2 = BASE + timedelta(seconds=2)
    try:
        await runtime.ingest("M1", "green", at=t1, received_at=t1)
        await runtime.ingest("M1", "green", at=t2, received_at=t2)

        quiet = await runtime.watchdog.tick(now=t2 + timedelta(seconds=1))
        assert quiet["stale"] == 0

        summary = await runtime.watchdog.tick(now=t2 + timedelta(seconds=5))
        assert summary[str(machine["id"])] == "closed"

        rows = await client.list_intervals(
            machine["id"],
            window_start=BASE - timedelta(hours=1),
            window_end=BASE + timedelta(hours=1),
            now=BASE + timedelta(hours=1),
        )
        assert [(r["machine_id"], r["color"], r["start_time"], r["end_time"]) for r in rows] == [
            (machine["id"], "green", t1, t2),
        ]
        assert (await runtime.watchdog.status())["tracked_machines"] == 0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_watchdog_skips_close_when_fresh_heartbeat_arrives() -> None:
    ledger = _ScriptedLedger()
    watchdog = _watchdog(ledger)
    await watchdog.touch(1, event_at=BASE, received_at=BASE)

    async def _heartbeat(machine_id: int) -> None:
        await watchdog.touch(
            machine_id,
            event_at=BASE + timedelta(seconds=10),
            received_at=BASE + timedelta(seconds=10),
        )

    ledger.before_precondition = _heartbeat
    summary = await watchdog.tick(now=BASE + timedelta(seconds=10))

    assert summary["1"] == "skipped"
    assert ledger.closes == []
    assert await watchdog.last_heartbeat(1) == BASE + timedelta(seconds=10)


@pytest.mark.asyncio
async def test_watchdog_keeps_entry_on_storage_failure_and_drops_on_invalid_range() -> None:
    ledger = _ScriptedLedger()
    watchdog = _watchdog(ledger)
    await watchdog.touch(1, event_at=BASE, received_at=BASE)

    ledger.raise_on_close = StorageUnavailable("timed out")
    await watchdog.tick(now=BASE + timedelta(seconds=10))
    assert (await watchdog.status())["tracked_machines"] == 1

    ledger.raise_on_close = InvalidTimeRange("end before start")
    await watchdog.tick(now=BASE + timedelta(seconds=11))
    status = await watchdog.status()
    assert status["tracked_machines"] == 0
    assert status["stats"]["failed"] == 2


@pytest.mark.asyncio
async def test_watchdog_reconciles_touches_recorded_by_code() -> None:
    ledger = _ScriptedLedger()
    client = _FakeLookupClient({"M1": 1})
    watchdog = _watchdog(ledger, client)

    await watchdog.touch_code("M1", event_at=BASE, received_at=BASE)
    await watchdog.touch_code("GHOST", event_at=BASE, received_at=BASE)
    await watchdog.tick(now=BASE + timedelta(seconds=1))

    status = await watchdog.status()
    assert status["tracked_machines"] == 1
    assert status["pending_codes"] == 1
    assert await watchdog.last_heartbeat(1) == BASE

    await watchdog.tick(now=BASE + timedelta(seconds=10))
    status = await watchdog.status()
    assert status["pending_codes"] == 0
    assert ledger.closes == [(1, BASE)]


@pytest.mark.asyncio
async def test_boot_sweep_retries_with_backoff_then_succeeds() -> None:
    ledger = _ScriptedLedger()
    ledger.sweep_failures = 2
    watchdog = _watchdog(ledger)

    result = await watchdog.run_boot_sweep()

    assert result["ok"] is True
    assert result["closed"] == 3
    assert result["attempts"] == 3


@pytest.mark.asyncio
async def test_boot_sweep_gives_up_after_configured_attempts() -> None:
    ledger = _ScriptedLedger()
    ledger.sweep_failures = 10
    watchdog = _watchdog(ledger)

    result = await watchdog.run_boot_sweep()

    assert result["ok"] is False
    assert ledger.sweep_calls == 3
    assert "database is locked" in result["error"]


@pytest.mark.asyncio
async def test_ingest_queue_runs_jobs_in_order_and_isolates_failures() -> None:
    queue = IngestQueue(maxsize=0, recent_limit=20)
    seen: List[str] = []

    async def _handler(job: IngestJob) -> Dict[str, Any]:
        seen.append(job.machine_code)
        if job.machine_code == "M3":
            raise RuntimeError("boom")
        return {"action": "opened"}

    await queue.ensure_started(_handler)
    try:
        job_ids = []
        for index in range(1, 6):
            result = await queue.enqueue(machine_code=f"M{index}", color="green")
            job_ids.append(result["job_id"])
        await asyncio.wait_for(queue.join(), timeout=5.0)

        assert seen == ["M1", "M2", "M3", "M4", "M5"]
        failed = await queue.get_job(job_id=job_ids[2])
        assert failed["job"]["status"] == "failed"
        assert failed["job"]["error"] == "boom"
        done = await queue.wait_for_job(job_id=job_ids[4], timeout_seconds=1.0)
        assert done["job"]["status"] == "succeeded"

        status = await queue.status()
        assert status["stats"]["succeeded"] == 4
        assert status["stats"]["failed"] == 1
        assert status["queue_depth"] == 0
    finally:
        await queue.shutdown()


@pytest.mark.asyncio
async def test_ingest_queue_rejects_when_full() -> None:
    queue = IngestQueue(maxsize=1, recent_limit=10)
    await queue.enqueue(machine_code="M1", color="green")

    with pytest.raises(Overloaded):
        await queue.enqueue(machine_code="M1", color="red")

    assert (await queue.status())["stats"]["rejected"] == 1
    assert (await queue.get_job(job_id="missing"))["ok"] is False


@pytest.mark.asyncio
async def test_async_ingest_path_applies_and_ignores_unknown_machines(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "runtime.db"))
    await client.init_db()
    machine = await client.create_machine("M1")
    runtime = RuntimeState(client, watchdog_options={"enabled": False})
    await runtime.ensure_started()
    try:
        accepted = await runtime.accept_heartbeat("M1", "green", at=BASE)
        ghost = await runtime.accept_heartbeat("NOPE", "green", at=BASE)

        done = await runtime.ingest_queue.wait_for_job(
            job_id=accepted["job_id"], timeout_seconds=5.0
        )
        ignored = await runtime.ingest_queue.wait_for_job(
            job_id=ghost["job_id"], timeout_seconds=5.0
        )

        assert done["job"]["status"] == "succeeded"
        assert done["job"]["result"]["action"] == "opened"
        assert ignored["job"]["status"] == "ignored"
        assert await runtime.watchdog.last_heartbeat(machine["id"]) == BASE
        current = await runtime.ledger.current_status(machine["id"])
        assert current["color"] == ColorState.GREEN.value
    finally:
        await runtime.shutdown()
        await client.close()
