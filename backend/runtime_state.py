"""
Runtime state for the status ledger service.

This module provides:
1) Machine lanes: serial ledger mutations per machine.
2) Identifier cache: memoized machine code / color name resolution.
3) Liveness watchdog: boot-time crash recovery and inactivity closure.
4) Ingest queue: single-consumer FIFO behind the fast-ack endpoint.

RuntimeState owns one instance of each. It is built in the app lifespan,
kept on app.state and torn down at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from aggregator import OverlapAggregator
from errors import InvalidTimeRange, NotFound, Overloaded, StorageUnavailable
from ledger import (
    ActionKind,
    ColorState,
    LedgerAction,
    StatusLedger,
    format_instant,
    normalize_color,
    utc_now_naive,
)

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MachineLaneCoordinator:
    """
    One lock per machine id. Mutations for the same machine run serially;
    different machines never wait on each other.
    """

    def __init__(self) -> None:
        self._wait_warn_ms = _env_int("LEDGER_LANE_WAIT_WARN_MS", 2000, minimum=1)
        self._locks: Dict[int, asyncio.Lock] = {}
        self._waiting: Dict[int, int] = {}
        self._active = 0
        self._guard = asyncio.Lock()

    async def _get_lock(self, machine_id: int) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(machine_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[machine_id] = lock
            return lock

    async def run_write(
        self,
        *,
        machine_id: int,
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        lock = await self._get_lock(machine_id)
        wait_start = time.monotonic()
        async with self._guard:
            self._waiting[machine_id] = self._waiting.get(machine_id, 0) + 1

        try:
            await lock.acquire()
        finally:
            async with self._guard:
                self._waiting[machine_id] = max(0, self._waiting.get(machine_id, 1) - 1)

        try:
            waited_ms = int((time.monotonic() - wait_start) * 1000)
            if waited_ms >= self._wait_warn_ms:
                logger.warning(
                    "lane wait machine=%s operation=%s waited_ms=%s",
                    machine_id,
                    operation,
                    waited_ms,
                )
            async with self._guard:
                self._active += 1
            try:
                return await task()
            finally:
                async with self._guard:
                    self._active = max(0, self._active - 1)
        finally:
            lock.release()

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            busy = {mid: count for mid, count in self._waiting.items() if count > 0}
            return {
                "lanes": len(self._locks),
                "active": self._active,
                "waiting": sum(busy.values()),
                "waiting_machines": len(busy),
                "max_waiting": max(busy.values(), default=0),
                "wait_warn_ms": self._wait_warn_ms,
            }


class IdentifierCache:
    """Memoized code -> id lookups. Misses are never cached."""

    def __init__(self, client: Any, *, timeout_seconds: Optional[float] = None) -> None:
        self._client = client
        self._timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else _env_float("LEDGER_STORAGE_TIMEOUT_SECONDS", 5.0, minimum=0.1)
        )
        self._machines: Dict[str, int] = {}
        self._colors: Dict[str, int] = {}
        self._guard = asyncio.Lock()

    def cached_machine_id(self, code: str) -> Optional[int]:
        return self._machines.get(code)

    async def resolve_machine(self, code: str) -> Optional[int]:
        key = (code or "").strip()
        if not key:
            return None
        return await self._resolve(self._machines, key, self._client.get_machine_id)

    async def resolve_color(self, name: str) -> Optional[int]:
        key = (name or "").strip().lower()
        if not key:
            return None
        return await self._resolve(self._colors, key, self._client.get_color_id)

    async def _resolve(
        self,
        table: Dict[str, int],
        key: str,
        fetch: Callable[[str], Awaitable[Optional[int]]],
    ) -> Optional[int]:
        async with self._guard:
            cached = table.get(key)
        if cached is not None:
            return cached
        try:
            value = await asyncio.wait_for(fetch(key), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(f"lookup of {key!r} timed out") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"lookup of {key!r} failed: {exc}") from exc
        if value is None:
            return None
        async with self._guard:
            table.setdefault(key, value)
            return table[key]

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {"machines": len(self._machines), "colors": len(self._colors)}


@dataclass
class LivenessRecord:
    last_heartbeat: datetime
    touched_at: datetime


class LivenessWatchdog:
    """
    Closes intervals for machines that stopped reporting.

    Staleness is judged on receipt time (touched_at); the interval is closed
    at last_heartbeat, the event instant the device last confirmed its state,
    so a reporting gap is never credited to the previous color.
    """

    def __init__(
        self,
        *,
        ledger: StatusLedger,
        identifiers: IdentifierCache,
        enabled: Optional[bool] = None,
        tick_seconds: Optional[float] = None,
        inactivity_seconds: Optional[float] = None,
        boot_stale_seconds: Optional[float] = None,
        boot_retry_attempts: Optional[int] = None,
        boot_retry_base_seconds: Optional[float] = None,
    ) -> None:
        self._ledger = ledger
        self._identifiers = identifiers
        self._enabled = (
            enabled if enabled is not None else _env_bool("WATCHDOG_ENABLED", True)
        )
        self._tick_seconds = (
            tick_seconds
            if tick_seconds is not None
            else _env_float("WATCHDOG_TICK_SECONDS", 1.0, minimum=0.05)
        )
        self._inactivity_seconds = (
            inactivity_seconds
            if inactivity_seconds is not None
            else _env_float("WATCHDOG_INACTIVITY_SECONDS", 4.0, minimum=0.1)
        )
        self._boot_stale_seconds = (
            boot_stale_seconds
            if boot_stale_seconds is not None
            else _env_float("WATCHDOG_BOOT_STALE_SECONDS", 300.0)
        )
        self._boot_retry_attempts = (
            boot_retry_attempts
            if boot_retry_attempts is not None
            else _env_int("WATCHDOG_BOOT_RETRY_ATTEMPTS", 5, minimum=1)
        )
        self._boot_retry_base_seconds = (
            boot_retry_base_seconds
            if boot_retry_base_seconds is not None
            else _env_float("WATCHDOG_BOOT_RETRY_BASE_SECONDS", 1.0)
        )

        self._by_id: Dict[int, LivenessRecord] = {}
        self._by_code: Dict[str, LivenessRecord] = {}
        self._guard = asyncio.Lock()
        self._runner: Optional[asyncio.Task] = None

        self._ticks_total = 0
        self._closed_total = 0
        self._failed_total = 0
        self._last_error: Optional[str] = None
        self._last_tick_at: Optional[str] = None
        self._boot_sweep: Dict[str, Any] = {"ok": False, "reason": "not_started"}

    @property
    def inactivity_seconds(self) -> float:
        return self._inactivity_seconds

    async def ensure_started(self) -> None:
        if not self._enabled:
            return
        async with self._guard:
            if self._runner is None or self._runner.done():
                self._runner = asyncio.create_task(
                    self._run_loop(), name="runtime-liveness-watchdog"
                )

    async def shutdown(self) -> None:
        async with self._guard:
            runner = self._runner
            self._runner = None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    async def touch(
        self,
        machine_id: int,
        *,
        event_at: Optional[datetime] = None,
        received_at: Optional[datetime] = None,
    ) -> None:
        received = received_at or utc_now_naive()
        record = LivenessRecord(last_heartbeat=event_at or received, touched_at=received)
        async with self._guard:
            self._merge_locked(machine_id, record)

    async def touch_code(
        self,
        machine_code: str,
        *,
        event_at: Optional[datetime] = None,
        received_at: Optional[datetime] = None,
    ) -> None:
        """Record a touch for a code whose id is not resolved yet."""
        received = received_at or utc_now_naive()
        record = LivenessRecord(last_heartbeat=event_at or received, touched_at=received)
        async with self._guard:
            previous = self._by_code.get(machine_code)
            self._by_code[machine_code] = (
                record if previous is None else self._newer(previous, record)
            )

    async def adopt_code(self, machine_code: str, machine_id: int) -> None:
        """Move a pending by-code touch into the by-id table."""
        async with self._guard:
            record = self._by_code.pop(machine_code, None)
            if record is not None:
                self._merge_locked(machine_id, record)

    async def last_heartbeat(self, machine_id: int) -> Optional[datetime]:
        async with self._guard:
            record = self._by_id.get(machine_id)
            return record.last_heartbeat if record else None

    async def run_boot_sweep(self) -> Dict[str, Any]:
        delay = self._boot_retry_base_seconds
        last_error = ""
        for attempt in range(1, self._boot_retry_attempts + 1):
            try:
                closed = await self._ledger.close_stale_open(
                    older_than_seconds=self._boot_stale_seconds
                )
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "boot sweep attempt %s/%s failed: %s",
                    attempt,
                    self._boot_retry_attempts,
                    last_error,
                )
                if attempt < self._boot_retry_attempts:
                    await asyncio.sleep(delay)
                    delay *= 2
                continue
            self._boot_sweep = {
                "ok": True,
                "closed": closed,
                "attempts": attempt,
                "stale_seconds": self._boot_stale_seconds,
                "finished_at": _utc_iso_now(),
            }
            logger.info("boot sweep closed %s stale open interval(s)", closed)
            return dict(self._boot_sweep)

        self._last_error = last_error
        self._boot_sweep = {
            "ok": False,
            "closed": 0,
            "attempts": self._boot_retry_attempts,
            "error": last_error,
            "finished_at": _utc_iso_now(),
        }
        logger.error("boot sweep gave up after %s attempts", self._boot_retry_attempts)
        return dict(self._boot_sweep)

    async def tick(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        current = now or utc_now_naive()
        cutoff = current - timedelta(seconds=self._inactivity_seconds)
        await self._reconcile_codes(cutoff)

        async with self._guard:
            stale = [
                (machine_id, record)
                for machine_id, record in self._by_id.items()
                if record.touched_at < cutoff
            ]

        outcomes: List[Any] = []
        if stale:
            outcomes = await asyncio.gather(
                *(self._close_inactive(mid, record) for mid, record in stale),
                return_exceptions=True,
            )

        summary: Dict[str, Any] = {"checked_at": format_instant(current), "stale": len(stale)}
        for (machine_id, _), outcome in zip(stale, outcomes):
            if isinstance(outcome, BaseException):
                outcome = f"error:{outcome.__class__.__name__}"
            summary[str(machine_id)] = outcome

        self._ticks_total += 1
        self._last_tick_at = _utc_iso_now()
        return summary

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "enabled": self._enabled,
                "running": self._runner is not None and not self._runner.done(),
                "tick_seconds": self._tick_seconds,
                "inactivity_seconds": self._inactivity_seconds,
                "tracked_machines": len(self._by_id),
                "pending_codes": len(self._by_code),
                "boot_sweep": dict(self._boot_sweep),
                "stats": {
                    "ticks": self._ticks_total,
                    "closed": self._closed_total,
                    "failed": self._failed_total,
                },
                "last_tick_at": self._last_tick_at,
                "last_error": self._last_error,
            }

    async def _run_loop(self) -> None:
        await self.run_boot_sweep()
        while True:
            await asyncio.sleep(self._tick_seconds)
            try:
                await self.tick()
            except Exception as exc:
                self._last_error = str(exc)
                logger.exception("watchdog tick failed")

    async def _reconcile_codes(self, cutoff: datetime) -> None:
        async with self._guard:
            pending = list(self._by_code.items())
        if not pending:
            return

        async def _resolve(code: str) -> Optional[int]:
            try:
                return await self._identifiers.resolve_machine(code)
            except Exception as exc:
                logger.warning("liveness reconcile for code=%s failed: %s", code, exc)
                return None

        resolved = await asyncio.gather(*(_resolve(code) for code, _ in pending))
        async with self._guard:
            for (code, _), machine_id in zip(pending, resolved):
                record = self._by_code.get(code)
                if record is None:
                    continue
                if machine_id is not None:
                    self._by_code.pop(code, None)
                    self._merge_locked(machine_id, record)
                elif record.touched_at < cutoff:
                    # Never resolved and already stale: nothing to close.
                    self._by_code.pop(code, None)

    async def _close_inactive(self, machine_id: int, record: LivenessRecord) -> str:
        def _still_stale() -> bool:
            return self._by_id.get(machine_id) is record

        try:
            action = await self._ledger.close_open(
                machine_id, record.last_heartbeat, precondition=_still_stale
            )
        except InvalidTimeRange as exc:
            logger.warning("inactive close rejected machine=%s: %s", machine_id, exc)
            await self._forget(machine_id, record)
            self._failed_total += 1
            return "invalid_time_range"
        except Exception as exc:
            # Keep the entry; the next tick retries.
            self._failed_total += 1
            self._last_error = str(exc)
            logger.warning("inactive close failed machine=%s: %s", machine_id, exc)
            return "failed"

        if action.kind is ActionKind.SKIPPED:
            return action.kind.value
        await self._forget(machine_id, record)
        if action.kind is ActionKind.CLOSED:
            self._closed_total += 1
            logger.info(
                "machine=%s inactive; closed interval %s at %s",
                machine_id,
                action.closed_interval_id,
                format_instant(record.last_heartbeat),
            )
        return action.kind.value

    async def _forget(self, machine_id: int, record: LivenessRecord) -> None:
        async with self._guard:
            if self._by_id.get(machine_id) is record:
                self._by_id.pop(machine_id, None)

    def _merge_locked(self, machine_id: int, record: LivenessRecord) -> None:
        previous = self._by_id.get(machine_id)
        self._by_id[machine_id] = (
            record if previous is None else self._newer(previous, record)
        )

    @staticmethod
    def _newer(previous: LivenessRecord, incoming: LivenessRecord) -> LivenessRecord:
        return LivenessRecord(
            last_heartbeat=max(previous.last_heartbeat, incoming.last_heartbeat),
            touched_at=max(previous.touched_at, incoming.touched_at),
        )


@dataclass
class IngestJob:
    job_id: str
    machine_code: str
    color: str
    at: Optional[datetime]
    requested_at: str


JobHandler = Callable[[IngestJob], Awaitable[Dict[str, Any]]]


class IngestQueue:
    """Single-consumer FIFO. Jobs run one at a time in submission order."""

    _FINAL_STATES: Set[str] = {"succeeded", "ignored", "failed"}

    def __init__(
        self,
        *,
        maxsize: Optional[int] = None,
        recent_limit: Optional[int] = None,
    ) -> None:
        self._queue_maxsize = (
            maxsize if maxsize is not None else _env_int("INGEST_QUEUE_MAXSIZE", 0)
        )
        self._recent_limit = (
            recent_limit
            if recent_limit is not None
            else _env_int("INGEST_RECENT_JOBS", 50, minimum=5)
        )
        self._queue: asyncio.Queue[IngestJob] = asyncio.Queue(
            maxsize=max(0, self._queue_maxsize)
        )
        self._handler: Optional[JobHandler] = None
        self._runner: Optional[asyncio.Task] = None
        self._guard = asyncio.Lock()

        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._job_events: Dict[str, asyncio.Event] = {}
        self._recent_job_ids: Deque[str] = deque()

        self._enqueued_total = 0
        self._succeeded_total = 0
        self._ignored_total = 0
        self._failed_total = 0
        self._rejected_total = 0
        self._active_job_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_finished_at: Optional[str] = None

    async def ensure_started(self, handler: JobHandler) -> None:
        async with self._guard:
            self._handler = handler
            if self._runner is None or self._runner.done():
                self._runner = asyncio.create_task(
                    self._run_loop(), name="runtime-ingest-queue"
                )

    async def shutdown(self) -> None:
        async with self._guard:
            runner = self._runner
            self._runner = None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    async def enqueue(
        self,
        *,
        machine_code: str,
        color: str,
        at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        requested_at = _utc_iso_now()
        job = IngestJob(
            job_id=f"ing-{uuid.uuid4().hex[:10]}",
            machine_code=machine_code,
            color=color,
            at=at,
            requested_at=requested_at,
        )
        async with self._guard:
            try:
                self._queue.put_nowait(job)
            except asyncio.QueueFull:
                self._rejected_total += 1
                raise Overloaded(
                    "ingest queue is full",
                    queue_depth=self._queue.qsize(),
                    queue_maxsize=self._queue_maxsize,
                )
            self._job_events[job.job_id] = asyncio.Event()
            self._jobs[job.job_id] = {
                "job_id": job.job_id,
                "machine_code": machine_code,
                "color": color,
                "at": format_instant(at),
                "requested_at": requested_at,
                "status": "queued",
            }
            self._enqueued_total += 1
            return {"queued": True, "job_id": job.job_id}

    async def wait_for_job(
        self, *, job_id: str, timeout_seconds: float = 10.0
    ) -> Dict[str, Any]:
        async with self._guard:
            job = dict(self._jobs.get(job_id, {}))
            event = self._job_events.get(job_id)
        if not job:
            return {"ok": False, "error": f"job '{job_id}' not found."}
        if job.get("status") in self._FINAL_STATES or event is None:
            return {"ok": True, "job": job}
        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.1, float(timeout_seconds)))
        except asyncio.TimeoutError:
            pass
        async with self._guard:
            current = dict(self._jobs.get(job_id, {}))
        return {"ok": True, "job": current}

    async def get_job(self, *, job_id: str) -> Dict[str, Any]:
        async with self._guard:
            job = self._jobs.get(job_id)
            if not job:
                return {"ok": False, "error": f"job '{job_id}' not found."}
            return {"ok": True, "job": dict(job)}

    async def join(self) -> None:
        await self._queue.join()

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            recent_jobs = [
                dict(self._jobs[job_id])
                for job_id in self._recent_job_ids
                if job_id in self._jobs
            ]
            return {
                "running": self._runner is not None and not self._runner.done(),
                "queue_depth": self._queue.qsize(),
                "queue_maxsize": self._queue_maxsize,
                "active_job_id": self._active_job_id,
                "stats": {
                    "enqueued": self._enqueued_total,
                    "succeeded": self._succeeded_total,
                    "ignored": self._ignored_total,
                    "failed": self._failed_total,
                    "rejected": self._rejected_total,
                },
                "last_error": self._last_error,
                "last_finished_at": self._last_finished_at,
                "recent_jobs": recent_jobs,
            }

    async def _run_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._mark_running(job)
                handler = self._handler
                if handler is None:
                    raise RuntimeError("ingest queue started without a handler.")
                payload = await handler(job)
            except asyncio.CancelledError:
                await self._mark_finished(job, status="failed", error="worker_cancelled")
                raise
            except Exception as exc:
                logger.warning(
                    "ingest job %s (machine_code=%s) failed: %s",
                    job.job_id,
                    job.machine_code,
                    exc,
                )
                await self._mark_finished(job, status="failed", error=str(exc))
            else:
                status = "ignored" if payload.get("ignored") else "succeeded"
                await self._mark_finished(job, status=status, result=payload)
            finally:
                self._queue.task_done()

    async def _mark_running(self, job: IngestJob) -> None:
        async with self._guard:
            record = self._jobs.get(job.job_id)
            if record is None:
                return
            record["status"] = "running"
            record["started_at"] = _utc_iso_now()
            self._active_job_id = job.job_id

    async def _mark_finished(
        self,
        job: IngestJob,
        *,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        finished_at = _utc_iso_now()
        async with self._guard:
            record = self._jobs.get(job.job_id)
            if record is None:
                return
            record["status"] = status
            record["finished_at"] = finished_at
            if result is not None:
                record["result"] = result
            if error:
                record["error"] = error
                self._last_error = error
            if status == "succeeded":
                self._succeeded_total += 1
            elif status == "ignored":
                self._ignored_total += 1
            elif status == "failed":
                self._failed_total += 1
            self._last_finished_at = finished_at
            if self._active_job_id == job.job_id:
                self._active_job_id = None

            event = self._job_events.get(job.job_id)
            if event is not None:
                event.set()
            self._append_recent_job_locked(job.job_id)

    def _append_recent_job_locked(self, job_id: str) -> None:
        if job_id in self._recent_job_ids:
            self._recent_job_ids.remove(job_id)
        self._recent_job_ids.appendleft(job_id)
        while len(self._recent_job_ids) > self._recent_limit:
            stale_id = self._recent_job_ids.pop()
            self._jobs.pop(stale_id, None)
            self._job_events.pop(stale_id, None)


class RuntimeState:
    def __init__(
        self,
        client: Any,
        *,
        storage_timeout_seconds: Optional[float] = None,
        watchdog_options: Optional[Dict[str, Any]] = None,
        queue_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        timeout = (
            storage_timeout_seconds
            if storage_timeout_seconds is not None
            else _env_float("LEDGER_STORAGE_TIMEOUT_SECONDS", 5.0, minimum=0.1)
        )
        self.client = client
        self.lanes = MachineLaneCoordinator()
        self.identifiers = IdentifierCache(client, timeout_seconds=timeout)
        self.ledger = StatusLedger(
            client,
            lanes=self.lanes,
            identifiers=self.identifiers,
            storage_timeout_seconds=timeout,
        )
        self.aggregator = OverlapAggregator(client)
        self.watchdog = LivenessWatchdog(
            ledger=self.ledger,
            identifiers=self.identifiers,
            **(watchdog_options or {}),
        )
        self.ingest_queue = IngestQueue(**(queue_options or {}))

    async def ensure_started(self) -> None:
        await self.ingest_queue.ensure_started(self.process_job)
        await self.watchdog.ensure_started()

    async def shutdown(self) -> None:
        await self.watchdog.shutdown()
        await self.ingest_queue.shutdown()

    async def require_machine(self, machine_code: str) -> int:
        machine_id = await self.identifiers.resolve_machine(machine_code)
        if machine_id is None:
            raise NotFound("machine not found", machine_code=machine_code)
        return machine_id

    async def ingest(
        self,
        machine_code: str,
        color: Any,
        *,
        at: Optional[datetime] = None,
        received_at: Optional[datetime] = None,
    ) -> LedgerAction:
        """Synchronous path: resolve, apply, then touch liveness in the same lane."""
        received = received_at or utc_now_naive()
        machine_id = await self.require_machine(machine_code)
        instant = at or received
        state = color if isinstance(color, ColorState) else normalize_color(color)

        async def _touch() -> None:
            await self.watchdog.touch(machine_id, event_at=instant, received_at=received)

        return await self.ledger.apply(machine_id, state, instant, on_applied=_touch)

    async def accept_heartbeat(
        self,
        machine_code: str,
        color: Any,
        *,
        at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Fast-ack path: touch liveness now, persist later on the queue."""
        received = utc_now_naive()
        event_at = at or received
        machine_id = self.identifiers.cached_machine_id(machine_code)
        if machine_id is not None:
            await self.watchdog.touch(machine_id, event_at=event_at, received_at=received)
        else:
            await self.watchdog.touch_code(
                machine_code, event_at=event_at, received_at=received
            )
        return await self.ingest_queue.enqueue(
            machine_code=machine_code, color=str(color or ""), at=event_at
        )

    async def process_job(self, job: IngestJob) -> Dict[str, Any]:
        machine_id = await self.identifiers.resolve_machine(job.machine_code)
        if machine_id is None:
            # Unknown machines are dropped, never retried.
            logger.info("ingest job %s: unknown machine %s ignored", job.job_id, job.machine_code)
            return {"ignored": True, "reason": "machine_not_found"}
        await self.watchdog.adopt_code(job.machine_code, machine_id)
        action = await self.ledger.apply(
            machine_id, normalize_color(job.color), job.at or utc_now_naive()
        )
        return action.to_payload()

    async def status(self) -> Dict[str, Any]:
        return {
            "lanes": await self.lanes.status(),
            "identifiers": await self.identifiers.status(),
            "watchdog": await self.watchdog.status(),
            "ingest_queue": await self.ingest_queue.status(),
        }
