"""
Status ledger: the per-machine interval state machine.

Every mutation runs inside the machine's lane so that two writers for the
same machine never decide from the same open interval. Storage calls are
bounded by a timeout; a timeout or database error surfaces as
StorageUnavailable and says nothing about the machine's real state.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidTimeRange, NotFound, StorageUnavailable

logger = logging.getLogger(__name__)

UNKNOWN_HEX = "#9E9E9E"


class ColorState(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"
    UNKNOWN = "unknown"


TRACKED_COLORS: Tuple[ColorState, ...] = (
    ColorState.GREEN,
    ColorState.YELLOW,
    ColorState.RED,
)

_COLOR_ALIASES: Dict[str, ColorState] = {
    "green": ColorState.GREEN,
    "yellow": ColorState.YELLOW,
    "red": ColorState.RED,
    "amber": ColorState.YELLOW,
    "g": ColorState.GREEN,
    "y": ColorState.YELLOW,
    "r": ColorState.RED,
}


def normalize_color(raw: Any) -> ColorState:
    """Map a raw device signal to a ColorState.

    Anything unrecognized becomes UNKNOWN, which closes the open interval.
    """
    value = str(raw or "").strip().lower()
    return _COLOR_ALIASES.get(value, ColorState.UNKNOWN)


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_instant(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 instant into naive UTC. Naive input is taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        candidate = str(value).strip()
        if not candidate:
            return None
        if candidate.endswith(("Z", "z")):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise ValueError(f"Invalid ISO-8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_instant(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"


def parse_day(value: str) -> date:
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid date (expected YYYY-MM-DD): {value!r}") from exc


def day_window(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


class ActionKind(str, Enum):
    NOOP_ALREADY_CLOSED = "noop_already_closed"
    CLOSED_ON_UNKNOWN = "closed_on_unknown"
    NOOP_SAME_COLOR = "noop_same_color"
    SWITCHED = "switched_color"
    OPENED = "opened"
    CLOSED = "closed"
    SKIPPED = "skipped"


@dataclass
class LedgerAction:
    kind: ActionKind
    machine_id: int
    at: datetime
    color: Optional[str] = None
    interval_id: Optional[int] = None
    closed_interval_id: Optional[int] = None

    @property
    def wrote(self) -> bool:
        return self.kind in {
            ActionKind.CLOSED_ON_UNKNOWN,
            ActionKind.SWITCHED,
            ActionKind.OPENED,
            ActionKind.CLOSED,
        }

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "action": self.kind.value,
            "machine_id": self.machine_id,
            "at": format_instant(self.at),
        }
        if self.color is not None:
            payload["color"] = self.color
        if self.interval_id is not None:
            payload["interval_id"] = self.interval_id
        if self.closed_interval_id is not None:
            payload["closed_interval_id"] = self.closed_interval_id
        return payload


Precondition = Callable[[], Union[bool, Awaitable[bool]]]


class StatusLedger:
    """Owns every read and write of machine_status rows."""

    def __init__(
        self,
        client: Any,
        *,
        lanes: Any,
        identifiers: Any,
        storage_timeout_seconds: float = 5.0,
    ) -> None:
        self._client = client
        self._lanes = lanes
        self._identifiers = identifiers
        self._storage_timeout_seconds = max(0.1, float(storage_timeout_seconds))

    async def apply(
        self,
        machine_id: int,
        color: ColorState,
        at: Optional[datetime] = None,
        *,
        on_applied: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> LedgerAction:
        """Apply one heartbeat.

        `on_applied` runs inside the machine lane once the transition has been
        accepted; it never runs for a rejected heartbeat.
        """
        instant = at or utc_now_naive()

        async def _task() -> LedgerAction:
            action = await self._apply_locked(machine_id, color, instant)
            if on_applied is not None:
                await on_applied()
            return action

        action = await self._run(machine_id, "apply", _task)
        logger.debug(
            "ledger machine=%s color=%s at=%s -> %s",
            machine_id,
            color.value,
            instant.isoformat(),
            action.kind.value,
        )
        return action

    async def close_open(
        self,
        machine_id: int,
        at: datetime,
        *,
        precondition: Optional[Precondition] = None,
    ) -> LedgerAction:
        """Close the open interval at `at`.

        `precondition` is evaluated inside the machine lane; when it returns
        False nothing is read or written and the action is SKIPPED.
        """

        async def _task() -> LedgerAction:
            if precondition is not None:
                allowed = precondition()
                if inspect.isawaitable(allowed):
                    allowed = await allowed
                if not allowed:
                    return LedgerAction(ActionKind.SKIPPED, machine_id, at)
            open_row = await self._client.get_open_interval(machine_id)
            if open_row is None:
                return LedgerAction(ActionKind.NOOP_ALREADY_CLOSED, machine_id, at)
            self._check_close(open_row, at)
            await self._client.close_interval(open_row["id"], at)
            return LedgerAction(
                ActionKind.CLOSED,
                machine_id,
                at,
                color=open_row["color"],
                closed_interval_id=open_row["id"],
            )

        return await self._run(machine_id, "close_open", _task)

    async def close_stale_open(self, *, older_than_seconds: float) -> int:
        """Close, at now, every open interval older than the threshold."""
        now = utc_now_naive()
        cutoff = now - timedelta(seconds=max(0.0, float(older_than_seconds)))
        try:
            return await asyncio.wait_for(
                self._client.close_stale_open_intervals(
                    started_before=cutoff, end_time=now
                ),
                timeout=self._storage_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable("boot sweep timed out") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"boot sweep failed: {exc}") from exc

    async def current_status(self, machine_id: int) -> Dict[str, Any]:
        open_row = await self._client.get_open_interval(machine_id)
        if open_row is None:
            return {
                "color": ColorState.UNKNOWN.value,
                "hex": UNKNOWN_HEX,
                "since": None,
            }
        return {
            "color": open_row["color"],
            "hex": open_row["hex"],
            "since": format_instant(open_row["start_time"]),
        }

    async def timeline(
        self,
        machine_id: int,
        window_start: datetime,
        window_end: datetime,
        *,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        rows = await self._client.list_intervals(
            machine_id,
            window_start=window_start,
            window_end=window_end,
            now=now or utc_now_naive(),
        )
        return [
            {
                "color": row["color"],
                "hex": row["hex"],
                "start_time": format_instant(row["start_time"]),
                "end_time": format_instant(row["end_time"]),
            }
            for row in rows
        ]

    async def _apply_locked(
        self, machine_id: int, color: ColorState, at: datetime
    ) -> LedgerAction:
        open_row = await self._client.get_open_interval(machine_id)

        if color is ColorState.UNKNOWN:
            if open_row is None:
                return LedgerAction(ActionKind.NOOP_ALREADY_CLOSED, machine_id, at)
            self._check_close(open_row, at)
            await self._client.close_interval(open_row["id"], at)
            return LedgerAction(
                ActionKind.CLOSED_ON_UNKNOWN,
                machine_id,
                at,
                closed_interval_id=open_row["id"],
            )

        if open_row is not None and open_row["color"] == color.value:
            self._check_close(open_row, at)
            return LedgerAction(
                ActionKind.NOOP_SAME_COLOR,
                machine_id,
                at,
                color=color.value,
                interval_id=open_row["id"],
            )

        color_id = await self._identifiers.resolve_color(color.value)
        if color_id is None:
            raise NotFound(f"status_colors missing for {color.value}", color=color.value)

        if open_row is not None:
            self._check_close(open_row, at)
            row = await self._client.rotate_interval(
                interval_id=open_row["id"],
                machine_id=machine_id,
                color_id=color_id,
                at=at,
            )
            return LedgerAction(
                ActionKind.SWITCHED,
                machine_id,
                at,
                color=color.value,
                interval_id=row["id"],
                closed_interval_id=open_row["id"],
            )

        latest_end = await self._client.get_latest_end_time(machine_id)
        if latest_end is not None and at < latest_end:
            raise InvalidTimeRange(
                "cannot open an interval before the end of recorded history",
                machine_id=machine_id,
                at=format_instant(at),
                latest_end_time=format_instant(latest_end),
            )
        row = await self._client.open_interval(machine_id, color_id, at)
        return LedgerAction(
            ActionKind.OPENED,
            machine_id,
            at,
            color=color.value,
            interval_id=row["id"],
        )

    @staticmethod
    def _check_close(open_row: Dict[str, Any], at: datetime) -> None:
        start_time = open_row["start_time"]
        if at < start_time:
            raise InvalidTimeRange(
                "end_time would precede start_time",
                interval_id=open_row["id"],
                start_time=format_instant(start_time),
                at=format_instant(at),
            )

    async def _run(
        self,
        machine_id: int,
        operation: str,
        task: Callable[[], Awaitable[LedgerAction]],
    ) -> LedgerAction:
        try:
            return await asyncio.wait_for(
                self._lanes.run_write(
                    machine_id=machine_id, operation=operation, task=task
                ),
                timeout=self._storage_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise StorageUnavailable(
                f"{operation} timed out after {self._storage_timeout_seconds}s",
                machine_id=machine_id,
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailable(
                f"{operation} failed: {exc}", machine_id=machine_id
            ) from exc
