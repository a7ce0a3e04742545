"""
SQLite Client for the machine status ledger

This module implements the relational storage boundary with:
- machines: provisioned externally, addressed by their unique code
- status_colors: lookup table of color names and display hex values
- machine_status: append-only status intervals, end_time NULL while open
"""

import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from sqlalchemy import (
    Column,
    Integer,
    Index,
    String,
    DateTime,
    ForeignKey,
    select,
    update,
    func,
    false,
    or_,
    text,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, relationship
from dotenv import load_dotenv, find_dotenv
from errors import StorageUnavailable
from .migration_runner import apply_pending_migrations

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

Base = declarative_base()

DEFAULT_COLORS = (
    ("green", "#4CAF50"),
    ("yellow", "#FFC107"),
    ("red", "#F44336"),
    ("blue", "#2196F3"),
    ("off", "#616161"),
)


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime, the representation every stored instant uses."""
    return _utc_now().replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class Machine(Base):
    """A provisioned machine. Rows are created by external provisioning."""

    __tablename__ = "machines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)

    intervals = relationship("MachineStatus", back_populates="machine")


class StatusColor(Base):
    """Color lookup. Only green/yellow/red are ever written by the ledger."""

    __tablename__ = "status_colors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(32), nullable=False, unique=True)
    hex = Column(String(16), nullable=False, default="#9E9E9E")


class MachineStatus(Base):
    """One status interval.

    At most one row per machine has end_time NULL; that is an application
    invariant held by the ledger, not a storage constraint.
    """

    __tablename__ = "machine_status"
    __table_args__ = (
        Index("idx_machine_status_machine_start", "machine_id", "start_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(Integer, ForeignKey("machines.id"), nullable=False)
    color_id = Column(Integer, ForeignKey("status_colors.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)

    machine = relationship("Machine", back_populates="intervals")
    color = relationship("StatusColor")


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client for interval storage.

    Core operations:
    - lookups: machine by code, color by name
    - open interval: read, open, close, rotate (close + open in one transaction)
    - history: window-overlapping intervals, boot-time stale closure
    """

    def __init__(self, database_url: str):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///machine_status.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """Create tables if they don't exist, then apply SQL migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url)
        await self._ensure_default_colors()

    async def _ensure_default_colors(self) -> None:
        # Migration 0001 seeds file databases; in-memory ones only get this.
        async with self.session() as session:
            result = await session.execute(select(StatusColor.name))
            existing = {row[0] for row in result.all()}
            for name, hex_value in DEFAULT_COLORS:
                if name not in existing:
                    session.add(StatusColor(name=name, hex=hex_value))

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def ping(self) -> int:
        async with self.session() as session:
            result = await session.execute(text("SELECT 1 AS ok"))
            return int(result.scalar() or 0)

    async def list_colors(self) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(select(StatusColor).order_by(StatusColor.id))
            return [
                {"id": row.id, "name": row.name, "hex": row.hex}
                for row in result.scalars().all()
            ]

    async def list_machines(self) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(select(Machine).order_by(Machine.id))
            return [self._machine_to_dict(row) for row in result.scalars().all()]

    async def create_machine(self, code: str, name: Optional[str] = None) -> Dict[str, Any]:
        """Provision a machine row. Production rows come from outside this service."""
        code_value = (code or "").strip()
        if not code_value:
            raise ValueError("machine code is required.")
        async with self.session() as session:
            machine = Machine(code=code_value, name=name or code_value)
            session.add(machine)
            await session.flush()
            return self._machine_to_dict(machine)

    async def get_machine_id(self, code: str) -> Optional[int]:
        async with self.session() as session:
            result = await session.execute(
                select(Machine.id).where(Machine.code == code).limit(1)
            )
            value = result.scalar()
            return int(value) if value is not None else None

    async def get_color_id(self, name: str) -> Optional[int]:
        async with self.session() as session:
            result = await session.execute(
                select(StatusColor.id).where(StatusColor.name == name).limit(1)
            )
            value = result.scalar()
            return int(value) if value is not None else None

    # -------------------------------------------------------------------------
    # Intervals
    # -------------------------------------------------------------------------

    async def get_open_interval(self, machine_id: int) -> Optional[Dict[str, Any]]:
        """Latest interval with end_time NULL for the machine, if any."""
        async with self.session() as session:
            result = await session.execute(
                select(MachineStatus, StatusColor)
                .join(StatusColor, StatusColor.id == MachineStatus.color_id)
                .where(
                    MachineStatus.machine_id == machine_id,
                    MachineStatus.end_time.is_(None),
                )
                .order_by(MachineStatus.start_time.desc())
                .limit(1)
            )
            row = result.first()
            if row is None:
                return None
            return self._interval_to_dict(row[0], row[1])

    async def get_latest_end_time(self, machine_id: int) -> Optional[datetime]:
        async with self.session() as session:
            result = await session.execute(
                select(func.max(MachineStatus.end_time)).where(
                    MachineStatus.machine_id == machine_id
                )
            )
            return result.scalar()

    async def open_interval(
        self, machine_id: int, color_id: int, start_time: datetime
    ) -> Dict[str, Any]:
        async with self.session() as session:
            row = MachineStatus(
                machine_id=machine_id,
                color_id=color_id,
                start_time=start_time,
                end_time=None,
            )
            session.add(row)
            await session.flush()
            return {
                "id": row.id,
                "machine_id": machine_id,
                "color_id": color_id,
                "start_time": start_time,
                "end_time": None,
            }

    async def close_interval(self, interval_id: int, end_time: datetime) -> bool:
        """Set end_time on a still-open interval. Returns False if already closed."""
        async with self.session() as session:
            result = await session.execute(
                update(MachineStatus)
                .where(
                    MachineStatus.id == interval_id,
                    MachineStatus.end_time.is_(None),
                )
                .values(end_time=end_time)
            )
            return result.rowcount > 0

    async def rotate_interval(
        self,
        *,
        interval_id: int,
        machine_id: int,
        color_id: int,
        at: datetime,
    ) -> Dict[str, Any]:
        """Close the open interval and open the next one at the same instant."""
        async with self.session() as session:
            result = await session.execute(
                update(MachineStatus)
                .where(
                    MachineStatus.id == interval_id,
                    MachineStatus.end_time.is_(None),
                )
                .values(end_time=at)
            )
            if result.rowcount == 0:
                raise StorageUnavailable(
                    f"Interval {interval_id} is no longer open; rotation aborted.",
                    interval_id=interval_id,
                    machine_id=machine_id,
                )
            row = MachineStatus(
                machine_id=machine_id,
                color_id=color_id,
                start_time=at,
                end_time=None,
            )
            session.add(row)
            await session.flush()
            return {
                "closed_interval_id": interval_id,
                "id": row.id,
                "machine_id": machine_id,
                "color_id": color_id,
                "start_time": at,
                "end_time": None,
            }

    async def close_stale_open_intervals(
        self, *, started_before: datetime, end_time: datetime
    ) -> int:
        """Close every open interval that started before the cutoff."""
        async with self.session() as session:
            result = await session.execute(
                update(MachineStatus)
                .where(
                    MachineStatus.end_time.is_(None),
                    MachineStatus.start_time < started_before,
                )
                .values(end_time=end_time)
            )
            return int(result.rowcount or 0)

    async def list_intervals(
        self,
        machine_id: int,
        *,
        window_start: datetime,
        window_end: datetime,
        now: datetime,
    ) -> List[Dict[str, Any]]:
        """Intervals overlapping [window_start, window_end), ordered by start_time.

        An open interval is treated as ending at `now`.
        """
        open_clause = MachineStatus.end_time.is_(None) if window_start < now else false()
        async with self.session() as session:
            result = await session.execute(
                select(MachineStatus, StatusColor)
                .join(StatusColor, StatusColor.id == MachineStatus.color_id)
                .where(
                    MachineStatus.machine_id == machine_id,
                    MachineStatus.start_time < window_end,
                    or_(MachineStatus.end_time > window_start, open_clause),
                )
                .order_by(MachineStatus.start_time.asc(), MachineStatus.id.asc())
            )
            return [self._interval_to_dict(row[0], row[1]) for row in result.all()]

    @staticmethod
    def _machine_to_dict(machine: Machine) -> Dict[str, Any]:
        return {"id": machine.id, "code": machine.code, "name": machine.name}

    @staticmethod
    def _interval_to_dict(row: MachineStatus, color: StatusColor) -> Dict[str, Any]:
        return {
            "id": row.id,
            "machine_id": row.machine_id,
            "color_id": row.color_id,
            "color": color.name,
            "hex": color.hex,
            "start_time": row.start_time,
            "end_time": row.end_time,
        }


def create_sqlite_client(database_url: Optional[str] = None) -> SQLiteClient:
    """Build a client from an explicit URL or the DATABASE_URL environment variable."""
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL environment variable is not set. Please check your .env file."
        )
    return SQLiteClient(url)
