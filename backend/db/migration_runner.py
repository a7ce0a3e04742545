"""
SQLite migration runner for the status ledger.

Migrations are SQL files under backend/db/migrations named like:
    0001_description.sql

Applied versions are tracked in `schema_migrations` together with a checksum,
so an edited migration that was already applied fails boot loudly.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote
from filelock import FileLock, Timeout


_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")


@dataclass(frozen=True)
class MigrationFile:
    """A normalized migration file descriptor."""

    version: str
    path: Path
    checksum: str


def _extract_sqlite_file_path(database_url: str) -> Optional[Path]:
    """
    Extract a local file path from a sqlite SQLAlchemy URL.

    Returns None for in-memory databases.
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = unquote(raw_path.split("?", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL for migration runner. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


class MigrationRunner:
    """Discover and apply SQL migrations with version tracking."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = _extract_sqlite_file_path(database_url)
        self.migrations_dir = (
            Path(migrations_dir)
            if migrations_dir is not None
            else Path(__file__).resolve().parent / "migrations"
        )
        configured = lock_file_path or os.getenv("DB_MIGRATION_LOCK_FILE", "").strip()
        if configured:
            self.lock_file_path: Optional[Path] = Path(configured).expanduser()
        elif self.database_file is not None:
            self.lock_file_path = Path(f"{self.database_file}.migrate.lock")
        else:
            self.lock_file_path = None
        env_timeout = os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                pass
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migration_files = self._discover_migrations()
        if not migration_files or self.database_file is None:
            # In-memory databases are built from ORM metadata on every boot.
            return []

        if self.lock_file_path is None:
            return self._apply_pending_unlocked(migration_files)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply_pending_unlocked(migration_files)
        except Timeout as exc:
            raise RuntimeError(
                "Timed out waiting for migration lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply_pending_unlocked(self, migration_files: List[MigrationFile]) -> List[str]:
        if self.database_file is None:
            return []
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.database_file)
        try:
            conn.row_factory = sqlite3.Row
            self._ensure_schema_table(conn)
            applied_map = self._load_applied_checksums(conn)
            applied_versions: List[str] = []

            for migration in migration_files:
                recorded_checksum = applied_map.get(migration.version)
                if recorded_checksum is not None:
                    if recorded_checksum != migration.checksum:
                        raise RuntimeError(
                            "Checksum mismatch for migration "
                            f"{migration.version}: recorded={recorded_checksum} "
                            f"current={migration.checksum}"
                        )
                    continue

                with conn:
                    for statement in self._split_statements(
                        migration.path.read_text(encoding="utf-8")
                    ):
                        conn.execute(statement)
                    conn.execute(
                        "INSERT INTO schema_migrations(version, applied_at, checksum) "
                        "VALUES (?, ?, ?)",
                        (
                            migration.version,
                            datetime.now(timezone.utc).isoformat(),
                            migration.checksum,
                        ),
                    )
                applied_versions.append(migration.version)

            return applied_versions
        finally:
            conn.close()

    def _discover_migrations(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []

        discovered: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            discovered.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=self._normalized_checksum(path.read_bytes()),
                )
            )
        return discovered

    @staticmethod
    def _normalized_checksum(content: bytes) -> str:
        """Checksum with line endings normalized so CRLF checkouts still match."""
        normalized = content.replace(b"\r\n", b"\n").replace(b"\r", b"\n")
        return hashlib.sha256(normalized).hexdigest()

    @staticmethod
    def _ensure_schema_table(conn: sqlite3.Connection) -> None:
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version TEXT PRIMARY KEY,
                    applied_at TEXT NOT NULL,
                    checksum TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _load_applied_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        cursor = conn.execute("SELECT version, checksum FROM schema_migrations")
        return {str(row["version"]): str(row["checksum"]) for row in cursor.fetchall()}

    @staticmethod
    def _split_statements(script: str) -> List[str]:
        statements: List[str] = []
        buffer = ""
        for line in script.splitlines(keepends=True):
            if not buffer and line.strip().startswith("--"):
                continue
            buffer += line
            if sqlite3.complete_statement(buffer):
                statements.append(buffer.strip())
                buffer = ""
        if buffer.strip():
            statements.append(buffer.strip())
        return statements


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used by SQLite client startup."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
