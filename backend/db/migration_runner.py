"""
Versioned SQL migrations for the NPC memory database.

Files under ``db/migrations`` named ``NNNN_description.sql`` are applied in
version order, once each. The checksum of every applied file is recorded in
``schema_migrations``; editing an applied file is refused at boot. A file lock
beside the database keeps two processes from migrating at the same time.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_VERSION_PATTERN = re.compile(r"^(?P<version>\d{4,})_[\w\-]+\.sql$")
DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


class MigrationError(RuntimeError):
    """A migration could not be applied or an applied one was modified."""


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")


def database_file_from_url(database_url: str) -> Optional[Path]:
    """Local file behind a SQLite URL, or None for in-memory databases."""
    for prefix in _URL_PREFIXES:
        if database_url.startswith(prefix):
            raw = unquote(database_url[len(prefix):].split("?", 1)[0])
            if not raw or raw == ":memory:":
                return None
            return Path(raw)
    raise ValueError(f"Not a SQLite database URL: {database_url!r}")


def file_checksum(path: Path) -> str:
    # Line endings are normalized so a CRLF checkout matches an LF one.
    text = path.read_bytes().replace(b"\r\n", b"\n").replace(b"\r", b"\n")
    return hashlib.sha256(text).hexdigest()


def discover_migrations(directory: Path) -> List[Migration]:
    if not directory.is_dir():
        return []
    found = []
    for path in sorted(directory.iterdir()):
        match = _VERSION_PATTERN.match(path.name)
        if match:
            found.append(Migration(match.group("version"), path, file_checksum(path)))
    return found


def split_statements(script: str) -> List[str]:
    """Split a script on semicolons outside quoted strings, dropping comments."""
    statements: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    for char in script:
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == ";":
            statements.append("".join(current))
            current = []
            continue
        current.append(char)
    statements.append("".join(current))

    cleaned = []
    for statement in statements:
        body = "\n".join(
            line for line in statement.splitlines() if not line.strip().startswith("--")
        ).strip()
        if body:
            cleaned.append(body)
    return cleaned


class MigrationRunner:
    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_timeout_sec: Optional[float] = None,
    ) -> None:
        self.database_file = database_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)
        if lock_timeout_sec is None:
            try:
                lock_timeout_sec = float(os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC", "10"))
            except ValueError:
                lock_timeout_sec = 10.0
        self.lock_timeout_sec = max(0.0, lock_timeout_sec)

    @property
    def lock_path(self) -> Optional[Path]:
        if self.database_file is None:
            return None
        return self.database_file.with_name(self.database_file.name + ".migrate.lock")

    async def apply_pending(self) -> List[str]:
        return await asyncio.to_thread(self._apply_pending_locked)

    def _apply_pending_locked(self) -> List[str]:
        migrations = discover_migrations(self.migrations_dir)
        # In-memory databases are built from the ORM metadata on every boot.
        if not migrations or self.database_file is None:
            return []
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_path), timeout=self.lock_timeout_sec)
        try:
            with lock:
                return self._apply(migrations)
        except Timeout as exc:
            raise MigrationError(
                f"Timed out after {self.lock_timeout_sec}s waiting for {self.lock_path}"
            ) from exc

    def _apply(self, migrations: List[Migration]) -> List[str]:
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            recorded: Dict[str, str] = dict(
                conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
            )
            for migration in migrations:
                previous = recorded.get(migration.version)
                if previous is not None:
                    if previous != migration.checksum:
                        raise MigrationError(
                            f"Migration {migration.version} changed after it was applied"
                        )
                    continue
                for statement in split_statements(migration.read()):
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
                conn.commit()
                applied.append(migration.version)
                logger.info("Applied migration %s", migration.path.name)
        return applied


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    runner = MigrationRunner(database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
