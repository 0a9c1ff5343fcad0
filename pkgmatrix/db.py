# pkgmatrix/db.py
"""
DB module for pkgmatrix.

Features:
- Thread-safe wrapper around sqlite3 (check_same_thread=False + RLock)
- Row factory (sqlite3.Row) for access by column name
- Configurable pragmas (WAL, foreign_keys, busy_timeout, synchronous)
- Transaction context manager (commit/rollback)
- Numbered migrations (pkgmatrix_migrations table + apply_migrations)
- get_default_db() singleton with the pkgmatrix schema applied
"""

from __future__ import annotations

import contextlib
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Sequence, Tuple

from pkgmatrix.config import get_config
from pkgmatrix.errors import DBError
from pkgmatrix.logging import get_logger

_logger = get_logger("db")


@dataclass
class DBConfig:
    path: str
    timeout: float = 5.0
    journal_mode: str = "WAL"
    foreign_keys: bool = True
    busy_timeout_ms: int = 5000
    synchronous: str = "NORMAL"  # OFF, NORMAL, FULL


# (version, name, sql)
MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "cache_entries", """
        CREATE TABLE IF NOT EXISTS cache_entries (
            key TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            sha256 TEXT NOT NULL,
            name TEXT,
            produced_by TEXT,
            size INTEGER,
            created_at INTEGER
        );
    """),
    (2, "runs_and_results", """
        CREATE TABLE IF NOT EXISTS runs (
            run_id TEXT PRIMARY KEY,
            canonical TEXT NOT NULL,
            started_at REAL,
            finished_at REAL,
            cancelled INTEGER DEFAULT 0,
            passed INTEGER DEFAULT 0,
            failed INTEGER DEFAULT 0
        );
        CREATE TABLE IF NOT EXISTS cell_results (
            run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
            cell TEXT NOT NULL,
            stage TEXT NOT NULL,
            ok INTEGER NOT NULL,
            error TEXT,
            package TEXT,
            fatal INTEGER DEFAULT 0,
            advisory INTEGER DEFAULT 0,
            PRIMARY KEY (run_id, cell)
        );
        CREATE TABLE IF NOT EXISTS scenario_results (
            run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
            cell TEXT NOT NULL,
            mode TEXT NOT NULL,
            outcome TEXT NOT NULL,
            failed_steps TEXT,
            PRIMARY KEY (run_id, cell, mode)
        );
        CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
    """),
]


class DB:
    """
    sqlite3 wrapper.

        db = DB("/tmp/x.sqlite3")
        db.apply_migrations(MIGRATIONS)
        with db.transaction() as cur:
            cur.execute(...)
    """

    def __init__(self, path: Optional[str | Path] = None, cfg: Optional[DBConfig] = None) -> None:
        if cfg is None:
            if path is None:
                path = get_config().get("db.path")
                if not path:
                    raise DBError("db.path is not configured")
            cfg = DBConfig(path=str(path))
        self._cfg = cfg
        self._path = Path(self._cfg.path).expanduser().resolve() if self._cfg.path != ":memory:" else Path(":memory:")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------
    # Connection and pragmas
    # ------------------------
    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn
            if str(self._path) != ":memory:":
                self._path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(str(self._path), timeout=self._cfg.timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                cur = conn.cursor()
                try:
                    if self._cfg.journal_mode and str(self._path) != ":memory:":
                        cur.execute(f"PRAGMA journal_mode = {self._cfg.journal_mode};")
                    if self._cfg.foreign_keys:
                        cur.execute("PRAGMA foreign_keys = ON;")
                    if self._cfg.busy_timeout_ms:
                        cur.execute(f"PRAGMA busy_timeout = {int(self._cfg.busy_timeout_ms)};")
                    if self._cfg.synchronous:
                        cur.execute(f"PRAGMA synchronous = {self._cfg.synchronous};")
                finally:
                    cur.close()
            except sqlite3.Error as e:
                _logger.exception("db: cannot connect to %s", self._path)
                raise DBError(f"cannot connect to {self._path}: {e}") from e
            self._conn = conn
            _logger.debug("db: connected to %s", self._path)
            return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            finally:
                self._conn = None

    # ------------------------
    # Execution
    # ------------------------
    def execute(self, sql: str, params: Optional[Sequence[Any]] = None, commit: bool = False,
                many: bool = False) -> sqlite3.Cursor:
        with self._lock:
            conn = self.connect()
            try:
                cur = conn.cursor()
                if many:
                    cur.executemany(sql, params or [])
                elif params is not None:
                    cur.execute(sql, params)
                else:
                    cur.execute(sql)
                if commit:
                    conn.commit()
                return cur
            except sqlite3.Error as e:
                _logger.error("db: SQL failed: %s | params=%s", sql.strip(), params)
                conn.rollback()
                raise DBError(f"SQL failed: {e}") from e

    def executescript(self, script: str, commit: bool = True) -> None:
        with self._lock:
            conn = self.connect()
            try:
                conn.executescript(script)
                if commit:
                    conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise DBError(f"SQL script failed: {e}") from e

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            row = cur.fetchone()
            cur.close()
            return row

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            rows = cur.fetchall()
            cur.close()
            return rows

    @contextlib.contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """Commit on success, rollback on exception."""
        with self._lock:
            conn = self.connect()
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------
    # Migrations
    # ------------------------
    def _ensure_migrations_table(self) -> None:
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS pkgmatrix_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT,
                applied_at TEXT
            );
            """,
            commit=True,
        )

    def get_current_version(self) -> int:
        row = self.fetchone("SELECT MAX(version) AS v FROM pkgmatrix_migrations;")
        if row is None or row["v"] is None:
            return 0
        return int(row["v"])

    def apply_migrations(self, migrations: Iterable[Tuple[int, str, str]] = MIGRATIONS) -> List[int]:
        """Apply (version, name, sql) migrations newer than the current version; return those applied."""
        applied: List[int] = []
        with self._lock:
            self._ensure_migrations_table()
            current = self.get_current_version()
            for version, name, sql in sorted(migrations, key=lambda x: int(x[0])):
                if int(version) <= current:
                    continue
                _logger.info("db: applying migration %s: %s", version, name)
                self.executescript(sql, commit=True)
                now = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
                self.execute(
                    "INSERT INTO pkgmatrix_migrations (version, name, applied_at) VALUES (?, ?, ?);",
                    (int(version), name, now),
                    commit=True,
                )
                applied.append(int(version))
        return applied

    def __enter__(self) -> "DB":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._conn is not None:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        self.close()
        return False

    @property
    def path(self) -> Path:
        return self._path


# ------------------------
# Singleton helpers
# ------------------------
_default_db_lock = threading.RLock()
_default_db: Optional[DB] = None


def get_default_db() -> DB:
    """Return the shared DB (created from config on first use, schema applied)."""
    global _default_db
    with _default_db_lock:
        if _default_db is None:
            db = DB()
            db.apply_migrations(MIGRATIONS)
            _default_db = db
        return _default_db


def set_default_db(db: Optional[DB]) -> None:
    """Replace the shared instance (tests)."""
    global _default_db
    with _default_db_lock:
        _default_db = db
