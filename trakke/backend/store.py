"""Versioned local SQLite store.

Design:
- one connection per manager, opened lazily on first use; concurrent callers
  wait on the manager lock and share that connection (single-flight open)
- the manager is handed to every repository instead of living in a module
  global; `acquire()` / `release()` count holders and the last release closes it
- schema upgrades are additive only and tracked in `PRAGMA user_version`;
  each version is applied in its own transaction
- if the file cannot be opened or upgraded, the first caller gets the error
  and the session continues on an in-memory database with the full schema
"""

from __future__ import annotations

import json
import logging
import shutil
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from trakke.backend.config import StoreConfig
from trakke.backend.errors import SchemaMigrationFailed, StorageUnavailable, StoreError
from trakke.backend.models import now_ms

log = logging.getLogger('trakke.store')

Migration = Union[Sequence[str], Callable[[sqlite3.Connection], None]]

MIGRATIONS: Dict[int, Migration] = {
    1: (
        """
        CREATE TABLE IF NOT EXISTS user_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            data TEXT NOT NULL,
            timestamp INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_user_data_type ON user_data(type)",
        "CREATE INDEX IF NOT EXISTS idx_user_data_timestamp ON user_data(timestamp)",
    ),
    2: (
        """
        CREATE TABLE IF NOT EXISTS tiles (
            key TEXT PRIMARY KEY,
            data BLOB NOT NULL,
            timestamp INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_tiles_timestamp ON tiles(timestamp)",
        """
        CREATE TABLE IF NOT EXISTS downloaded_areas (
            id TEXT PRIMARY KEY,
            doc TEXT NOT NULL,
            downloaded_at INTEGER
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_areas_downloaded_at ON downloaded_areas(downloaded_at)",
    ),
    3: (
        """
        CREATE TABLE IF NOT EXISTS routes (
            id TEXT PRIMARY KEY,
            doc TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            completed_at INTEGER
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_routes_created_at ON routes(created_at)",
        "CREATE INDEX IF NOT EXISTS idx_routes_updated_at ON routes(updated_at)",
        "CREATE INDEX IF NOT EXISTS idx_routes_completed_at ON routes(completed_at)",
        """
        CREATE TABLE IF NOT EXISTS waypoints (
            id TEXT PRIMARY KEY,
            doc TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_waypoints_created_at ON waypoints(created_at)",
        "CREATE INDEX IF NOT EXISTS idx_waypoints_updated_at ON waypoints(updated_at)",
        """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            doc TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_projects_created_at ON projects(created_at)",
        "CREATE INDEX IF NOT EXISTS idx_projects_updated_at ON projects(updated_at)",
    ),
    4: (
        """
        CREATE TABLE IF NOT EXISTS elevation_profiles (
            route_id TEXT PRIMARY KEY,
            doc TEXT NOT NULL,
            fetched_at INTEGER NOT NULL
        )
        """,
    ),
}

SCHEMA_VERSION = max(MIGRATIONS)


def read_schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def apply_migrations(conn: sqlite3.Connection, migrations: Dict[int, Migration]) -> int:
    """Bring `conn` up to the newest version in `migrations`; return the final version."""
    current = read_schema_version(conn)
    target = max(migrations) if migrations else 0
    if current > target:
        # Written by a newer build. Stores are additive, so keep going.
        log.warning('[STORE] database schema v%d is newer than known v%d; opening as-is', current, target)
        return current

    for version in sorted(v for v in migrations if v > current):
        step = migrations[version]
        try:
            conn.execute("BEGIN")
            if callable(step):
                step(conn)
            else:
                for sql in step:
                    conn.execute(sql)
            conn.execute(f"PRAGMA user_version = {int(version)}")
            conn.commit()
        except Exception as e:
            try:
                conn.rollback()
            except sqlite3.Error:
                pass
            raise SchemaMigrationFailed(version, e) from e
        log.info('[STORE] schema upgraded to v%d', version)
        current = version
    return current


@dataclass(frozen=True)
class StorageEstimate:
    used: int
    quota: int

    def to_dict(self) -> Dict[str, int]:
        return {"used": int(self.used), "quota": int(self.quota)}


class StoreConnection:
    """A shared SQLite connection guarded by a lock.

    Every `transaction()` block commits on success and rolls back on error, so
    each repository call is its own independent transaction. SQLite errors
    (locked database, disk full) surface as StoreError.
    """

    def __init__(self, conn: sqlite3.Connection, version: int, path: str, degraded: bool = False):
        self._conn = conn
        self._lock = threading.RLock()
        self.version = version
        self.path = path
        self.degraded = degraded

    @property
    def in_memory(self) -> bool:
        return self.path == ":memory:"

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                raise StoreError(f"write to {self.path} failed: {e}") from e

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StoreError(f"read from {self.path} failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class StoreManager:
    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        migrations: Optional[Dict[int, Migration]] = None,
        connect: Callable[..., sqlite3.Connection] = sqlite3.connect,
    ):
        self.config = config or StoreConfig()
        self._migrations = dict(migrations if migrations is not None else MIGRATIONS)
        self._connect = connect
        self._lock = threading.Lock()
        self._connection: Optional[StoreConnection] = None
        self._failure: Optional[StoreError] = None
        self._holders = 0

    @classmethod
    def in_memory(cls, **kwargs: Any) -> "StoreManager":
        return cls(StoreConfig(db_path=Path(":memory:")), **kwargs)

    @property
    def path(self) -> Path:
        return Path(self.config.db_path)

    @property
    def failure(self) -> Optional[StoreError]:
        return self._failure

    @property
    def degraded(self) -> bool:
        return self._failure is not None

    @property
    def holders(self) -> int:
        return self._holders

    # -------------------- handle lifecycle --------------------
    def acquire(self) -> "StoreManager":
        with self._lock:
            self._holders += 1
        return self

    def release(self) -> None:
        with self._lock:
            self._holders = max(0, self._holders - 1)
            if self._holders == 0:
                self._close_locked()

    def close(self) -> None:
        with self._lock:
            self._holders = 0
            self._close_locked()

    def __enter__(self) -> "StoreManager":
        return self.acquire()

    def __exit__(self, *exc: Any) -> None:
        self.release()

    def _close_locked(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            except sqlite3.Error as e:
                log.warning('[STORE] close failed: %s', e)
            self._connection = None
            log.info('[STORE] connection closed')
        self._failure = None

    # -------------------- opening --------------------
    def get_connection(self) -> StoreConnection:
        with self._lock:
            if self._connection is not None:
                return self._connection
            if self._failure is not None:
                raise self._failure
            try:
                self._connection = self._open(str(self.config.db_path))
                return self._connection
            except StoreError as e:
                self._failure = e
                if self.config.degrade_to_memory:
                    log.error('[STORE] %s; continuing with an in-memory store for this session', e)
                    self._connection = self._open_fallback()
                else:
                    log.error('[STORE] %s', e)
                raise

    def _open(self, path: str) -> StoreConnection:
        in_memory = path == ":memory:"
        try:
            if not in_memory:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect(path, check_same_thread=False)
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailable(f"Cannot open database {path}: {e}") from e

        try:
            if not in_memory:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            version = apply_migrations(conn, self._migrations)
        except SchemaMigrationFailed:
            conn.close()
            raise
        except sqlite3.Error as e:
            conn.close()
            raise StorageUnavailable(f"Cannot open database {path}: {e}") from e

        log.info('[STORE] opened %s (schema v%d)', path, version)
        return StoreConnection(conn, version, path)

    def _open_fallback(self) -> StoreConnection:
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        version = apply_migrations(conn, MIGRATIONS)
        return StoreConnection(conn, version, ":memory:", degraded=True)

    # -------------------- storage estimate --------------------
    def estimate(self) -> StorageEstimate:
        """Bytes used by the database and the space available to it; zeros if unknown."""
        try:
            conn = self.get_connection()
            with conn.reading() as c:
                page_count = int(c.execute("PRAGMA page_count").fetchone()[0])
                page_size = int(c.execute("PRAGMA page_size").fetchone()[0])
            used = page_count * page_size
            if conn.in_memory:
                return StorageEstimate(used=used, quota=0)
            wal = Path(conn.path + "-wal")
            if wal.exists():
                used += wal.stat().st_size
            free = shutil.disk_usage(Path(conn.path).resolve().parent).free
            return StorageEstimate(used=used, quota=used + free)
        except (StoreError, sqlite3.Error, OSError) as e:
            log.warning('[STORE] storage estimate unavailable: %s', e)
            return StorageEstimate(used=0, quota=0)

    # -------------------- generic typed records --------------------
    def save_data(self, data_type: str, data: Any) -> int:
        conn = self.get_connection()
        with conn.transaction() as c:
            cur = c.execute(
                "INSERT INTO user_data(type, data, timestamp) VALUES(?,?,?)",
                (str(data_type), json.dumps(data), now_ms()),
            )
            return int(cur.lastrowid)

    def get_data(self, data_type: str) -> List[Any]:
        try:
            conn = self.get_connection()
            with conn.reading() as c:
                rows = c.execute(
                    "SELECT data FROM user_data WHERE type=? ORDER BY timestamp, id",
                    (str(data_type),),
                ).fetchall()
        except StoreError as e:
            log.warning('[STORE] read user_data(%s) failed: %s', data_type, e)
            return []
        return [json.loads(r[0]) for r in rows]

    def clear_data(self) -> None:
        conn = self.get_connection()
        with conn.transaction() as c:
            c.execute("DELETE FROM user_data")
        log.info('[STORE] user_data cleared')
