"""Keyed blob storage for downloaded map tiles.

Keys are "z/x/y". Writes are upserts (last write wins) and each one commits on
its own, so an interrupted download leaves every tile written so far usable.
There is no eviction; growth is bounded only by the platform.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from trakke.backend.errors import StoreError
from trakke.backend.models import TileRecord, now_ms
from trakke.backend.store import StoreManager

log = logging.getLogger('trakke.tiles')


class TileCacheStore:
    def __init__(self, manager: StoreManager):
        self._manager = manager.acquire()

    def close(self) -> None:
        self._manager.release()

    def put(self, key: str, data: bytes, timestamp: Optional[int] = None) -> None:
        ts = now_ms() if timestamp is None else int(timestamp)
        conn = self._manager.get_connection()
        with conn.transaction() as c:
            c.execute(
                "INSERT INTO tiles(key, data, timestamp) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET data=excluded.data, timestamp=excluded.timestamp",
                (str(key), bytes(data), ts),
            )

    def get(self, key: str) -> Optional[TileRecord]:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                row = c.execute("SELECT key, data, timestamp FROM tiles WHERE key=?", (str(key),)).fetchone()
        except StoreError as e:
            log.warning('[CACHE] tile read %s failed: %s', key, e)
            return None
        if not row:
            return None
        return TileRecord(key=str(row[0]), data=bytes(row[1]), timestamp=int(row[2]))

    def has(self, key: str) -> bool:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                row = c.execute("SELECT 1 FROM tiles WHERE key=?", (str(key),)).fetchone()
        except StoreError:
            return False
        return row is not None

    def count(self) -> int:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                return int(c.execute("SELECT COUNT(*) FROM tiles").fetchone()[0])
        except StoreError:
            return 0

    def keys(self, zoom: Optional[int] = None) -> List[str]:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                if zoom is None:
                    rows = c.execute("SELECT key FROM tiles ORDER BY key").fetchall()
                else:
                    rows = c.execute("SELECT key FROM tiles WHERE key LIKE ? ORDER BY key", (f"{int(zoom)}/%",)).fetchall()
        except StoreError:
            return []
        return [str(r[0]) for r in rows]

    def total_bytes(self) -> int:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                return int(c.execute("SELECT COALESCE(SUM(LENGTH(data)), 0) FROM tiles").fetchone()[0])
        except StoreError:
            return 0
