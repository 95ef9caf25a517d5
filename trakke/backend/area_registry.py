"""Metadata for areas downloaded for offline use.

Deleting an area removes only its metadata row. The tiles it fetched stay in
the tile cache: tiles are not tagged with an owning area, and neighbouring
areas may share them.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from trakke.backend.errors import StoreError
from trakke.backend.models import DownloadArea
from trakke.backend.store import StoreManager

log = logging.getLogger('trakke.areas')


class AreaRegistry:
    def __init__(self, manager: StoreManager):
        self._manager = manager.acquire()

    def close(self) -> None:
        self._manager.release()

    def save_downloaded_area(self, area: DownloadArea) -> None:
        conn = self._manager.get_connection()
        with conn.transaction() as c:
            c.execute(
                "INSERT INTO downloaded_areas(id, doc, downloaded_at) VALUES(?,?,?) "
                "ON CONFLICT(id) DO UPDATE SET doc=excluded.doc, downloaded_at=excluded.downloaded_at",
                (area.id, json.dumps(area.to_dict()), area.downloaded_at),
            )
        log.info('[AREA] saved %s (%s tiles)', area.id, area.tile_count)

    def get_downloaded_areas(self) -> List[DownloadArea]:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                rows = c.execute("SELECT doc FROM downloaded_areas ORDER BY downloaded_at, id").fetchall()
        except StoreError as e:
            log.warning('[AREA] list failed: %s', e)
            return []
        out: List[DownloadArea] = []
        for (doc,) in rows:
            try:
                out.append(DownloadArea.from_dict(json.loads(doc)))
            except (ValueError, KeyError) as e:
                log.warning('[AREA] skipping unreadable record: %s', e)
        return out

    def get_downloaded_area(self, area_id: str) -> Optional[DownloadArea]:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                row = c.execute("SELECT doc FROM downloaded_areas WHERE id=?", (str(area_id),)).fetchone()
        except StoreError as e:
            log.warning('[AREA] read %s failed: %s', area_id, e)
            return None
        if not row:
            return None
        try:
            return DownloadArea.from_dict(json.loads(row[0]))
        except (ValueError, KeyError) as e:
            log.warning('[AREA] unreadable record %s: %s', area_id, e)
            return None

    def delete_downloaded_area(self, area_id: str) -> None:
        conn = self._manager.get_connection()
        with conn.transaction() as c:
            c.execute("DELETE FROM downloaded_areas WHERE id=?", (str(area_id),))
        log.info('[AREA] deleted %s metadata', area_id)
