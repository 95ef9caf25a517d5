"""OfflineMapService: download map tiles for a bounding box into the local store.

A download walks the tile pyramid (zoom ascending, x ascending, y ascending) in
fixed-size batches. Tiles inside a batch are fetched concurrently; batches run
strictly one after another with a short pause in between so the tile provider
is never hit with more than `batch_size` requests at once. A failing tile is
counted and logged, never fatal. When every batch is done the area metadata is
saved with the number of tiles that actually arrived.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from itertools import islice
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import requests

from trakke.backend.area_registry import AreaRegistry
from trakke.backend.config import OfflineConfig
from trakke.backend.errors import AreaTooLarge, DownloadCancelled, StoreError, TileFetchFailed
from trakke.backend.models import DownloadArea, DownloadProgress, TileRecord, now_ms
from trakke.backend.store import StorageEstimate, StoreManager
from trakke.backend.tile_cache import TileCacheStore
from trakke.backend.tile_math import clamp_bounds, count_area_tiles, iter_area_tiles, tile_key

log = logging.getLogger('trakke.offline')

ProgressCallback = Callable[[DownloadProgress], None]


def _batched(it: Iterable[Tuple[int, int, int]], size: int) -> Iterator[List[Tuple[int, int, int]]]:
    it = iter(it)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def percentage(done: int, total: int) -> int:
    """done/total as a whole percent, halves rounded up."""
    if total <= 0:
        return 100
    return (done * 200 + total) // (2 * total)


@dataclass(frozen=True)
class AreaEstimate:
    tile_count: int
    estimated_size: int
    needs_confirmation: bool
    too_large: bool
    max_tiles: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tile_count": self.tile_count,
            "estimated_size": self.estimated_size,
            "needs_confirmation": self.needs_confirmation,
            "too_large": self.too_large,
            "max_tiles": self.max_tiles,
        }


class OfflineMapService:
    def __init__(
        self,
        manager: StoreManager,
        config: Optional[OfflineConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or OfflineConfig()
        self._manager = manager.acquire()
        self._tiles = TileCacheStore(manager)
        self._areas = AreaRegistry(manager)
        self._session = session
        self._thread_local = threading.local()
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        self._areas.close()
        self._tiles.close()
        self._manager.release()

    # -------------------- pre-flight --------------------
    @staticmethod
    def _tile_area(area: DownloadArea) -> DownloadArea:
        area.bounds.validate()
        return replace(area, bounds=clamp_bounds(area.bounds))

    def calculate_tile_count(self, area: DownloadArea) -> int:
        return count_area_tiles(self._tile_area(area))

    def estimate(self, area: DownloadArea) -> AreaEstimate:
        area.validate(self.config.min_zoom, self.config.max_zoom)
        count = self.calculate_tile_count(area)
        return AreaEstimate(
            tile_count=count,
            estimated_size=count * self.config.tile_size_estimate,
            needs_confirmation=count > self.config.warning_threshold,
            too_large=count > self.config.max_tiles,
            max_tiles=self.config.max_tiles,
        )

    # -------------------- fetching --------------------
    def _get_session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._thread_local, 'session', None)
        if session is None:
            session = requests.Session()
            session.headers.update({'User-Agent': self.config.user_agent})
            self._thread_local.session = session
        return session

    def _fetch_tile(self, z: int, x: int, y: int) -> bytes:
        key = tile_key(z, x, y)
        url = self.config.tile_url_template.format(z=z, x=x, y=y)
        retry = self.config.retry
        for attempt in range(retry.attempts):
            last = attempt == retry.attempts - 1
            try:
                resp = self._get_session().get(url, timeout=self.config.request_timeout_s)
            except requests.RequestException as e:
                if not last:
                    log.info('[TILE] %s network error, retry in %.1fs: %s', key, retry.delays[attempt], e)
                    self._sleep(retry.delays[attempt])
                    continue
                raise TileFetchFailed(key, f"network error: {e}") from e

            if resp.status_code == 200:
                return resp.content
            if resp.status_code in retry.retry_statuses and not last:
                log.info('[TILE] %s HTTP %s, retry in %.1fs', key, resp.status_code, retry.delays[attempt])
                self._sleep(retry.delays[attempt])
                continue
            raise TileFetchFailed(key, f"HTTP {resp.status_code}")
        raise TileFetchFailed(key, "no attempts made")

    def _download_tile(self, z: int, x: int, y: int) -> int:
        data = self._fetch_tile(z, x, y)
        self._tiles.put(tile_key(z, x, y), data, self._clock())
        return len(data)

    # -------------------- download --------------------
    def download_area(
        self,
        area: DownloadArea,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DownloadArea:
        cfg = self.config
        area.validate(cfg.min_zoom, cfg.max_zoom)
        total = self.calculate_tile_count(area)
        if total > cfg.max_tiles:
            raise AreaTooLarge(total, cfg.max_tiles)

        progress = DownloadProgress(total_tiles=total, estimated_size=total * cfg.tile_size_estimate)
        log.info('[DOWNLOAD] start area=%s name=%r tiles=%d zoom=%d..%d',
                 area.id, area.name, total, area.zoom_levels.min, area.zoom_levels.max)
        t_start = time.time()

        with ThreadPoolExecutor(max_workers=cfg.batch_size, thread_name_prefix='tile') as pool:
            for batch in _batched(iter_area_tiles(self._tile_area(area)), cfg.batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    log.info('[DOWNLOAD] cancelled area=%s after %d/%d tiles',
                             area.id, progress.completed_tiles, total)
                    raise DownloadCancelled(replace(progress))

                futures = [(tile_key(z, x, y), pool.submit(self._download_tile, z, x, y)) for z, x, y in batch]
                for key, fut in futures:
                    try:
                        size = fut.result()
                    except (TileFetchFailed, StoreError) as e:
                        progress.failed_tiles += 1
                        log.warning('[TILE] failed %s: %s', key, e)
                        continue
                    progress.downloaded_tiles += 1
                    progress.current_size += size

                progress.percentage = percentage(progress.downloaded_tiles, total)
                log.debug('[DOWNLOAD] %d/%d ok=%d err=%d',
                          progress.completed_tiles, total, progress.downloaded_tiles, progress.failed_tiles)
                if on_progress is not None:
                    on_progress(replace(progress))

                if progress.completed_tiles < total and cfg.batch_delay_s > 0:
                    self._sleep(cfg.batch_delay_s)

        done = replace(area, downloaded_at=int(self._clock()), tile_count=progress.downloaded_tiles)
        self._areas.save_downloaded_area(done)
        log.info('[DOWNLOAD] done area=%s ok=%d err=%d bytes=%d in %.1fs',
                 area.id, progress.downloaded_tiles, progress.failed_tiles, progress.current_size,
                 time.time() - t_start)
        return done

    # -------------------- management --------------------
    def get_downloaded_areas(self) -> List[DownloadArea]:
        return self._areas.get_downloaded_areas()

    def delete_area(self, area_id: str) -> None:
        """Forget a downloaded area. Its tiles stay in the cache."""
        self._areas.delete_downloaded_area(area_id)

    def get_storage_usage(self) -> StorageEstimate:
        return self._manager.estimate()

    def get_tile(self, z: int, x: int, y: int) -> Optional[TileRecord]:
        return self._tiles.get(tile_key(z, x, y))
