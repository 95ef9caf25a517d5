"""ElevationService: cache-first elevation profiles for routes.

- Profiles are cached per route id in the local store for `cache_ttl_s`
- Routes are resampled to roughly `sample_interval_m` spacing before querying
- The point API takes at most `batch_size` points per request
"""
from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import requests

from trakke.backend.config import ElevationConfig, USER_AGENT
from trakke.backend.errors import ElevationUnavailable
from trakke.backend.models import ElevationProfile, now_ms
from trakke.backend.repositories import ElevationProfileCache
from trakke.backend.route_sampling import sample_coordinates
from trakke.backend.store import StoreManager

log = logging.getLogger('trakke.elevation')


def _round_half_up(v: float) -> float:
    return float(np.floor(v + 0.5))


def calculate_statistics(points: Sequence[Dict[str, float]]) -> Dict[str, float]:
    """Gain, loss, min, max and mean elevation in whole meters."""
    if not points:
        return {"total_gain": 0.0, "total_loss": 0.0, "min_elevation": 0.0, "max_elevation": 0.0, "avg_elevation": 0.0}
    z = np.asarray([p["z"] for p in points], dtype=float)
    diffs = np.diff(z)
    return {
        "total_gain": _round_half_up(diffs[diffs > 0].sum()),
        "total_loss": _round_half_up(-diffs[diffs < 0].sum()),
        "min_elevation": _round_half_up(z.min()),
        "max_elevation": _round_half_up(z.max()),
        "avg_elevation": _round_half_up(z.mean()),
    }


class ElevationService:
    def __init__(
        self,
        manager: StoreManager,
        config: Optional[ElevationConfig] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or ElevationConfig()
        self._cache = ElevationProfileCache(manager)
        self._session = session or requests.Session()
        self._session.headers.setdefault('User-Agent', USER_AGENT)
        self._clock = clock

    def close(self) -> None:
        self._cache.close()

    def get_elevation_profile(self, route_id: str, coordinates: Sequence[Tuple[float, float]]) -> ElevationProfile:
        if not coordinates or len(coordinates) < 2:
            raise ValueError("Route must have at least 2 coordinates")

        cached = self._cache.get(route_id)
        if cached and self._clock() - cached.fetched_at < self.config.cache_ttl_s * 1000:
            log.info('[CACHE] elevation hit route=%s', route_id)
            return cached

        sampled = sample_coordinates(coordinates, self.config.sample_interval_m)
        log.info('[ELEVATION] route=%s sampled %d of %d points', route_id, len(sampled), len(coordinates))

        points: List[Dict[str, float]] = []
        for i in range(0, len(sampled), self.config.batch_size):
            points.extend(self._fetch_batch(sampled[i:i + self.config.batch_size]))

        profile = ElevationProfile(
            route_id=str(route_id),
            points=points,
            statistics=calculate_statistics(points),
            fetched_at=int(self._clock()),
        )
        self._cache.put(profile)
        log.info('[ELEVATION] cached profile route=%s points=%d', route_id, len(points))
        return profile

    def clear_cached_profile(self, route_id: str) -> None:
        self._cache.delete(route_id)
        log.info('[CACHE] elevation cleared route=%s', route_id)

    def _fetch_batch(self, coords: Sequence[Tuple[float, float]]) -> List[Dict[str, float]]:
        params = {
            'koordsys': '4326',
            'punkter': json.dumps([[lon, lat] for lon, lat in coords]),
        }
        try:
            r = self._session.get(self.config.api_url, params=params, timeout=self.config.request_timeout_s)
        except requests.RequestException as e:
            log.warning('[API] elevation request failed: %s', e)
            raise ElevationUnavailable(f"Elevation service unreachable: {e}") from e
        if r.status_code != 200:
            log.warning('[API] elevation HTTP %s', r.status_code)
            raise ElevationUnavailable(f"Elevation service returned {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise ElevationUnavailable("Invalid response from elevation service") from e
        punkter = data.get('punkter') if isinstance(data, dict) else None
        if not isinstance(punkter, list):
            raise ElevationUnavailable("Invalid response from elevation service")

        out: List[Dict[str, float]] = []
        for p in punkter:
            # Points outside the terrain model (e.g. at sea) come back without z
            if p.get('z') is None:
                continue
            out.append({"x": float(p['x']), "y": float(p['y']), "z": float(p['z'])})
        return out
