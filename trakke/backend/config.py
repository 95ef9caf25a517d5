"""Runtime configuration for the offline store.

Every tunable that used to be a literal in the download path lives here so it
can be injected in tests and overridden from the environment:

- TRAKKE_DB               SQLite database path
- TRAKKE_TILE_URL         tile URL template with {z}/{x}/{y}
- TRAKKE_BATCH_SIZE       tiles per batch (and fetch workers)
- TRAKKE_BATCH_DELAY_S    pause between batches
- TRAKKE_MAX_TILES        hard ceiling per area download
- TRAKKE_TILE_RETRIES     retries per tile (0 disables)
- TRAKKE_ELEVATION_URL    elevation point API
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Tuple

KARTVERKET_TOPO_URL = "https://cache.kartverket.no/v1/wmts/1.0.0/topo/default/webmercator/{z}/{y}/{x}.png"
GEONORGE_ELEVATION_URL = "https://ws.geonorge.no/hoydedata/v1/punkt"

DEFAULT_DB_PATH = Path("cache") / "trakke.sqlite"
USER_AGENT = "trakke-offline/0.1 (+https://www.kartverket.no/)"

MAX_NAME_LENGTH = 100


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry ladder for a single HTTP fetch.

    `delays` holds the sleep before each retry, so `len(delays)` is the number
    of retries. The empty default means one attempt only.
    """

    delays: Tuple[float, ...] = ()
    retry_statuses: Tuple[int, ...] = (429, 500, 502, 503, 504)

    @property
    def attempts(self) -> int:
        return len(self.delays) + 1

    @classmethod
    def ladder(cls, retries: int, base_s: float = 0.5, factor: float = 2.0) -> "RetryPolicy":
        retries = max(0, int(retries))
        return cls(delays=tuple(base_s * (factor ** i) for i in range(retries)))


@dataclass(frozen=True)
class StoreConfig:
    db_path: Path = DEFAULT_DB_PATH
    degrade_to_memory: bool = True

    @classmethod
    def from_env(cls) -> "StoreConfig":
        raw = os.environ.get("TRAKKE_DB")
        if raw:
            return cls(db_path=Path(raw))
        return cls()


@dataclass(frozen=True)
class OfflineConfig:
    tile_url_template: str = KARTVERKET_TOPO_URL
    batch_size: int = 5
    batch_delay_s: float = 0.1
    max_tiles: int = 20000
    warning_threshold: int = 1000
    tile_size_estimate: int = 15000  # bytes, pre-flight only
    min_zoom: int = 0
    max_zoom: int = 18
    request_timeout_s: float = 30.0
    user_agent: str = USER_AGENT
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_delay_s < 0:
            raise ValueError("batch_delay_s must be >= 0")
        if self.min_zoom > self.max_zoom:
            raise ValueError("min_zoom must be <= max_zoom")

    def with_overrides(self, **changes) -> "OfflineConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls) -> "OfflineConfig":
        base = cls()
        retries = _env_int("TRAKKE_TILE_RETRIES", 0)
        return cls(
            tile_url_template=os.environ.get("TRAKKE_TILE_URL") or base.tile_url_template,
            batch_size=_env_int("TRAKKE_BATCH_SIZE", base.batch_size),
            batch_delay_s=_env_float("TRAKKE_BATCH_DELAY_S", base.batch_delay_s),
            max_tiles=_env_int("TRAKKE_MAX_TILES", base.max_tiles),
            retry=RetryPolicy.ladder(retries) if retries > 0 else base.retry,
        )


@dataclass(frozen=True)
class ElevationConfig:
    api_url: str = GEONORGE_ELEVATION_URL
    batch_size: int = 50  # API limit per request
    cache_ttl_s: float = 7 * 24 * 3600.0
    sample_interval_m: float = 100.0
    request_timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> "ElevationConfig":
        return cls(api_url=os.environ.get("TRAKKE_ELEVATION_URL") or GEONORGE_ELEVATION_URL)


@dataclass(frozen=True)
class Settings:
    store: StoreConfig = field(default_factory=StoreConfig)
    offline: OfflineConfig = field(default_factory=OfflineConfig)
    elevation: ElevationConfig = field(default_factory=ElevationConfig)

    @classmethod
    def from_env(cls, db_path: Optional[str] = None) -> "Settings":
        store = StoreConfig(db_path=Path(db_path)) if db_path else StoreConfig.from_env()
        return cls(store=store, offline=OfflineConfig.from_env(), elevation=ElevationConfig.from_env())
