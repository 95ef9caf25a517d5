import threading
import time
from typing import Any, Callable, Iterable, List, Optional, Tuple

import pytest
import requests

from trakke.backend.config import OfflineConfig
from trakke.backend.models import Bounds, DownloadArea, ZoomRange
from trakke.backend.store import StoreManager

TILE_URL = "https://tiles.test/{z}/{y}/{x}.png"

OSLO = Bounds(north=60.0, south=59.9, east=10.8, west=10.7)


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", json_data: Any = None):
        self.status_code = status_code
        self.content = content
        self._json = json_data

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Thread-safe stand-in for requests.Session; `handler(url, params)` builds each reply."""

    def __init__(self, handler: Callable[[str, Any], Any]):
        self.handler = handler
        self.headers: dict = {}
        self.calls: List[Tuple[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def get(self, url: str, params: Any = None, timeout: Optional[float] = None, **kwargs: Any) -> FakeResponse:
        with self._lock:
            self.calls.append((url, params))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            result = self.handler(url, params)
        finally:
            with self._lock:
                self.in_flight -= 1
        if isinstance(result, BaseException):
            raise result
        return result

    def urls(self) -> List[str]:
        with self._lock:
            return [u for u, _ in self.calls]


def key_from_url(url: str) -> str:
    z, y, last = url.rsplit('/', 3)[-3:]
    return f"{z}/{last[:-len('.png')]}/{y}"


def tile_handler(fail: Iterable[str] = (), errors: Iterable[str] = (), delay_s: float = 0.0):
    """Serve `tile:<key>` bytes, HTTP 500 for keys in `fail`, ConnectionError for `errors`."""
    fail = set(fail)
    errors = set(errors)

    def handler(url: str, params: Any) -> Any:
        key = key_from_url(url)
        if delay_s:
            time.sleep(delay_s)
        if key in errors:
            return requests.ConnectionError(f"connection reset for {key}")
        if key in fail:
            return FakeResponse(500)
        return FakeResponse(200, content=f"tile:{key}".encode())

    return handler


class Clock:
    """Deterministic epoch-ms clock; every call advances by `step`."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1000):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_area(zoom_min: int = 10, zoom_max: int = 10, bounds: Bounds = OSLO, area_id: str = "area-oslo") -> DownloadArea:
    return DownloadArea(id=area_id, name="Oslo", bounds=bounds, zoom_levels=ZoomRange(min=zoom_min, max=zoom_max))


@pytest.fixture
def manager():
    m = StoreManager.in_memory()
    m.acquire()
    yield m
    m.close()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def tile_session():
    return FakeSession(tile_handler())


@pytest.fixture
def offline_config():
    return OfflineConfig(tile_url_template=TILE_URL, batch_delay_s=0.0)
