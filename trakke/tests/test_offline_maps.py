import functools
import math
import sqlite3
import threading

import pytest

from trakke.backend.config import OfflineConfig, RetryPolicy, StoreConfig
from trakke.backend.errors import AreaTooLarge, DownloadCancelled, InvalidArea
from trakke.backend.models import Bounds, ZoomRange
from trakke.backend.offline_maps import OfflineMapService, percentage
from trakke.backend.store import StorageEstimate, StoreManager
from trakke.backend.tile_cache import TileCacheStore
from trakke.backend.tile_math import iter_area_tiles, tile_key

from conftest import TILE_URL, FakeResponse, FakeSession, key_from_url, make_area, tile_handler


@pytest.fixture
def service(manager, offline_config, tile_session, sleeps, clock):
    svc = OfflineMapService(manager, offline_config, session=tile_session, sleep=sleeps.append, clock=clock)
    yield svc
    svc.close()


def test_oslo_single_tile_download(service, manager):
    area = make_area(10, 10)
    seen = []
    done = service.download_area(area, on_progress=seen.append)

    assert service.calculate_tile_count(area) == 1
    assert seen[-1].downloaded_tiles == 1
    assert seen[-1].failed_tiles == 0
    assert seen[-1].percentage == 100
    assert done.tile_count == 1
    assert done.downloaded_at is not None
    assert TileCacheStore(manager).get("10/542/297").data == b"tile:10/542/297"
    assert [a.id for a in service.get_downloaded_areas()] == [area.id]


def test_tile_url_uses_template_placeholders(service, tile_session):
    service.download_area(make_area(10, 10))
    assert tile_session.urls() == [TILE_URL.format(z=10, x=542, y=297)]


def test_full_download_persists_exactly_the_counted_tiles(service, manager):
    area = make_area(10, 13)
    n = service.calculate_tile_count(area)
    done = service.download_area(area)

    tiles = TileCacheStore(manager)
    assert done.tile_count == n
    assert tiles.count() == n
    assert set(tiles.keys()) == {tile_key(*t) for t in iter_area_tiles(area)}


def test_redownload_is_idempotent(service, manager):
    area = make_area(10, 12)
    service.download_area(area)
    first = TileCacheStore(manager).count()
    again = service.download_area(area)
    assert TileCacheStore(manager).count() == first
    assert again.tile_count == first
    assert len(service.get_downloaded_areas()) == 1


def test_area_too_large_has_no_side_effects(manager, offline_config, tile_session, sleeps):
    svc = OfflineMapService(manager, offline_config.with_overrides(max_tiles=3), session=tile_session,
                            sleep=sleeps.append)
    area = make_area(10, 13)
    with pytest.raises(AreaTooLarge) as ei:
        svc.download_area(area)
    assert ei.value.tile_count == svc.calculate_tile_count(area)
    assert ei.value.max_tiles == 3
    assert tile_session.calls == []
    assert TileCacheStore(manager).count() == 0
    assert svc.get_downloaded_areas() == []
    assert sleeps == []


@pytest.mark.parametrize("zoom", [ZoomRange(min=12, max=10), ZoomRange(min=10, max=19), ZoomRange(min=-1, max=3)])
def test_invalid_zoom_range_is_rejected_before_fetching(service, tile_session, zoom):
    area = make_area()
    area.zoom_levels = zoom
    with pytest.raises(InvalidArea):
        service.download_area(area)
    assert tile_session.calls == []


def test_progress_is_monotonic_and_bounded(service, offline_config):
    area = make_area(10, 13)
    n = service.calculate_tile_count(area)
    seen = []
    service.download_area(area, on_progress=seen.append)

    assert len(seen) == math.ceil(n / offline_config.batch_size)
    for prev, cur in zip(seen, seen[1:]):
        assert cur.downloaded_tiles >= prev.downloaded_tiles
        assert cur.completed_tiles > prev.completed_tiles
    assert all(0 <= p.percentage <= 100 for p in seen)
    assert all(p.total_tiles == n for p in seen)
    assert all(p.estimated_size == n * offline_config.tile_size_estimate for p in seen)
    assert seen[-1].completed_tiles == n
    assert seen[-1].current_size == sum(len(f"tile:{tile_key(*t)}") for t in iter_area_tiles(area))


def test_progress_callbacks_receive_copies(service):
    seen = []
    service.download_area(make_area(10, 12), on_progress=seen.append)
    assert len({id(p) for p in seen}) == len(seen)
    assert seen[0].completed_tiles < seen[-1].completed_tiles


def test_failed_tiles_are_counted_not_fatal(manager, offline_config, sleeps):
    area = make_area(10, 12)
    keys = [tile_key(*t) for t in iter_area_tiles(area)]
    session = FakeSession(tile_handler(fail=[keys[1]], errors=[keys[-1]]))
    svc = OfflineMapService(manager, offline_config, session=session, sleep=sleeps.append)

    seen = []
    done = svc.download_area(area, on_progress=seen.append)

    n = len(keys)
    assert seen[-1].failed_tiles == 2
    assert seen[-1].downloaded_tiles == n - 2
    assert seen[-1].percentage == percentage(n - 2, n)
    assert done.tile_count == n - 2
    assert not TileCacheStore(manager).has(keys[1])
    assert svc.get_downloaded_areas()[0].tile_count == n - 2


def test_retry_policy_recovers_transient_errors(manager, offline_config, sleeps):
    attempts = {}
    lock = threading.Lock()

    def flaky(url, params):
        key = key_from_url(url)
        with lock:
            attempts[key] = attempts.get(key, 0) + 1
            n = attempts[key]
        if n <= 2:
            return FakeResponse(503)
        return FakeResponse(200, content=b"ok")

    cfg = offline_config.with_overrides(retry=RetryPolicy(delays=(0.5, 1.0)))
    svc = OfflineMapService(manager, cfg, session=FakeSession(flaky), sleep=sleeps.append)
    done = svc.download_area(make_area(10, 10))

    assert done.tile_count == 1
    assert attempts == {"10/542/297": 3}
    assert sleeps == [0.5, 1.0]


def test_retry_does_not_repeat_client_errors(manager, offline_config, sleeps):
    session = FakeSession(lambda url, params: FakeResponse(404))
    cfg = offline_config.with_overrides(retry=RetryPolicy.ladder(3))
    svc = OfflineMapService(manager, cfg, session=session, sleep=sleeps.append)
    seen = []
    done = svc.download_area(make_area(10, 10), on_progress=seen.append)

    assert len(session.calls) == 1
    assert seen[-1].failed_tiles == 1
    assert done.tile_count == 0


def test_no_retries_by_default(manager, offline_config, sleeps):
    session = FakeSession(lambda url, params: FakeResponse(503))
    svc = OfflineMapService(manager, offline_config, session=session, sleep=sleeps.append)
    svc.download_area(make_area(10, 10))
    assert len(session.calls) == 1


def test_batches_are_bounded_and_paced(manager, offline_config, sleeps):
    session = FakeSession(tile_handler(delay_s=0.01))
    cfg = offline_config.with_overrides(batch_size=3, batch_delay_s=0.25)
    svc = OfflineMapService(manager, cfg, session=session, sleep=sleeps.append)
    area = make_area(10, 13)
    n = svc.calculate_tile_count(area)
    svc.download_area(area)

    batches = math.ceil(n / 3)
    assert session.max_in_flight <= 3
    assert sleeps == [0.25] * (batches - 1)


def test_cancel_between_batches_keeps_written_tiles(manager, offline_config, tile_session, sleeps):
    svc = OfflineMapService(manager, offline_config, session=tile_session, sleep=sleeps.append)
    area = make_area(10, 12)
    assert svc.calculate_tile_count(area) > offline_config.batch_size

    cancel = threading.Event()
    seen = []

    def on_progress(p):
        seen.append(p)
        cancel.set()

    with pytest.raises(DownloadCancelled) as ei:
        svc.download_area(area, on_progress=on_progress, cancel_event=cancel)

    assert len(seen) == 1
    assert ei.value.progress.completed_tiles == offline_config.batch_size
    assert TileCacheStore(manager).count() == offline_config.batch_size
    assert svc.get_downloaded_areas() == []


def test_delete_area_leaves_tiles(service, manager):
    area = make_area(10, 11)
    done = service.download_area(area)
    before = TileCacheStore(manager).count()

    service.delete_area(done.id)

    assert service.get_downloaded_areas() == []
    assert TileCacheStore(manager).count() == before
    assert service.get_tile(10, 542, 297) is not None


def test_estimate(manager, tile_session):
    cfg = OfflineConfig(tile_url_template=TILE_URL, warning_threshold=2, max_tiles=10)
    svc = OfflineMapService(manager, cfg, session=tile_session)
    small = svc.estimate(make_area(10, 10))
    assert small.tile_count == 1
    assert small.estimated_size == 15000
    assert not small.needs_confirmation
    assert not small.too_large

    big = svc.estimate(make_area(10, 13))
    assert big.needs_confirmation
    assert big.too_large
    assert big.to_dict()["max_tiles"] == 10
    assert tile_session.calls == []


def test_storage_usage(service):
    service.download_area(make_area(10, 10))
    usage = service.get_storage_usage()
    assert isinstance(usage, StorageEstimate)
    assert usage.used > 0


@pytest.mark.parametrize("done,total,expected", [
    (0, 7, 0), (1, 2, 50), (1, 8, 13), (1, 3, 33), (2, 3, 67), (7, 7, 100), (0, 0, 100),
])
def test_percentage_rounds_half_up(done, total, expected):
    assert percentage(done, total) == expected


def test_polar_bounds_are_clamped_before_counting(service):
    area = make_area(2, 2, bounds=Bounds(north=80.0, south=-90.0, east=10.8, west=10.7))
    # one column, rows 0..3
    assert service.calculate_tile_count(area) == 4
    assert service.estimate(area).tile_count == 4


def test_polar_download_fetches_only_existing_tiles(service, tile_session):
    area = make_area(3, 3, bounds=Bounds(north=89.0, south=84.0, east=10.8, west=10.7))
    done = service.download_area(area)
    assert tile_session.urls() == [TILE_URL.format(z=3, x=4, y=0)]
    assert done.tile_count == 1
    # the saved area keeps the bounds the user asked for
    assert done.bounds.north == 89.0


@pytest.mark.parametrize("bounds", [
    Bounds(north=91.0, south=59.9, east=10.8, west=10.7),
    Bounds(north=60.0, south=-90.5, east=10.8, west=10.7),
    Bounds(north=60.0, south=59.9, east=181.0, west=10.7),
    Bounds(north=float("nan"), south=59.9, east=10.8, west=10.7),
    Bounds(north=60.0, south=59.9, east=10.8, west=float("-inf")),
])
def test_off_globe_bounds_are_rejected_before_fetching(service, tile_session, bounds):
    area = make_area(bounds=bounds)
    with pytest.raises(InvalidArea):
        service.estimate(area)
    with pytest.raises(InvalidArea):
        service.calculate_tile_count(area)
    with pytest.raises(InvalidArea):
        service.download_area(area)
    assert tile_session.calls == []


def test_locked_database_counts_tiles_as_failed_and_still_saves_area(tmp_path, tile_session, sleeps):
    db = tmp_path / "locked.sqlite"
    m = StoreManager(StoreConfig(db_path=db), connect=functools.partial(sqlite3.connect, timeout=0.1))
    m.acquire()
    m.get_connection()

    locker = sqlite3.connect(str(db), isolation_level=None)
    locker.execute("BEGIN EXCLUSIVE")

    seen = []

    def unlock_after_batch(p):
        seen.append(p)
        if locker.in_transaction:
            locker.execute("ROLLBACK")

    cfg = OfflineConfig(tile_url_template=TILE_URL, batch_delay_s=0.0, batch_size=5)
    svc = OfflineMapService(m, cfg, session=tile_session, sleep=sleeps.append)
    area = make_area(10, 11)
    try:
        done = svc.download_area(area, on_progress=unlock_after_batch)

        assert len(seen) == 1
        assert seen[0].total_tiles == 5
        assert seen[0].failed_tiles == 5
        assert seen[0].downloaded_tiles == 0
        assert seen[0].percentage == 0
        assert done.tile_count == 0
        assert [a.id for a in svc.get_downloaded_areas()] == [area.id]
        assert TileCacheStore(m).count() == 0
    finally:
        locker.close()
        svc.close()
        m.close()
