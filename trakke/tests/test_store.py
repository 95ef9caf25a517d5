import sqlite3
import threading
import time

import pytest

from trakke.backend.config import StoreConfig
from trakke.backend.errors import SchemaMigrationFailed, StorageUnavailable
from trakke.backend.store import MIGRATIONS, SCHEMA_VERSION, StoreManager, apply_migrations, read_schema_version


def _tables(conn) -> set:
    with conn.reading() as c:
        return {r[0] for r in c.execute("SELECT name FROM sqlite_master WHERE type='table'")}


def test_fresh_store_has_full_schema(manager):
    conn = manager.get_connection()
    assert conn.version == SCHEMA_VERSION
    assert {"user_data", "tiles", "downloaded_areas", "routes", "waypoints", "projects",
            "elevation_profiles"} <= _tables(conn)
    assert not manager.degraded


def test_file_store_persists_across_managers(tmp_path):
    db = tmp_path / "store" / "trakke.sqlite"
    with StoreManager(StoreConfig(db_path=db)) as m:
        m.save_data("preferences", {"theme": "dark"})

    with StoreManager(StoreConfig(db_path=db)) as m:
        assert m.get_connection().version == SCHEMA_VERSION
        assert m.get_data("preferences") == [{"theme": "dark"}]


def test_upgrade_from_older_version_keeps_data(tmp_path):
    db = tmp_path / "old.sqlite"
    old = {v: MIGRATIONS[v] for v in (1, 2)}
    with StoreManager(StoreConfig(db_path=db), migrations=old) as m:
        conn = m.get_connection()
        assert conn.version == 2
        with conn.transaction() as c:
            c.execute("INSERT INTO tiles(key, data, timestamp) VALUES('1/0/0', x'00', 1)")

    with StoreManager(StoreConfig(db_path=db)) as m:
        conn = m.get_connection()
        assert conn.version == SCHEMA_VERSION
        assert "routes" in _tables(conn)
        with conn.reading() as c:
            assert c.execute("SELECT COUNT(*) FROM tiles").fetchone()[0] == 1


def test_newer_schema_is_opened_as_is(tmp_path):
    db = tmp_path / "newer.sqlite"
    raw = sqlite3.connect(str(db))
    apply_migrations(raw, MIGRATIONS)
    raw.execute("PRAGMA user_version = 99")
    raw.commit()
    raw.close()

    with StoreManager(StoreConfig(db_path=db)) as m:
        assert m.get_connection().version == 99
        assert not m.degraded


def test_failed_migration_step_is_rolled_back():
    conn = sqlite3.connect(":memory:")

    def broken(c):
        c.execute("CREATE TABLE half_done (id INTEGER)")
        raise RuntimeError("boom")

    with pytest.raises(SchemaMigrationFailed) as ei:
        apply_migrations(conn, {1: MIGRATIONS[1], 2: broken})
    assert ei.value.version == 2
    assert read_schema_version(conn) == 1
    names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert "half_done" not in names
    assert "user_data" in names


def test_migration_failure_reaches_first_caller_then_degrades(tmp_path):
    def broken(c):
        raise RuntimeError("disk says no")

    m = StoreManager(StoreConfig(db_path=tmp_path / "x.sqlite"), migrations={**MIGRATIONS, 5: broken})
    m.acquire()
    with pytest.raises(SchemaMigrationFailed):
        m.get_connection()
    assert m.degraded
    assert isinstance(m.failure, SchemaMigrationFailed)

    conn = m.get_connection()
    assert conn.degraded and conn.in_memory
    assert conn.version == SCHEMA_VERSION
    m.save_data("note", "still works")
    assert m.get_data("note") == ["still works"]
    m.close()


def test_open_failure_without_degrading_keeps_failing(tmp_path):
    calls = []

    def refuse(path, **kwargs):
        calls.append(path)
        raise sqlite3.OperationalError("unable to open database file")

    m = StoreManager(StoreConfig(db_path=tmp_path / "x.sqlite", degrade_to_memory=False), connect=refuse)
    with pytest.raises(StorageUnavailable):
        m.get_connection()
    with pytest.raises(StorageUnavailable):
        m.get_connection()
    assert len(calls) == 1
    # reads answer as empty, writes propagate
    assert m.get_data("preferences") == []
    with pytest.raises(StorageUnavailable):
        m.save_data("preferences", {})


def test_concurrent_first_use_opens_once(tmp_path):
    opened = []

    def slow_connect(path, **kwargs):
        opened.append(path)
        time.sleep(0.05)
        return sqlite3.connect(path, **kwargs)

    m = StoreManager(StoreConfig(db_path=tmp_path / "x.sqlite"), connect=slow_connect)
    m.acquire()
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(m.get_connection())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(opened) == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)
    m.close()


def test_last_release_closes_the_connection(tmp_path):
    m = StoreManager(StoreConfig(db_path=tmp_path / "x.sqlite"))
    m.acquire()
    m.acquire()
    first = m.get_connection()
    m.release()
    assert m.holders == 1
    assert m.get_connection() is first
    m.release()
    assert m.holders == 0
    m.acquire()
    assert m.get_connection() is not first
    m.close()


def test_storage_estimate(tmp_path, manager):
    mem = manager.estimate()
    assert mem.used > 0
    assert mem.quota == 0

    with StoreManager(StoreConfig(db_path=tmp_path / "x.sqlite")) as m:
        m.save_data("x", list(range(100)))
        est = m.estimate()
        assert est.used > 0
        assert est.quota >= est.used
        assert est.to_dict() == {"used": est.used, "quota": est.quota}


def test_user_data_roundtrip(manager):
    first = manager.save_data("search", {"q": "Galdhøpiggen"})
    second = manager.save_data("search", {"q": "Preikestolen"})
    manager.save_data("other", 1)
    assert second > first
    assert manager.get_data("search") == [{"q": "Galdhøpiggen"}, {"q": "Preikestolen"}]
    manager.clear_data()
    assert manager.get_data("search") == []
    assert manager.get_data("other") == []
