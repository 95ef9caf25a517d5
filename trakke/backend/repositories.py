"""CRUD for user-created routes, waypoints and projects, plus the elevation cache.

All repositories share one StoreManager but touch only their own table, and
every call is its own transaction: there is no cross-entity atomicity.
Reads that hit a store failure log and answer as if the store were empty;
writes let the error through so the caller knows nothing was saved.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from trakke.backend.errors import EntityNotFound, InvalidEntity, StoreError
from trakke.backend.models import ElevationProfile, Project, Route, Waypoint, new_id, now_ms
from trakke.backend.store import StoreManager

log = logging.getLogger('trakke.repositories')

T = TypeVar("T", Route, Waypoint, Project)

_SERVER_FIELDS = ("id", "created_at", "updated_at")


class _DocumentRepository(Generic[T]):
    kind: str = "entity"
    table: str = ""
    id_prefix: str = ""
    model: Type[Any] = object
    extra_columns: Tuple[str, ...] = ()

    def __init__(self, manager: StoreManager, clock: Callable[[], int] = now_ms):
        self._manager = manager.acquire()
        self._clock = clock

    def close(self) -> None:
        self._manager.release()

    # -------------------- helpers --------------------
    def _check_fields(self, fields: Dict[str, Any]) -> None:
        unknown = sorted(set(fields) - set(self.model.field_names()))
        if unknown:
            raise InvalidEntity(f"Unknown {self.kind} field(s): {', '.join(unknown)}")

    def _columns(self) -> Tuple[str, ...]:
        return ("id", "doc", "created_at", "updated_at") + self.extra_columns

    def _row(self, entity: T) -> Tuple[Any, ...]:
        doc = entity.to_dict()
        return (entity.id, json.dumps(doc), entity.created_at, entity.updated_at) + tuple(
            doc.get(col) for col in self.extra_columns
        )

    def _write(self, entity: T, insert: bool) -> None:
        cols = self._columns()
        placeholders = ",".join("?" for _ in cols)
        if insert:
            sql = f"INSERT INTO {self.table}({','.join(cols)}) VALUES({placeholders})"
        else:
            sql = f"REPLACE INTO {self.table}({','.join(cols)}) VALUES({placeholders})"
        conn = self._manager.get_connection()
        with conn.transaction() as c:
            c.execute(sql, self._row(entity))

    def _decode(self, doc: str) -> Optional[T]:
        try:
            return self.model.from_dict(json.loads(doc))
        except (ValueError, KeyError, TypeError) as e:
            log.warning('[%s] skipping unreadable record: %s', self.kind.upper(), e)
            return None

    def _load(self, entity_id: str) -> Optional[T]:
        conn = self._manager.get_connection()
        with conn.reading() as c:
            row = c.execute(f"SELECT doc FROM {self.table} WHERE id=?", (str(entity_id),)).fetchone()
        return self._decode(row[0]) if row else None

    # -------------------- CRUD --------------------
    def create(self, **fields: Any) -> T:
        for key in _SERVER_FIELDS:
            fields.pop(key, None)
        self._check_fields(fields)
        ts = int(self._clock())
        try:
            entity = self.model(id=new_id(self.id_prefix, ts), created_at=ts, updated_at=ts, **fields)
        except TypeError as e:
            raise InvalidEntity(f"Incomplete {self.kind}: {e}")
        entity.validate()
        self._write(entity, insert=True)
        log.info('[%s] created %s', self.kind.upper(), entity.id)
        return entity

    def get(self, entity_id: str) -> Optional[T]:
        try:
            return self._load(entity_id)
        except StoreError as e:
            log.warning('[%s] read %s failed: %s', self.kind.upper(), entity_id, e)
            return None

    def list(self) -> List[T]:
        """All records, most recently updated first."""
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                rows = c.execute(f"SELECT doc FROM {self.table} ORDER BY updated_at DESC, id").fetchall()
        except StoreError as e:
            log.warning('[%s] list failed: %s', self.kind.upper(), e)
            return []
        entities = (self._decode(doc) for (doc,) in rows)
        return [e for e in entities if e is not None]

    def update(self, entity_id: str, **changes: Any) -> T:
        forbidden = sorted(k for k in changes if k in _SERVER_FIELDS)
        if forbidden:
            raise InvalidEntity(f"Cannot change {', '.join(forbidden)}")
        self._check_fields(changes)
        existing = self._load(entity_id)
        if existing is None:
            raise EntityNotFound(self.kind, entity_id)
        merged = {**existing.to_dict(), **changes, "updated_at": int(self._clock())}
        entity = self.model.from_dict(merged)
        entity.validate()
        self._write(entity, insert=False)
        log.info('[%s] updated %s', self.kind.upper(), entity_id)
        return entity

    def delete(self, entity_id: str) -> None:
        conn = self._manager.get_connection()
        with conn.transaction() as c:
            c.execute(f"DELETE FROM {self.table} WHERE id=?", (str(entity_id),))
        log.info('[%s] deleted %s', self.kind.upper(), entity_id)


class RouteRepository(_DocumentRepository[Route]):
    kind = "route"
    table = "routes"
    id_prefix = "route"
    model = Route
    extra_columns = ("completed_at",)

    def mark_completed(self, route_id: str, completed_at: Optional[int] = None) -> Route:
        return self.update(route_id, completed_at=int(self._clock()) if completed_at is None else int(completed_at))


class WaypointRepository(_DocumentRepository[Waypoint]):
    kind = "waypoint"
    table = "waypoints"
    id_prefix = "wp"
    model = Waypoint


class ProjectRepository(_DocumentRepository[Project]):
    kind = "project"
    table = "projects"
    id_prefix = "proj"
    model = Project


class ElevationProfileCache:
    """Elevation profiles keyed by route id."""

    def __init__(self, manager: StoreManager):
        self._manager = manager.acquire()

    def close(self) -> None:
        self._manager.release()

    def get(self, route_id: str) -> Optional[ElevationProfile]:
        try:
            conn = self._manager.get_connection()
            with conn.reading() as c:
                row = c.execute("SELECT doc FROM elevation_profiles WHERE route_id=?", (str(route_id),)).fetchone()
        except StoreError as e:
            log.warning('[ELEVATION] cache read %s failed: %s', route_id, e)
            return None
        if not row:
            return None
        try:
            return ElevationProfile.from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError) as e:
            log.warning('[ELEVATION] unreadable cached profile %s: %s', route_id, e)
            return None

    def put(self, profile: ElevationProfile) -> None:
        conn = self._manager.get_connection()
        with conn.transaction() as c:
            c.execute(
                "REPLACE INTO elevation_profiles(route_id, doc, fetched_at) VALUES(?,?,?)",
                (profile.route_id, json.dumps(profile.to_dict()), int(profile.fetched_at)),
            )

    def delete(self, route_id: str) -> None:
        conn = self._manager.get_connection()
        with conn.transaction() as c:
            c.execute("DELETE FROM elevation_profiles WHERE route_id=?", (str(route_id),))
