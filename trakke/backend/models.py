"""Data model shared by the stores, the download orchestrator and the API.

Coordinates are (lon, lat) pairs throughout; timestamps are epoch milliseconds.
"""

from __future__ import annotations

import math
import re
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from trakke.backend.config import MAX_NAME_LENGTH
from trakke.backend.errors import InvalidArea, InvalidEntity

Coordinate = Tuple[float, float]

DIFFICULTIES = ("easy", "moderate", "hard")

_DANGEROUS_NAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"<", r">", r'"', r"&lt;", r"&gt;", r"&quot;", r"&#", r"javascript:", r"on\w+=", r"\\")
]
_SAFE_NAME = re.compile(r"^[\w\s\-.,()']+$", re.UNICODE)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str, ts: Optional[int] = None) -> str:
    ts = now_ms() if ts is None else int(ts)
    return f"{prefix}-{ts}-{uuid.uuid4().hex[:9]}"


def validate_name(name: Any, max_length: int = MAX_NAME_LENGTH) -> str:
    """Trim and vet a user supplied name; raise InvalidEntity if unusable."""
    if name is None:
        raise InvalidEntity("Name is required")
    trimmed = str(name).strip()
    if not trimmed:
        raise InvalidEntity("Name cannot be empty")
    if len(trimmed) > max_length:
        raise InvalidEntity(f"Name cannot be longer than {max_length} characters")
    for pattern in _DANGEROUS_NAME_PATTERNS:
        if pattern.search(trimmed):
            raise InvalidEntity("Name contains invalid characters")
    if not _SAFE_NAME.match(trimmed):
        raise InvalidEntity("Name contains invalid characters")
    return trimmed


def _coord(raw: Any) -> Coordinate:
    try:
        lon, lat = raw
        return (float(lon), float(lat))
    except (TypeError, ValueError):
        raise InvalidEntity(f"Invalid coordinate: {raw!r}")


def _opt_float(v: Any) -> Optional[float]:
    return None if v is None else float(v)


def _opt_int(v: Any) -> Optional[int]:
    return None if v is None else int(v)


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Bounds":
        try:
            return cls(north=float(d["north"]), south=float(d["south"]), east=float(d["east"]), west=float(d["west"]))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidArea(f"Invalid bounds: {e}")

    def validate(self) -> None:
        """Reject non-finite or off-globe coordinates; polar latitudes are fine."""
        for name in ("north", "south", "east", "west"):
            if not math.isfinite(getattr(self, name)):
                raise InvalidArea(f"bounds.{name} must be a finite number")
        for name in ("north", "south"):
            if abs(getattr(self, name)) > 90.0:
                raise InvalidArea(f"bounds.{name} must lie within [-90, 90]")
        for name in ("east", "west"):
            if abs(getattr(self, name)) > 180.0:
                raise InvalidArea(f"bounds.{name} must lie within [-180, 180]")


@dataclass(frozen=True)
class ZoomRange:
    min: int
    max: int

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ZoomRange":
        try:
            return cls(min=int(d["min"]), max=int(d["max"]))
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidArea(f"Invalid zoom levels: {e}")

    def __iter__(self):
        return iter(range(self.min, self.max + 1))


@dataclass
class DownloadArea:
    id: str
    name: str
    bounds: Bounds
    zoom_levels: ZoomRange
    downloaded_at: Optional[int] = None
    tile_count: Optional[int] = None

    def validate(self, min_zoom: int, max_zoom: int) -> None:
        z = self.zoom_levels
        if z.min > z.max:
            raise InvalidArea(f"zoom min {z.min} > max {z.max}")
        if z.min < min_zoom or z.max > max_zoom:
            raise InvalidArea(f"zoom levels must lie within [{min_zoom}, {max_zoom}]")
        if not self.id:
            raise InvalidArea("area id is required")
        self.bounds.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DownloadArea":
        if not isinstance(d, dict):
            raise InvalidArea("area must be an object")
        return cls(
            id=str(d.get("id") or new_id("area")),
            name=str(d.get("name") or "").strip() or "Area",
            bounds=Bounds.from_dict(d.get("bounds") or {}),
            zoom_levels=ZoomRange.from_dict(d.get("zoom_levels") or {}),
            downloaded_at=_opt_int(d.get("downloaded_at")),
            tile_count=_opt_int(d.get("tile_count")),
        )


@dataclass
class DownloadProgress:
    total_tiles: int
    downloaded_tiles: int = 0
    failed_tiles: int = 0
    percentage: int = 0
    estimated_size: int = 0
    current_size: int = 0

    @property
    def completed_tiles(self) -> int:
        return self.downloaded_tiles + self.failed_tiles

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TileRecord:
    key: str
    data: bytes
    timestamp: int


@dataclass
class _Entity:
    """Common helpers for the user-created documents."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]


@dataclass
class Waypoint(_Entity):
    id: str
    name: str
    coordinates: Coordinate
    created_at: int
    updated_at: int
    description: Optional[str] = None
    category: Optional[str] = None
    elevation: Optional[float] = None
    icon: Optional[str] = None
    color: Optional[str] = None

    def validate(self) -> None:
        self.name = validate_name(self.name)
        self.coordinates = _coord(self.coordinates)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Waypoint":
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            coordinates=_coord(d["coordinates"]),
            created_at=int(d["created_at"]),
            updated_at=int(d["updated_at"]),
            description=d.get("description"),
            category=d.get("category"),
            elevation=_opt_float(d.get("elevation")),
            icon=d.get("icon"),
            color=d.get("color"),
        )


@dataclass
class Route(_Entity):
    id: str
    name: str
    coordinates: List[Coordinate]
    created_at: int
    updated_at: int
    distance: float = 0.0  # meters, computed by the caller
    description: Optional[str] = None
    waypoints: List[str] = field(default_factory=list)
    duration: Optional[float] = None  # minutes
    elevation_gain: Optional[float] = None
    elevation_loss: Optional[float] = None
    difficulty: Optional[str] = None
    color: Optional[str] = None
    completed_at: Optional[int] = None

    def validate(self) -> None:
        self.name = validate_name(self.name)
        coords = [_coord(c) for c in (self.coordinates or [])]
        if len(coords) < 2:
            raise InvalidEntity("A route needs at least two coordinates")
        self.coordinates = coords
        if self.difficulty is not None and self.difficulty not in DIFFICULTIES:
            raise InvalidEntity(f"difficulty must be one of {', '.join(DIFFICULTIES)}")
        self.distance = float(self.distance or 0.0)
        self.waypoints = [str(w) for w in (self.waypoints or [])]

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Route":
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            coordinates=[_coord(c) for c in d.get("coordinates") or []],
            created_at=int(d["created_at"]),
            updated_at=int(d["updated_at"]),
            distance=float(d.get("distance") or 0.0),
            description=d.get("description"),
            waypoints=list(d.get("waypoints") or []),
            duration=_opt_float(d.get("duration")),
            elevation_gain=_opt_float(d.get("elevation_gain")),
            elevation_loss=_opt_float(d.get("elevation_loss")),
            difficulty=d.get("difficulty"),
            color=d.get("color"),
            completed_at=_opt_int(d.get("completed_at")),
        )


@dataclass
class Project(_Entity):
    id: str
    name: str
    created_at: int
    updated_at: int
    description: Optional[str] = None
    routes: List[str] = field(default_factory=list)
    waypoints: List[str] = field(default_factory=list)
    color: Optional[str] = None

    def validate(self) -> None:
        self.name = validate_name(self.name)
        self.routes = [str(r) for r in (self.routes or [])]
        self.waypoints = [str(w) for w in (self.waypoints or [])]

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Project":
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            created_at=int(d["created_at"]),
            updated_at=int(d["updated_at"]),
            description=d.get("description"),
            routes=list(d.get("routes") or []),
            waypoints=list(d.get("waypoints") or []),
            color=d.get("color"),
        )


@dataclass
class ElevationProfile:
    route_id: str
    points: List[Dict[str, float]]  # {"x": lon, "y": lat, "z": meters}
    statistics: Dict[str, float]
    fetched_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ElevationProfile":
        return cls(
            route_id=str(d["route_id"]),
            points=[{"x": float(p["x"]), "y": float(p["y"]), "z": float(p["z"])} for p in d.get("points") or []],
            statistics={k: float(v) for k, v in (d.get("statistics") or {}).items()},
            fetched_at=int(d["fetched_at"]),
        )
