"""Slippy-map (Web Mercator, 256 px, zero-indexed) tile arithmetic.

The index functions do not clamp latitude or wrap longitude; callers do that
with `clamp_bounds()` (or `clamp_latitude()` / `normalize_longitude()`) before
asking for indices.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Tuple

from trakke.backend.models import Bounds, DownloadArea

# Just inside atan(sinh(pi)) and 180 so the edges map to row 0 / n-1 and column n-1
MAX_LATITUDE = 85.051128779
MAX_LONGITUDE = 180.0 - 1e-9


def lon_to_tile_x(lon: float, zoom: int) -> int:
    return int(math.floor((lon + 180.0) / 360.0 * (2 ** zoom)))


def lat_to_tile_y(lat: float, zoom: int) -> int:
    lat_rad = math.radians(lat)
    n = 2 ** zoom
    return int(math.floor((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n))


def tile_x_to_lon(x: int, zoom: int) -> float:
    return x / (2 ** zoom) * 360.0 - 180.0


def tile_y_to_lat(y: int, zoom: int) -> float:
    n = math.pi - 2.0 * math.pi * y / (2 ** zoom)
    return math.degrees(math.atan(math.sinh(n)))


def tile_bounds(z: int, x: int, y: int) -> Bounds:
    """Geographic bounds of one tile (inverse of the index functions)."""
    return Bounds(
        north=tile_y_to_lat(y, z),
        south=tile_y_to_lat(y + 1, z),
        east=tile_x_to_lon(x + 1, z),
        west=tile_x_to_lon(x, z),
    )


def clamp_latitude(lat: float) -> float:
    return max(-MAX_LATITUDE, min(MAX_LATITUDE, float(lat)))


def clamp_bounds(bounds: Bounds) -> Bounds:
    """Pull latitudes into the Mercator range and longitudes into [-180, 180)."""
    return Bounds(
        north=clamp_latitude(bounds.north),
        south=clamp_latitude(bounds.south),
        east=max(-180.0, min(MAX_LONGITUDE, float(bounds.east))),
        west=max(-180.0, min(MAX_LONGITUDE, float(bounds.west))),
    )


def normalize_longitude(lon: float) -> float:
    """Wrap into [-180, 180)."""
    return ((float(lon) + 180.0) % 360.0) - 180.0


def tile_key(z: int, x: int, y: int) -> str:
    return f"{z}/{x}/{y}"


def parse_tile_key(key: str) -> Tuple[int, int, int]:
    z, x, y = key.split("/")
    return int(z), int(x), int(y)


@dataclass(frozen=True)
class TileRange:
    zoom: int
    x_min: int
    x_max: int
    y_min: int
    y_max: int

    @property
    def count(self) -> int:
        return (self.x_max - self.x_min + 1) * (self.y_max - self.y_min + 1)

    def __iter__(self) -> Iterator[Tuple[int, int, int]]:
        for x in range(self.x_min, self.x_max + 1):
            for y in range(self.y_min, self.y_max + 1):
                yield self.zoom, x, y


def tile_range(bounds: Bounds, zoom: int) -> TileRange:
    """Index rectangle covering `bounds` at `zoom`, normalized so min <= max."""
    x_a = lon_to_tile_x(bounds.west, zoom)
    x_b = lon_to_tile_x(bounds.east, zoom)
    # y grows southwards
    y_a = lat_to_tile_y(bounds.north, zoom)
    y_b = lat_to_tile_y(bounds.south, zoom)
    return TileRange(zoom=zoom, x_min=min(x_a, x_b), x_max=max(x_a, x_b), y_min=min(y_a, y_b), y_max=max(y_a, y_b))


def count_area_tiles(area: DownloadArea) -> int:
    return sum(tile_range(area.bounds, z).count for z in area.zoom_levels)


def iter_area_tiles(area: DownloadArea) -> Iterator[Tuple[int, int, int]]:
    """Yield (z, x, y): zoom ascending, then x ascending, then y ascending."""
    for z in area.zoom_levels:
        yield from tile_range(area.bounds, z)
