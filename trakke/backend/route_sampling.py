import io
import math
import os
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import gpxpy
from gpxpy.gpx import GPX, GPXTrack, GPXTrackPoint, GPXTrackSegment, GPXWaypoint

from trakke.backend.models import Route, Waypoint

EARTH_RADIUS_M = 6371000.0

LonLat = Tuple[float, float]
GpxSource = Union[str, bytes, os.PathLike, io.IOBase]


def haversine_m(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance between two (lon, lat) points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def calculate_distance(coords: Sequence[LonLat]) -> float:
    """Total length of a polyline in meters."""
    total = 0.0
    for i in range(1, len(coords)):
        lon1, lat1 = coords[i - 1]
        lon2, lat2 = coords[i]
        total += haversine_m(lon1, lat1, lon2, lat2)
    return total


def cumulative_distances(points: Sequence[LonLat]) -> List[float]:
    out: List[float] = [0.0] if points else []
    for i in range(1, len(points)):
        lon1, lat1 = points[i - 1]
        lon2, lat2 = points[i]
        out.append(out[-1] + haversine_m(lon1, lat1, lon2, lat2))
    return out


def sample_coordinates(coords: Sequence[LonLat], interval_m: float = 100.0) -> List[LonLat]:
    """
    Points every `interval_m` along the line, interpolated linearly within each
    segment. The first and last input points are always kept.
    """
    if interval_m <= 0:
        raise ValueError("interval_m must be > 0")
    if len(coords) < 2:
        return [tuple(c) for c in coords]

    sampled: List[LonLat] = [tuple(coords[0])]
    accumulated = 0.0
    next_mark = interval_m

    for i in range(1, len(coords)):
        lon1, lat1 = coords[i - 1]
        lon2, lat2 = coords[i]
        seg_m = haversine_m(lon1, lat1, lon2, lat2)
        if seg_m <= 0:
            continue
        while next_mark < accumulated + seg_m:
            t = max(0.0, min(1.0, (next_mark - accumulated) / seg_m))
            sampled.append((lon1 + (lon2 - lon1) * t, lat1 + (lat2 - lat1) * t))
            next_mark += interval_m
        accumulated += seg_m

    last = tuple(coords[-1])
    if sampled[-1] != last:
        sampled.append(last)
    return sampled


# -------------------- GPX --------------------
def read_gpx(source: GpxSource) -> GPX:
    """Parse GPX from a path, an XML string/bytes or an open file."""
    if isinstance(source, bytes):
        return gpxpy.parse(source.decode('utf-8'))
    if isinstance(source, os.PathLike) or (isinstance(source, str) and not source.lstrip().startswith('<')):
        with open(source, 'r', encoding='utf-8') as f:
            return gpxpy.parse(f)
    return gpxpy.parse(source)


def gpx_coordinates(gpx: GPX) -> List[LonLat]:
    coords: List[LonLat] = []
    for track in gpx.tracks:
        for seg in track.segments:
            for p in seg.points:
                coords.append((p.longitude, p.latitude))

    for route in gpx.routes:
        for p in route.points:
            coords.append((p.longitude, p.latitude))
    return coords


def gpx_title(gpx: GPX) -> Optional[str]:
    if gpx.name:
        return gpx.name
    for track in gpx.tracks:
        if track.name:
            return track.name
    for route in gpx.routes:
        if route.name:
            return route.name
    return None


def load_gpx(source: GpxSource) -> List[LonLat]:
    """Load a GPX document and return (lon, lat) coordinates from tracks and routes."""
    coords = gpx_coordinates(read_gpx(source))
    if len(coords) < 2:
        raise ValueError("GPX must contain at least two points")
    return coords


def _gpx_waypoint(wp: Waypoint) -> GPXWaypoint:
    lon, lat = wp.coordinates
    return GPXWaypoint(
        latitude=lat,
        longitude=lon,
        elevation=wp.elevation,
        name=wp.name,
        description=wp.description,
        type=wp.category,
    )


def _gpx_track(route: Route) -> GPXTrack:
    track = GPXTrack(name=route.name, description=route.description)
    segment = GPXTrackSegment()
    for lon, lat in route.coordinates:
        segment.points.append(GPXTrackPoint(latitude=lat, longitude=lon))
    track.segments.append(segment)
    return track


def routes_to_gpx(routes: Iterable[Route], waypoints: Iterable[Waypoint] = (), name: Optional[str] = None) -> str:
    """GPX 1.1 document with one track per route plus the given waypoints."""
    gpx = GPX()
    gpx.creator = 'trakke'
    gpx.name = name
    for wp in waypoints:
        gpx.waypoints.append(_gpx_waypoint(wp))
    for route in routes:
        gpx.tracks.append(_gpx_track(route))
    return gpx.to_xml(version='1.1')


def route_to_gpx(route: Route, waypoints: Iterable[Waypoint] = ()) -> str:
    return routes_to_gpx([route], waypoints, name=route.name)
