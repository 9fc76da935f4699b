"""geo.py

Shared geographic utilities used by the spatial index, the memory sources
and the remote query planner.
"""

from __future__ import annotations

from math import radians, sin, cos, asin, sqrt, isnan
from pathlib import Path
from typing import List, Union

import gpxpy

from .errors import InvalidRadiusError
from .models import GeoPoint

EARTH_RADIUS_M = 6371000.0


def haversine_m(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance in meters using the haversine formula."""
    lon1, lat1, lon2, lat2 = map(radians, (lon1, lat1, lon2, lat2))
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(a)))
    return EARTH_RADIUS_M * c


def distance_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in meters."""
    return haversine_m(a.longitude, a.latitude, b.longitude, b.latitude)


def check_radius(radius_m: float) -> float:
    """Return *radius_m* as a float, rejecting negative or NaN radii."""
    try:
        r = float(radius_m)
    except (TypeError, ValueError) as e:
        raise InvalidRadiusError(f"radius must be a number, got {radius_m!r}") from e
    if isnan(r) or r < 0:
        raise InvalidRadiusError(f"radius must be >= 0 meters, got {radius_m!r}")
    return r


def extract_gpx_fixes(gpx: gpxpy.gpx.GPX) -> List[GeoPoint]:
    """Collect all route and track positions as GeoPoints, in file order."""
    pts: List[GeoPoint] = []

    for route in gpx.routes:
        for p in route.points:
            pts.append(GeoPoint(latitude=p.latitude, longitude=p.longitude))

    for track in gpx.tracks:
        for seg in track.segments:
            for p in seg.points:
                pts.append(GeoPoint(latitude=p.latitude, longitude=p.longitude))

    return pts


def load_gpx_fixes(gpx_path: Union[str, Path]) -> List[GeoPoint]:
    """Parse a GPX file and return its positions (see :func:`extract_gpx_fixes`)."""
    with open(gpx_path, "r", encoding="utf-8") as f:
        gpx = gpxpy.parse(f)
    return extract_gpx_fixes(gpx)
