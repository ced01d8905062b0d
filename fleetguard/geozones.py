"""
Geofence containment tests.

Everything here is pure: a geofence is anything exposing ``kind``,
``coordinates`` and ``radius_m`` (the ORM row or a plain namespace), and a
point is a ``(lat, lng)`` pair.
"""
import json
import math
from typing import Iterable, List, Optional, Tuple

from fleetguard.variables import EARTH_RADIUS_M, MOVING_SPEED

LatLng = Tuple[float, float]


class GeometryError(ValueError):
    """Raised when a geofence carries unusable coordinates."""


def distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle (haversine) distance in metres."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def parse_coordinates(raw) -> List[LatLng]:
    """
    Accept the stored coordinate list (JSON text or already decoded) and return
    a list of (lat, lng) floats. Entries may be {"lat","lng"} dicts or pairs.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise GeometryError(f"coordinates are not valid JSON: {e}") from e
    if not isinstance(raw, (list, tuple)):
        raise GeometryError("coordinates must be a list")

    points = []
    for c in raw:
        try:
            if isinstance(c, dict):
                points.append((float(c["lat"]), float(c["lng"])))
            else:
                lat, lng = c
                points.append((float(lat), float(lng)))
        except (KeyError, TypeError, ValueError) as e:
            raise GeometryError(f"bad vertex {c!r}") from e
    return points


def bounding_box(points: Iterable[LatLng]) -> Optional[dict]:
    pts = list(points)
    if not pts:
        return None
    lats = [p[0] for p in pts]
    lngs = [p[1] for p in pts]
    return {"min_lat": min(lats), "max_lat": max(lats), "min_lng": min(lngs), "max_lng": max(lngs)}


def point_in_polygon(point: LatLng, polygon: List[LatLng]) -> bool:
    """
    Even-odd ray casting. Vertex order (clockwise or not) does not matter and
    the ring is closed implicitly. Self-intersecting rings follow the even-odd
    rule; horizontal edges never flip the result.
    """
    if len(polygon) < 3:
        return False

    box = bounding_box(polygon)
    lat, lng = point
    if not (box["min_lat"] <= lat <= box["max_lat"] and box["min_lng"] <= lng <= box["max_lng"]):
        return False

    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        lat_i, lng_i = polygon[i]
        lat_j, lng_j = polygon[j]
        if (lat_i > lat) != (lat_j > lat):
            cross_lng = (lng_j - lng_i) * (lat - lat_i) / (lat_j - lat_i) + lng_i
            if lng < cross_lng:
                inside = not inside
        j = i
    return inside


def point_in_circle(point: LatLng, center: LatLng, radius_m: float) -> bool:
    # boundary counts as inside
    return distance_m(point[0], point[1], center[0], center[1]) <= radius_m


def contains(point: LatLng, geofence) -> bool:
    """Is ``point`` inside ``geofence``?"""
    coords = parse_coordinates(geofence.coordinates)

    if (geofence.kind or "polygon") == "circle":
        if not coords:
            raise GeometryError("circle geofence without centre")
        return point_in_circle(point, coords[0], float(geofence.radius_m or 0))

    return point_in_polygon(point, coords)


def is_moving(speed, threshold: float = MOVING_SPEED) -> bool:
    return float(speed or 0) > threshold
