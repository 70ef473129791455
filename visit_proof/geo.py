"""Geospatial utilities (no external dependencies)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from visit_proof.models import EARTH_RADIUS_M, BoundingBox, Coordinate


@dataclass(frozen=True, slots=True)
class GeofenceResult:
    """Outcome of a point-in-circle test.

    ``bearing_deg`` (from the center towards the point) is only set when the
    point is outside, so a UI can say which way to walk.
    """

    inside: bool
    distance_m: float
    bearing_deg: float | None = None


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute Haversine distance in meters between two lat/lon points.

    Args:
        lat1: Latitude 1 in degrees.
        lon1: Longitude 1 in degrees.
        lat2: Latitude 2 in degrees.
        lon2: Longitude 2 in degrees.

    Returns:
        Distance in meters. NaN inputs propagate to a NaN result.
    """

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def distance_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates in meters."""

    return haversine_m(a.lat, a.lng, b.lat, b.lng)


def bearing_deg(start: Coordinate, end: Coordinate) -> float:
    """Initial bearing from ``start`` to ``end`` in degrees, normalized to [0, 360)."""

    phi1 = math.radians(start.lat)
    phi2 = math.radians(end.lat)
    d_lambda = math.radians(end.lng - start.lng)

    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    deg = math.degrees(math.atan2(y, x)) % 360.0
    # -0.0 % 360 and tiny negatives can round up to exactly 360.0
    return 0.0 if deg >= 360.0 else deg


def is_inside_circle(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> bool:
    """Check whether a point is inside or on the boundary of a circle geofence."""

    return haversine_m(lat, lon, center_lat, center_lon) <= radius_m


def check_geofence(point: Coordinate, center: Coordinate, radius_m: float) -> GeofenceResult:
    """Test presence of ``point`` in the circle (``center``, ``radius_m``).

    A point at exactly ``radius_m`` counts as inside. Side-effect free.
    """

    d = distance_m(point, center)
    if d <= radius_m:
        return GeofenceResult(inside=True, distance_m=d)
    return GeofenceResult(inside=False, distance_m=d, bearing_deg=bearing_deg(center, point))


def polyline_length_m(points: Sequence[Coordinate]) -> float:
    """Sum of consecutive segment distances; 0 for fewer than two points."""

    if len(points) < 2:
        return 0.0
    return sum(distance_m(points[i - 1], points[i]) for i in range(1, len(points)))


def point_at_distance(points: Sequence[Coordinate], target_m: float) -> Coordinate | None:
    """Interpolate the coordinate at cumulative distance ``target_m`` along a polyline.

    Interpolation is linear in lat/lon inside the segment that contains the
    target, which is accurate enough for the short segments routes are made of.

    Returns:
        The coordinate, or None if the polyline has fewer than two points or
        ``target_m`` is negative or beyond the total length.
    """

    if len(points) < 2 or target_m < 0:
        return None

    travelled = 0.0
    for i in range(1, len(points)):
        a = points[i - 1]
        b = points[i]
        seg = distance_m(a, b)
        if travelled + seg >= target_m:
            if seg == 0:
                return a
            ratio = (target_m - travelled) / seg
            return Coordinate(lat=a.lat + (b.lat - a.lat) * ratio, lng=a.lng + (b.lng - a.lng) * ratio)
        travelled += seg
    return None


def closest_point_on_segment(point: Coordinate, start: Coordinate, end: Coordinate) -> Coordinate:
    """Perpendicular projection of ``point`` onto segment [start, end], clamped to its ends.

    The projection is done in degree space, fine for matching a fix to a nearby
    route feature.
    """

    dx = end.lat - start.lat
    dy = end.lng - start.lng
    len_sq = dx * dx + dy * dy
    if len_sq == 0:
        return start

    t = ((point.lat - start.lat) * dx + (point.lng - start.lng) * dy) / len_sq
    if t <= 0:
        return start
    if t >= 1:
        return end
    return Coordinate(lat=start.lat + t * dx, lng=start.lng + t * dy)


def closest_point_on_polyline(point: Coordinate, points: Sequence[Coordinate]) -> Coordinate | None:
    """Closest point on any segment of the polyline, or None for an empty polyline."""

    if not points:
        return None
    if len(points) == 1:
        return points[0]

    best = points[0]
    best_d = distance_m(point, best)
    for i in range(1, len(points)):
        candidate = closest_point_on_segment(point, points[i - 1], points[i])
        d = distance_m(point, candidate)
        if d < best_d:
            best = candidate
            best_d = d
    return best


def bounding_box(points: Sequence[Coordinate]) -> BoundingBox | None:
    """Smallest lat/lon box containing every point (no antimeridian handling)."""

    if not points:
        return None
    lats = [p.lat for p in points]
    lngs = [p.lng for p in points]
    return BoundingBox(north=max(lats), south=min(lats), east=max(lngs), west=min(lngs))
