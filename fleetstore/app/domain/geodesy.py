"""
Geodesic helpers on a spherical Earth.

Every distance test in the store (index pruning, final radius checks,
distance-traveled rollups) goes through `haversine_m` so boundary points
are classified the same way everywhere.
"""

import math
from typing import List, Sequence, Tuple

import numpy as np

# Mean Earth radius in meters
EARTH_RADIUS_M = 6371000.0

HALF_PI = math.pi / 2

# Slack added to bounding boxes so float error never prunes a boundary point
BOX_MARGIN_DEG = 1e-9

LonInterval = Tuple[float, float]
Box = Tuple[float, float, List[LonInterval]]


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in meters
    """
    lat1_rad = math.radians(lat1)
    lon1_rad = math.radians(lon1)
    lat2_rad = math.radians(lat2)
    lon2_rad = math.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def _wrap_lon_intervals(lo: float, hi: float) -> List[LonInterval]:
    if hi - lo >= 360:
        return [(-180.0, 180.0)]
    if lo < -180:
        return [(lo + 360, 180.0), (-180.0, hi)]
    if hi > 180:
        return [(lo, 180.0), (-180.0, hi - 360)]
    return [(lo, hi)]


def radius_bounding_box(lat: float, lon: float, radius_m: float) -> Box:
    """
    Conservative lat/lon box around a spherical cap.

    Returns:
        (lat_lo, lat_hi, lon_intervals); intervals are split at the
        antimeridian and cover every longitude when the cap holds a pole.
    """
    angular = radius_m / EARTH_RADIUS_M
    if angular >= math.pi:
        return -90.0, 90.0, [(-180.0, 180.0)]

    spread = math.degrees(angular)
    lat_lo = lat - spread - BOX_MARGIN_DEG
    lat_hi = lat + spread + BOX_MARGIN_DEG
    if lat_lo <= -90 or lat_hi >= 90:
        return max(lat_lo, -90.0), min(lat_hi, 90.0), [(-180.0, 180.0)]

    ratio = math.sin(angular) / math.cos(math.radians(lat))
    dlon = math.degrees(math.asin(min(1.0, ratio))) + BOX_MARGIN_DEG
    return lat_lo, lat_hi, _wrap_lon_intervals(lon - dlon, lon + dlon)


def _unit_vector(lat: float, lon: float) -> np.ndarray:
    lat_rad = math.radians(lat)
    lon_rad = math.radians(lon)
    return np.array([
        math.cos(lat_rad) * math.cos(lon_rad),
        math.cos(lat_rad) * math.sin(lon_rad),
        math.sin(lat_rad),
    ])


def _arc_latitude_extremes(a: Tuple[float, float], b: Tuple[float, float]) -> List[float]:
    """Latitudes of the great-circle vertices that fall inside arc a-b."""
    va = _unit_vector(*a)
    vb = _unit_vector(*b)
    normal = np.cross(va, vb)
    norm = float(np.linalg.norm(normal))
    if norm == 0.0:
        return []
    normal = normal / norm
    # Point of the great circle nearest the north pole
    top = np.array([0.0, 0.0, 1.0]) - normal[2] * normal
    top_norm = float(np.linalg.norm(top))
    if top_norm < 1e-15:
        return []
    top = top / top_norm

    extremes = []
    for vertex in (top, -top):
        if np.dot(np.cross(va, vertex), normal) >= 0 and np.dot(np.cross(vertex, vb), normal) >= 0:
            extremes.append(math.degrees(math.asin(max(-1.0, min(1.0, float(vertex[2]))))))
    return extremes


def polygon_bounding_box(polygon: Sequence[Tuple[float, float]]) -> Box:
    """
    Conservative lat/lon box around a polygon with great-circle edges.

    A polygon enclosing the north pole gets a box reaching 90 degrees over
    all longitudes. Polygons enclosing the south pole are not supported.
    """
    lats = [lat for lat, _ in polygon]
    lons = [lon for _, lon in polygon]
    crosses_antimeridian = False

    for i, vertex in enumerate(polygon):
        nxt = polygon[(i + 1) % len(polygon)]
        lats.extend(_arc_latitude_extremes(vertex, nxt))
        if abs(nxt[1] - vertex[1]) >= 180:
            crosses_antimeridian = True

    lat_lo = max(min(lats) - BOX_MARGIN_DEG, -90.0)
    lat_hi = min(max(lats) + BOX_MARGIN_DEG, 90.0)
    if polygon_contains(polygon, 90.0, 0.0):
        return lat_lo, 90.0, [(-180.0, 180.0)]
    if crosses_antimeridian:
        return lat_lo, lat_hi, [(-180.0, 180.0)]
    return lat_lo, lat_hi, [(min(lons) - BOX_MARGIN_DEG, max(lons) + BOX_MARGIN_DEG)]


def _wrap(value: float, low: float, high: float) -> float:
    if low <= value < high:
        return value
    return ((value - low) % (high - low)) + low


def _tan_lat_on_arc(lat1: float, lat2: float, lng2: float, lng3: float) -> float:
    """tan(latitude) of the great circle through (lat1, 0) and (lat2, lng2) at lng3."""
    return (math.tan(lat1) * math.sin(lng2 - lng3) + math.tan(lat2) * math.sin(lng3)) / math.sin(lng2)


def _edge_below(lat1: float, lat2: float, lng2: float, lat3: float, lng3: float) -> bool:
    """
    Whether the southward meridian ray from (lat3, lng3) crosses the edge
    from (lat1, 0) to (lat2, lng2). Longitudes are relative to the edge start.
    """
    if (lng3 >= 0 and lng3 >= lng2) or (lng3 < 0 and lng3 < lng2):
        return False
    if lat3 <= -HALF_PI:
        return False
    if lat1 <= -HALF_PI or lat2 <= -HALF_PI or lat1 >= HALF_PI or lat2 >= HALF_PI:
        return False
    if lng2 <= -math.pi:
        return False
    linear_lat = (lat1 * (lng2 - lng3) + lat2 * lng3) / lng2
    if lat1 >= 0 and lat2 >= 0 and lat3 < linear_lat:
        return False
    if lat1 <= 0 and lat2 <= 0 and lat3 >= linear_lat:
        return True
    if lat3 >= HALF_PI:
        return True
    return math.tan(lat3) >= _tan_lat_on_arc(lat1, lat2, lng2, lng3)


def polygon_contains(polygon: Sequence[Tuple[float, float]], lat: float, lon: float) -> bool:
    """
    Point-in-polygon test where polygon edges are great-circle arcs.

    The polygon must not enclose the south pole. Vertices count as inside.
    """
    if len(polygon) < 3:
        return False

    lat3 = math.radians(lat)
    lng3 = math.radians(lon)
    prev_lat, prev_lon = polygon[-1]
    lat1 = math.radians(prev_lat)
    lng1 = math.radians(prev_lon)

    crossings = 0
    for vertex_lat, vertex_lon in polygon:
        d_lng3 = _wrap(lng3 - lng1, -math.pi, math.pi)
        if lat3 == lat1 and d_lng3 == 0:
            return True
        lat2 = math.radians(vertex_lat)
        lng2 = math.radians(vertex_lon)
        if _edge_below(lat1, lat2, _wrap(lng2 - lng1, -math.pi, math.pi), lat3, d_lng3):
            crossings += 1
        lat1, lng1 = lat2, lng2

    return crossings % 2 == 1


def interpolate(lat1: float, lon1: float, lat2: float, lon2: float, fraction: float) -> Tuple[float, float]:
    """Point at `fraction` of the way along the great circle from 1 to 2."""
    va = _unit_vector(lat1, lon1)
    vb = _unit_vector(lat2, lon2)
    omega = math.acos(max(-1.0, min(1.0, float(np.dot(va, vb)))))
    if omega == 0.0:
        return lat1, lon1
    sin_omega = math.sin(omega)
    point = (math.sin((1 - fraction) * omega) * va + math.sin(fraction * omega) * vb) / sin_omega
    lat = math.degrees(math.asin(max(-1.0, min(1.0, float(point[2])))))
    lon = math.degrees(math.atan2(float(point[1]), float(point[0])))
    return lat, lon
