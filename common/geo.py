from __future__ import annotations

import math


# -------------------------
# Great-circle & bearings
# -------------------------
def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance on a spherical Earth (meters)."""
    R = 6371008.8  # mean Earth radius (m)
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dphi = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2.0) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2.0) ** 2
    return 2 * R * math.asin(math.sqrt(a))


def initial_bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial great-circle bearing from point 1 to point 2 (degrees, 0..360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dl = math.radians(lon2 - lon1)
    y = math.sin(dl) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dl)
    b = math.degrees(math.atan2(y, x))
    return (b + 360.0) % 360.0


def fallback_heading_deg(query_lat: float, query_lon: float, ref_lat: float, ref_lon: float) -> float:
    """
    Heading used when the imagery service does not report one: the direction
    from the query point to the returned reference location, atan2(dlon, dlat)
    in degrees (-180..180].

    NOTE: approximation. Degrees of longitude are treated as if they were the
    same length as degrees of latitude (locally flat, small offsets), so the
    result drifts away from the true bearing at high latitudes and is wrong
    across the anti-meridian. initial_bearing_deg() is the exact version.
    Returns 0.0 when both points coincide.
    """
    dx = ref_lon - query_lon
    dy = ref_lat - query_lat
    return math.degrees(math.atan2(dx, dy))
