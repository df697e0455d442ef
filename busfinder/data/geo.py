"""
Haversine distance for nearby stop queries.
"""
import math

# Earth radius in meters (mean radius)
EARTH_RADIUS_M = 6_371_000.0


def haversine_distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Return great-circle distance between two points in meters.
    Arguments in degrees.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def longitude_delta_deg(lng1: float, lng2: float) -> float:
    """Absolute longitude difference in degrees, wrapped across the antimeridian."""
    return abs((lng2 - lng1 + 180.0) % 360.0 - 180.0)


def bbox_delta_deg(lat: float, radius_m: float) -> tuple[float, float]:
    """
    Lat/lng half-widths (degrees) of a box that contains every point within
    radius_m of a point at lat. dlng is inf when the box reaches a pole.
    """
    # 1 deg lat ~ 111 km; 1 deg lng ~ 111 * cos(lat) km, narrowest at the box edge nearest the pole
    dlat = radius_m / 1000.0 / 111.0
    cos_edge = math.cos(math.radians(min(90.0, abs(lat) + dlat)))
    if cos_edge <= 0.01:
        return dlat, math.inf
    return dlat, dlat / cos_edge
