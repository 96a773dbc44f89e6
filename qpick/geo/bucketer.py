"""Grid bucketing and distance helpers.

``area_key`` is the single implementation shared by the watch writer and the
notification dispatcher; both sides must agree byte-for-byte on the key.
"""

import math

from qpick.config import settings

EARTH_RADIUS_M = 6_371_008.8


def _snap(value: float, step: float) -> float:
    """Round half-up to the nearest multiple of ``step``."""
    return math.floor(value / step + 0.5) * step


def area_key(lat: float, lng: float, step: float | None = None) -> str:
    """
    Map a coordinate to its grid cell key.

    Both coordinates are rounded to the nearest multiple of ``step``
    (default 0.02 degrees, roughly 1-2 km) and formatted with two decimals.

    Args:
        lat: Latitude in degrees
        lng: Longitude in degrees
        step: Grid step in degrees

    Returns:
        Key like ``"35.68,139.76"``
    """
    lat = float(lat)
    lng = float(lng)
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValueError("lat/lng must be finite numbers")

    step = step or settings.area_grid_step
    lat_key = _snap(lat, step) + 0.0  # normalise -0.0
    lng_key = _snap(lng, step) + 0.0
    return f"{lat_key:.2f},{lng_key:.2f}"


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(lat: float, lng: float, radius_m: float) -> tuple[float, float, float, float]:
    """
    Degree box enclosing a circle, for index-friendly prefiltering.

    Returns:
        (min_lat, max_lat, min_lng, max_lng)
    """
    d_lat = math.degrees(radius_m / EARTH_RADIUS_M)
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    d_lng = min(180.0, math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat)))
    return lat - d_lat, lat + d_lat, lng - d_lng, lng + d_lng
