"""
Haversine distance and instantaneous velocity.

Pure functions, no state.
"""

import math

# Mean Earth radius in meters
EARTH_RADIUS_M = 6_371_000.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points on a sphere.

    Args:
        lat1: Latitude of the first point (degrees)
        lon1: Longitude of the first point (degrees)
        lat2: Latitude of the second point (degrees)
        lon2: Longitude of the second point (degrees)

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push a fractionally above 1 for antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def instantaneous_velocity(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float,
    dt_seconds: float,
) -> float:
    """
    Speed in m/s between two fixes, or 0 when dt is not positive.

    Args:
        lat1: Previous latitude (degrees)
        lon1: Previous longitude (degrees)
        lat2: Current latitude (degrees)
        lon2: Current longitude (degrees)
        dt_seconds: Elapsed time between the fixes
    """
    if not dt_seconds > 0:
        return 0.0
    return haversine_distance(lat1, lon1, lat2, lon2) / dt_seconds
