"""Great-circle distance and instantaneous speed between smoothed fixes."""

from .distance import EARTH_RADIUS_M, haversine_distance, instantaneous_velocity

__all__ = [
    "EARTH_RADIUS_M",
    "haversine_distance",
    "instantaneous_velocity",
]
