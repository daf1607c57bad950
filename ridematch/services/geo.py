"""
Great-circle helpers used by pricing, matching and the geofence monitor.
"""
import math
from math import radians, degrees, sin, cos, sqrt, atan2

EARTH_RADIUS_KM = 6371.0

_COMPASS = ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Straight-line distance in km between two coordinates."""
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lng2 - lng1)
    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * atan2(sqrt(a), sqrt(1 - a))


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return haversine_km(lat1, lng1, lat2, lng2) * 1000


def bearing_deg(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Initial bearing from point 1 to point 2, in degrees clockwise from north [0, 360)."""
    phi1, phi2 = radians(lat1), radians(lat2)
    dlambda = radians(lng2 - lng1)
    y = sin(dlambda) * cos(phi2)
    x = cos(phi1) * sin(phi2) - sin(phi1) * cos(phi2) * cos(dlambda)
    return (degrees(atan2(y, x)) + 360) % 360


def compass_direction(bearing: float) -> str:
    return _COMPASS[round(bearing / 45) % 8]


def estimate_eta_minutes(distance_km: float, average_speed_kmh: float) -> float:
    if average_speed_kmh <= 0:
        raise ValueError("average_speed_kmh must be positive")
    return distance_km / average_speed_kmh * 60


def eta_whole_minutes(distance_km: float, average_speed_kmh: float) -> int:
    """ETA rounded up to whole minutes, as shown to passengers."""
    return math.ceil(estimate_eta_minutes(distance_km, average_speed_kmh))


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.1f} km"
