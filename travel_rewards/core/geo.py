from __future__ import annotations
import math

from .errors import ValidationError

EARTH_RADIUS_M = 6_371_000.0

def validate_coordinates(lat: float, lon: float) -> None:
    if lat is None or lon is None:
        raise ValidationError("Latitude and longitude are required")
    if not (-90.0 <= lat <= 90.0):
        raise ValidationError("Latitude must be between -90 and 90", field="lat")
    if not (-180.0 <= lon <= 180.0):
        raise ValidationError("Longitude must be between -180 and 180", field="lon")

def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle (haversine) distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    # clamp: float error can push a past 1 for antipodal points
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, a)))

def is_within_radius(dest_lat: float, dest_lon: float, user_lat: float, user_lon: float, radius_m: float) -> bool:
    return distance_meters(dest_lat, dest_lon, user_lat, user_lon) <= radius_m
