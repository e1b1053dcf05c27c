"""Great-circle distance helpers."""
import math

import numpy as np

EARTH_RADIUS_METERS = 6_371_000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance in meters between two lat/lng points given in degrees."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_METERS * c


def haversine_many(lat: float, lng: float, lats, lngs) -> np.ndarray:
    """Distances in meters from one point to every point of ``lats``/``lngs``."""
    lats = np.radians(np.asarray(lats, dtype=float))
    lngs = np.radians(np.asarray(lngs, dtype=float))
    phi = math.radians(lat)
    lam = math.radians(lng)

    a = np.sin((lats - phi) / 2.0) ** 2 + math.cos(phi) * np.cos(lats) * np.sin((lngs - lam) / 2.0) ** 2
    c = 2.0 * np.arctan2(np.sqrt(a), np.sqrt(np.clip(1.0 - a, 0.0, None)))
    return EARTH_RADIUS_METERS * c


def is_inside_circle(lat: float, lng: float, center_lat: float, center_lng: float, radius_m: float) -> bool:
    """Inside or on the boundary of a circular geofence."""
    return haversine_m(lat, lng, center_lat, center_lng) <= radius_m
