"""Shared utilities used across the dispatch client."""

import math

EARTH_RADIUS_KM = 6371.0


def normalize_category(value: str) -> str:
    """Normalize a service category for comparison.

    Examples:
        >>> normalize_category("  Plumber ")
        'plumber'
        >>> normalize_category("AC Repair")
        'ac repair'
    """
    return value.strip().casefold()


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
