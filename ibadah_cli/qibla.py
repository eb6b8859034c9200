from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .models import GeoCoordinate, InvalidInput

logger = logging.getLogger(__name__)

KAABA = GeoCoordinate(latitude=21.4225, longitude=39.8262)
EARTH_RADIUS_KM = 6371

CARDINAL_DIRECTIONS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")
DIRECTION_DESCRIPTIONS = (
    "North",
    "North-East",
    "East",
    "South-East",
    "South",
    "South-West",
    "West",
    "North-West",
)


@dataclass(frozen=True)
class QiblaDirection:
    bearing_degrees: float
    distance_km: float

    @property
    def cardinal(self) -> str:
        return get_cardinal_direction(self.bearing_degrees)

    @property
    def description(self) -> str:
        return get_direction_description(self.bearing_degrees)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def initial_bearing(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle initial bearing from point 1 to point 2, in [0, 360)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_lon = math.radians(lon2 - lon1)

    y = math.sin(d_lon) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lon)
    bearing = math.degrees(math.atan2(y, x)) % 360.0
    # -0.0 % 360 and tiny negatives can round up to exactly 360.0
    return 0.0 if bearing >= 360.0 else bearing


def calculate_qibla(coordinate: GeoCoordinate, target: GeoCoordinate = KAABA) -> QiblaDirection | InvalidInput:
    error = coordinate.validate()
    if error:
        return error

    bearing = initial_bearing(coordinate.latitude, coordinate.longitude, target.latitude, target.longitude)
    distance = haversine_distance(coordinate.latitude, coordinate.longitude, target.latitude, target.longitude)
    logger.debug("Qibla bearing %.2f deg, distance %.2f km", bearing, distance)
    return QiblaDirection(bearing_degrees=bearing, distance_km=distance)


def get_cardinal_direction(bearing: float) -> str:
    return CARDINAL_DIRECTIONS[round(bearing / 45) % 8]


def get_direction_description(bearing: float) -> str:
    return DIRECTION_DESCRIPTIONS[round(bearing / 45) % 8]


def format_distance(kilometers: float) -> str:
    if kilometers < 1:
        return f"{round(kilometers * 1000)} m"
    return f"{round(kilometers):,} km"
