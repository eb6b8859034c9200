from __future__ import annotations

from ibadah_cli.models import GeoCoordinate, InvalidInput
from ibadah_cli.qibla import (
    KAABA,
    QiblaDirection,
    calculate_qibla,
    format_distance,
    get_cardinal_direction,
    haversine_distance,
)

JAKARTA = GeoCoordinate(latitude=-6.2088, longitude=106.8456)
LONDON = GeoCoordinate(latitude=51.5074, longitude=-0.1278)
NEW_YORK = GeoCoordinate(latitude=40.7128, longitude=-74.0060)


def test_london_faces_south_east() -> None:
    result = calculate_qibla(LONDON)
    assert isinstance(result, QiblaDirection)
    assert 118.0 < result.bearing_degrees < 120.0
    assert result.cardinal == "SE"
    assert 4700 < result.distance_km < 4850


def test_jakarta_faces_north_west() -> None:
    result = calculate_qibla(JAKARTA)
    assert isinstance(result, QiblaDirection)
    assert 290.0 < result.bearing_degrees < 297.0
    assert result.description == "North-West"


def test_bearing_stays_in_range() -> None:
    for coordinate in (LONDON, JAKARTA, NEW_YORK, GeoCoordinate(-33.8688, 151.2093), GeoCoordinate(0.0, -179.9)):
        result = calculate_qibla(coordinate)
        assert isinstance(result, QiblaDirection)
        assert 0.0 <= result.bearing_degrees < 360.0


def test_distance_is_symmetric() -> None:
    forward = haversine_distance(LONDON.latitude, LONDON.longitude, NEW_YORK.latitude, NEW_YORK.longitude)
    backward = haversine_distance(NEW_YORK.latitude, NEW_YORK.longitude, LONDON.latitude, LONDON.longitude)
    assert abs(forward - backward) < 1e-6


def test_at_the_kaaba_distance_is_zero() -> None:
    result = calculate_qibla(KAABA)
    assert isinstance(result, QiblaDirection)
    assert result.distance_km < 1e-6


def test_invalid_coordinate() -> None:
    assert isinstance(calculate_qibla(GeoCoordinate(-95.0, 0.0)), InvalidInput)


def test_cardinal_wraps_north() -> None:
    assert get_cardinal_direction(359.0) == "N"
    assert get_cardinal_direction(0.0) == "N"
    assert get_cardinal_direction(90.0) == "E"


def test_format_distance() -> None:
    assert format_distance(0.85) == "850 m"
    assert format_distance(1234.4) == "1,234 km"
