from __future__ import annotations

import logging

import httpx

from .models import GeoCoordinate, Location

logger = logging.getLogger(__name__)

IP_GEOLOCATION_URL = "https://ipapi.co/json/"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
USER_AGENT = "Ibadah CLI"


class LocationUnavailable(RuntimeError):
    pass


def _coordinate(lat: object, lon: object) -> GeoCoordinate:
    try:
        coordinate = GeoCoordinate(latitude=float(lat), longitude=float(lon))  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise LocationUnavailable("Location provider returned no coordinates") from exc

    error = coordinate.validate()
    if error:
        raise LocationUnavailable(error.reason)
    return coordinate


def detect_location_from_ip() -> Location:
    try:
        with httpx.Client(timeout=10.0, headers={"User-Agent": USER_AGENT}) as client:
            response = client.get(IP_GEOLOCATION_URL)
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise LocationUnavailable(f"IP geolocation failed: {exc}") from exc

    label = ", ".join(part for part in (data.get("city"), data.get("country_name")) if part) or None
    logger.debug("Detected location %s from IP", label)
    return Location(coordinate=_coordinate(data.get("latitude"), data.get("longitude")), label=label)


def search_locations(query: str, limit: int = 5) -> list[Location]:
    params = {
        "format": "json",
        "limit": str(limit),
        "addressdetails": "1",
        "q": query,
    }

    try:
        with httpx.Client(timeout=15.0, headers={"User-Agent": USER_AGENT}) as client:
            response = client.get(NOMINATIM_URL, params=params)
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise LocationUnavailable(f"Location search failed: {exc}") from exc

    locations: list[Location] = []
    for item in data:
        try:
            coordinate = _coordinate(item.get("lat"), item.get("lon"))
        except LocationUnavailable:
            continue
        locations.append(Location(coordinate=coordinate, label=item.get("display_name")))

    return locations
