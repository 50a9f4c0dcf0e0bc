"""Best-effort IP geolocation for report enrichment."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import requests
from loguru import logger

DEFAULT_GEOLOCATION_URL = "http://ip-api.com/json"


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


class IPGeolocator:
    def __init__(self, url: str = DEFAULT_GEOLOCATION_URL, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def locate(self) -> Optional[Location]:
        """Return the device's approximate location, or None on any failure."""
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Geolocation lookup failed: {}", exc)
            return None

        lat = payload.get("lat", payload.get("latitude"))
        lon = payload.get("lon", payload.get("longitude"))
        if lat is None or lon is None:
            logger.warning("Geolocation response missing coordinates")
            return None
        try:
            return Location(float(lat), float(lon))
        except (TypeError, ValueError):
            logger.warning("Geolocation response has invalid coordinates: {}, {}", lat, lon)
            return None
