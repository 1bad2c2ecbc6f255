"""Address geocoding via the Google Geocoding API."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from address_registry.errors import GeocodingUnavailable
from address_registry.models import AddressComponent, GeocodeResult, Location

logger = logging.getLogger(__name__)


def is_usable(result: Optional[GeocodeResult]) -> bool:
    """True if the result pins a building, not just a postcode area.

    Requires a postal code plus either a street number or a route.
    """
    if result is None:
        return False
    if result.component("postal_code") is None:
        return False
    return (
        result.component("street_number") is not None
        or result.component("route") is not None
    )


class BaseGeocoder(ABC):
    """Turns free text into a formatted address with coordinates."""

    @abstractmethod
    async def geocode(self, text: str) -> Optional[GeocodeResult]:
        """Return the best match, or None if the provider found nothing.

        Raises GeocodingUnavailable when the provider cannot answer.
        """
        pass


class GoogleGeocoder(BaseGeocoder):
    BASE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
    MAX_RETRIES = 3
    RETRY_DELAYS = [1, 2, 4]  # Exponential backoff in seconds

    # Provider statuses that mean "try again later", not "bad address"
    UNAVAILABLE_STATUSES = {"OVER_QUERY_LIMIT", "OVER_DAILY_LIMIT", "REQUEST_DENIED", "UNKNOWN_ERROR"}

    def __init__(self, api_key: str, region: str = "uk", timeout: float = 10.0):
        self.api_key = api_key
        self.region = region
        self.timeout = timeout

    async def _make_request(self, params: dict) -> dict:
        last_error = None
        for attempt in range(self.MAX_RETRIES):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.BASE_URL, params=params)
                    response.raise_for_status()
                    return response.json()
            except httpx.HTTPStatusError as e:
                last_error = e
                # Retry on 503 (Service Unavailable) or 429 (Rate Limit)
                if e.response.status_code in (503, 429, 500):
                    if attempt < self.MAX_RETRIES - 1:
                        await asyncio.sleep(self.RETRY_DELAYS[attempt])
                        continue
                raise
            except httpx.TimeoutException as e:
                last_error = e
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(self.RETRY_DELAYS[attempt])
                    continue
                raise
        raise last_error

    async def geocode(self, text: str) -> Optional[GeocodeResult]:
        if not self.api_key:
            raise GeocodingUnavailable("GOOGLE_MAPS_API_KEY is not configured")

        params = {"address": text, "key": self.api_key, "region": self.region}
        try:
            data = await self._make_request(params)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geocoding request failed for %r: %s", text, e)
            raise GeocodingUnavailable(f"Geocoding request failed: {e}", cause=e) from e

        status = data.get("status", "")
        if status == "ZERO_RESULTS":
            return None
        if status != "OK":
            if status not in self.UNAVAILABLE_STATUSES:
                logger.warning("Unexpected geocoder status %s for %r", status, text)
            raise GeocodingUnavailable(
                f"Geocoder returned {status}: {data.get('error_message', '')}".strip()
            )

        results = data.get("results", [])
        if not results:
            return None
        try:
            return self._parse_result(results[0])
        except (KeyError, TypeError, ValueError) as e:
            raise GeocodingUnavailable(f"Malformed geocoder response: {e}", cause=e) from e

    @staticmethod
    def _parse_result(raw: dict) -> GeocodeResult:
        location = raw.get("geometry", {}).get("location", {})
        components = [
            AddressComponent(
                long_name=c.get("long_name", ""),
                short_name=c.get("short_name", ""),
                types=list(c.get("types", [])),
            )
            for c in raw.get("address_components", [])
        ]
        return GeocodeResult(
            formatted_address=raw.get("formatted_address", ""),
            location=Location(lat=float(location["lat"]), lng=float(location["lng"])),
            components=components,
        )
