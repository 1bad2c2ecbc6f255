"""Resolves free-text addresses to existing canonical records.

Tiers run in strict order and the first hit wins:

1. the raw text is already some record's formatted address
2. the raw text is a known alias (no geocoding call)
3. geocode, then look for the geocoded formatted address or any record
   within the proximity threshold
"""
import asyncio
import logging
from typing import Optional

from address_registry.errors import GeocodingUnavailable, InvalidAddress
from address_registry.geo import distance_meters
from address_registry.geocoder import BaseGeocoder, is_usable
from address_registry.models import CanonicalAddress, GeocodeResult, MatchResult
from address_registry.store import AddressStore

logger = logging.getLogger(__name__)

DEFAULT_PROXIMITY_THRESHOLD_METERS = 10.0
# Absorbs float rounding so a point exactly on the threshold still matches
DISTANCE_EPSILON_METERS = 1e-6


class AddressMatcher:
    """Finds the canonical record a raw address string refers to, if any."""

    def __init__(
        self,
        store: AddressStore,
        geocoder: BaseGeocoder,
        proximity_threshold_m: float = DEFAULT_PROXIMITY_THRESHOLD_METERS,
        geocode_timeout: Optional[float] = None,
    ):
        self.store = store
        self.geocoder = geocoder
        self.proximity_threshold_m = proximity_threshold_m
        self.geocode_timeout = geocode_timeout

    async def resolve(self, raw_text: str) -> MatchResult:
        """Resolve raw text to an existing record.

        Returns MatchResult.not_found(geocoded=...) when the address is valid
        but unknown, so callers can create a record without geocoding again.

        Raises:
            InvalidAddress: blank input, no geocoder result, or a result too
                coarse to identify a building.
            GeocodingUnavailable: the geocoder failed or timed out.
        """
        if not raw_text or not raw_text.strip():
            raise InvalidAddress(raw_text or "", reason="empty")

        existing = await self.store.find_by_formatted_address(raw_text)
        if existing:
            logger.debug("Resolved %r by formatted address -> %s", raw_text, existing.id)
            return MatchResult.found_by(existing, tier="formatted")

        existing = await self.store.find_by_alias(raw_text)
        if existing:
            logger.debug("Resolved %r by alias -> %s", raw_text, existing.id)
            return MatchResult.found_by(existing, tier="alias")

        geocoded = await self.geocode_valid(raw_text)

        existing = await self.store.find_by_formatted_address(geocoded.formatted_address)
        if existing:
            logger.debug("Resolved %r by geocoded address -> %s", raw_text, existing.id)
            return MatchResult.found_by(existing, tier="proximity", geocoded=geocoded)

        existing = await self.find_nearby(geocoded)
        if existing:
            logger.debug("Resolved %r by proximity -> %s", raw_text, existing.id)
            return MatchResult.found_by(existing, tier="proximity", geocoded=geocoded)

        return MatchResult.not_found(geocoded=geocoded)

    async def geocode_valid(self, raw_text: str) -> GeocodeResult:
        """Geocode and apply the validity rule, raising InvalidAddress on failure."""
        try:
            if self.geocode_timeout is not None:
                result = await asyncio.wait_for(
                    self.geocoder.geocode(raw_text), timeout=self.geocode_timeout
                )
            else:
                result = await self.geocoder.geocode(raw_text)
        except asyncio.TimeoutError as e:
            raise GeocodingUnavailable(f"Geocoding timed out for {raw_text!r}", cause=e) from e

        if result is None:
            raise InvalidAddress(raw_text, reason="ungeocodable")
        if not is_usable(result):
            raise InvalidAddress(raw_text, reason="needs street number or street name and postcode")
        return result

    async def find_nearby(self, geocoded: GeocodeResult) -> Optional[CanonicalAddress]:
        """First record within the proximity threshold of the geocoded point."""
        # Linear scan; a larger collection would bucket by geohash prefix first
        limit = self.proximity_threshold_m + DISTANCE_EPSILON_METERS
        for address in await self.store.list_all():
            if distance_meters(address.location, geocoded.location) <= limit:
                return address
        return None
