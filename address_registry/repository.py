"""Creates canonical addresses and records aliases and contributions against them."""
import logging
import uuid
from typing import Callable, Optional

from address_registry.errors import AddressNotFound
from address_registry.geo import DEFAULT_GEOHASH_PRECISION, encode_geohash
from address_registry.matcher import AddressMatcher
from address_registry.models import (
    Alias,
    CanonicalAddress,
    ContributionResult,
    Description,
    GeocodeResult,
    utcnow,
)
from address_registry.scoring import confidence
from address_registry.store import AddressStore

logger = logging.getLogger(__name__)


class AddressRepository:
    """Owns creation of canonical records so each location is stored once."""

    def __init__(
        self,
        store: AddressStore,
        matcher: AddressMatcher,
        clock: Callable = utcnow,
        geohash_precision: int = DEFAULT_GEOHASH_PRECISION,
    ):
        self.store = store
        self.matcher = matcher
        self.clock = clock
        self.geohash_precision = geohash_precision

    async def get(self, address_id: str) -> Optional[CanonicalAddress]:
        return await self.store.get(address_id)

    async def create_or_update(self, raw_text: str) -> CanonicalAddress:
        """Return the canonical record for raw_text, creating it if needed.

        An existing match gets raw_text recorded as an alias (once). Text that
        equals a stored formatted address is still geocoded and validated;
        only alias hits skip the geocoder. Raises InvalidAddress or
        GeocodingUnavailable from the matcher.
        """
        address, _created = await self._find_or_create(raw_text)
        return address

    async def contribute(
        self, raw_text: str, content: str, contributor_id: Optional[str] = None
    ) -> ContributionResult:
        """Attach a description to the address raw_text refers to, creating it if new."""
        address, created = await self._find_or_create(raw_text)
        await self.append_description(address.id, content, contributor_id)
        return ContributionResult(address_id=address.id, is_new_address=created)

    async def append_description(
        self, address_id: str, content: str, contributor_id: Optional[str] = None
    ) -> CanonicalAddress:
        content = (content or "").strip()
        if not content:
            raise ValueError("Description content must not be empty")

        description = Description(
            content=content, created_at=self.clock(), contributor_id=contributor_id
        )
        updated = await self.store.append_description(address_id, description)
        if updated is None:
            raise AddressNotFound(address_id)
        logger.info("Added description to address %s", address_id)
        return updated

    async def _find_or_create(self, raw_text: str) -> tuple[CanonicalAddress, bool]:
        match = await self.matcher.resolve(raw_text)
        if match.tier == "formatted":
            # Stored formatted text (e.g. kept by a merge) is not trusted as input
            match.geocoded = await self.matcher.geocode_valid(raw_text)
        if match.found:
            updated = await self.store.append_alias(
                match.address.id, Alias(raw_text=raw_text, matched_at=self.clock())
            )
            if updated is not None:
                return updated, False
            # Merged away between resolve and append; fall through and re-create
            logger.warning("Address %s vanished while attaching alias %r", match.address.id, raw_text)
            geocoded = match.geocoded or await self.matcher.geocode_valid(raw_text)
        else:
            geocoded = match.geocoded

        address = self._new_address(raw_text, geocoded)
        await self.store.put(address)
        logger.info("Created address %s for %r", address.id, geocoded.formatted_address)
        return address, True

    def _new_address(self, raw_text: str, geocoded: GeocodeResult) -> CanonicalAddress:
        now = self.clock()
        address = CanonicalAddress(
            id=uuid.uuid4().hex,
            formatted_address=geocoded.formatted_address,
            location=geocoded.location,
            geohash=encode_geohash(geocoded.location, self.geohash_precision),
            aliases=[Alias(raw_text=raw_text, matched_at=now)],
            descriptions=[],
            summary="",
            created_at=now,
            updated_at=now,
        )
        address.confidence = confidence(address)
        return address
