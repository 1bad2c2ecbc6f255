"""Error types raised by the address registry."""
from typing import Optional


class AddressRegistryError(Exception):
    """Base class for all registry errors."""


class InvalidAddress(AddressRegistryError):
    """Address could not be geocoded or is too coarse to identify a building."""

    def __init__(self, raw_text: str, reason: str = "ungeocodable"):
        self.raw_text = raw_text
        self.reason = reason
        super().__init__(f"Invalid address {raw_text!r}: {reason}")


class GeocodingUnavailable(AddressRegistryError):
    """Geocoding provider errored or timed out. Safe to retry later."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class AddressNotFound(AddressRegistryError):
    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__(f"Address {address_id} not found")


class StoreError(AddressRegistryError):
    """Document store read or write failed."""
