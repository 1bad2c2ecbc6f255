import math
import os
from datetime import datetime, timedelta, timezone

import pytest
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from address_registry.models import (
    AddressComponent,
    Alias,
    CanonicalAddress,
    Description,
    GeocodeResult,
    Location,
)
from address_registry.store import InMemoryAddressStore

BASE_LOCATION = Location(lat=51.5186, lng=-0.1019)
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    config.addinivalue_line("markers", "live: marks tests that hit the real geocoding API (deselect with '-m not live')")


def pytest_collection_modifyitems(config, items):
    # Skip live tests unless --run-live is passed or RUN_LIVE_TESTS=1
    run_live = config.getoption("--run-live", default=False) or os.environ.get("RUN_LIVE_TESTS") == "1"
    if not run_live:
        skip_live = pytest.mark.skip(reason="Live tests skipped. Use --run-live or RUN_LIVE_TESTS=1")
        for item in items:
            if "live" in item.keywords:
                item.add_marker(skip_live)


def pytest_addoption(parser):
    parser.addoption("--run-live", action="store_true", default=False, help="Run live integration tests against the real geocoding API")


def north_of(location: Location, meters: float) -> Location:
    """Point the given distance due north of location."""
    return Location(lat=location.lat + math.degrees(meters / 6371000.0), lng=location.lng)


def street_result(formatted: str, location: Location, postcode: str = "EC1A 9HX") -> GeocodeResult:
    return GeocodeResult(
        formatted_address=formatted,
        location=location,
        components=[
            AddressComponent("35", "35", ["street_number"]),
            AddressComponent("West Smithfield", "W Smithfield", ["route"]),
            AddressComponent("London", "London", ["postal_town"]),
            AddressComponent(postcode, postcode, ["postal_code"]),
        ],
    )


def postcode_only_result(postcode: str, location: Location) -> GeocodeResult:
    return GeocodeResult(
        formatted_address=f"London {postcode}, UK",
        location=location,
        components=[
            AddressComponent("London", "London", ["postal_town"]),
            AddressComponent(postcode, postcode, ["postal_code"]),
        ],
    )


class FakeGeocoder:
    """Geocoder double answering from a dict and counting calls."""

    def __init__(self, responses=None, error=None):
        self.responses = dict(responses or {})
        self.error = error
        self.calls: list[str] = []

    async def geocode(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.responses.get(text)


class Clock:
    """Deterministic clock; each call advances one second."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture
def store():
    return InMemoryAddressStore()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_address():
    """Factory for CanonicalAddress records with sensible defaults."""
    def _make(
        address_id: str,
        formatted: str = "35 West Smithfield, London EC1A 9HX, UK",
        location: Location = BASE_LOCATION,
        aliases=(),
        descriptions=(),
        summary: str = "",
        created_at: datetime = FIXED_NOW,
    ) -> CanonicalAddress:
        return CanonicalAddress(
            id=address_id,
            formatted_address=formatted,
            location=location,
            aliases=[
                a if isinstance(a, Alias) else Alias(raw_text=a, matched_at=created_at)
                for a in aliases
            ],
            descriptions=[
                d if isinstance(d, Description) else Description(content=d, created_at=created_at)
                for d in descriptions
            ],
            summary=summary,
            created_at=created_at,
            updated_at=created_at,
        )
    return _make
