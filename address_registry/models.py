"""Data model for canonical addresses and the reports produced around them."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float


@dataclass
class Alias:
    """A raw, as-typed string that resolved to a canonical address."""
    raw_text: str
    matched_at: datetime

    def to_dict(self) -> dict:
        return {"raw_text": self.raw_text, "matched_at": self.matched_at.isoformat()}

    @classmethod
    def from_dict(cls, data: dict) -> "Alias":
        return cls(raw_text=data["raw_text"], matched_at=_parse_ts(data["matched_at"]))


@dataclass
class Description:
    """Free-text directions a user contributed for a location."""
    content: str
    created_at: datetime
    contributor_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "contributor_id": self.contributor_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Description":
        return cls(
            content=data["content"],
            created_at=_parse_ts(data["created_at"]),
            contributor_id=data.get("contributor_id"),
        )


@dataclass
class CanonicalAddress:
    id: str
    formatted_address: str
    location: Location
    geohash: str = ""
    aliases: list[Alias] = field(default_factory=list)
    descriptions: list[Description] = field(default_factory=list)
    summary: str = ""
    confidence: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def has_alias(self, raw_text: str) -> bool:
        return any(a.raw_text == raw_text for a in self.aliases)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "formatted_address": self.formatted_address,
            "location": {"lat": self.location.lat, "lng": self.location.lng},
            "geohash": self.geohash,
            "aliases": [a.to_dict() for a in self.aliases],
            "descriptions": [d.to_dict() for d in self.descriptions],
            "summary": self.summary,
            "confidence": self.confidence,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CanonicalAddress":
        loc = data["location"]
        return cls(
            id=data["id"],
            formatted_address=data["formatted_address"],
            location=Location(lat=float(loc["lat"]), lng=float(loc["lng"])),
            geohash=data.get("geohash", ""),
            aliases=[Alias.from_dict(a) for a in data.get("aliases", [])],
            descriptions=[Description.from_dict(d) for d in data.get("descriptions", [])],
            summary=data.get("summary") or "",
            confidence=float(data.get("confidence", 0.0)),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
        )


@dataclass
class AddressComponent:
    long_name: str
    short_name: str
    types: list[str] = field(default_factory=list)


@dataclass
class GeocodeResult:
    """Normalized geocoder answer for one piece of free text."""
    formatted_address: str
    location: Location
    components: list[AddressComponent] = field(default_factory=list)

    def component(self, component_type: str) -> Optional[AddressComponent]:
        return next((c for c in self.components if component_type in c.types), None)


@dataclass
class MatchResult:
    """Outcome of resolving raw text against the registry."""
    address: Optional[CanonicalAddress] = None
    tier: Optional[str] = None  # "formatted", "alias" or "proximity"
    geocoded: Optional[GeocodeResult] = None

    @property
    def found(self) -> bool:
        return self.address is not None

    @classmethod
    def found_by(
        cls,
        address: CanonicalAddress,
        tier: str,
        geocoded: Optional[GeocodeResult] = None,
    ) -> "MatchResult":
        return cls(address=address, tier=tier, geocoded=geocoded)

    @classmethod
    def not_found(cls, geocoded: Optional[GeocodeResult] = None) -> "MatchResult":
        return cls(geocoded=geocoded)


@dataclass
class MergeLogEntry:
    """Audit record of one cluster merge. Never mutated after creation."""
    primary_id: str
    merged_ids: list[str]
    merged_addresses: list[str]
    merged_at: datetime

    def to_dict(self) -> dict:
        return {
            "primary_id": self.primary_id,
            "merged_ids": list(self.merged_ids),
            "merged_addresses": list(self.merged_addresses),
            "merged_at": self.merged_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MergeLogEntry":
        return cls(
            primary_id=data["primary_id"],
            merged_ids=list(data.get("merged_ids", [])),
            merged_addresses=list(data.get("merged_addresses", [])),
            merged_at=_parse_ts(data["merged_at"]),
        )


@dataclass
class AddressFeedback:
    """A user's verdict on whether an input was matched to the right address."""
    id: str
    address_id: str
    is_positive: bool
    input_address: str
    matched_address: str
    created_at: datetime
    comment: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AddressFeedback":
        return cls(
            id=data["id"],
            address_id=data["address_id"],
            is_positive=bool(data["is_positive"]),
            input_address=data["input_address"],
            matched_address=data["matched_address"],
            created_at=_parse_ts(data["created_at"]),
            comment=data.get("comment"),
        )


@dataclass
class MatchingPattern:
    """Success and failure counts for one input/match pattern learned from feedback."""
    id: str
    pattern: str
    success_count: int = 0
    failure_count: int = 0
    last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def confidence(self) -> float:
        total = self.success_count + self.failure_count
        return self.success_count / total if total else 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MatchingPattern":
        return cls(
            id=data["id"],
            pattern=data["pattern"],
            success_count=int(data.get("success_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            last_used=_parse_ts(data["last_used"]) if data.get("last_used") else None,
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
        )


@dataclass
class MergeError:
    cluster_ids: list[str]
    message: str


@dataclass
class OptimizationReport:
    total_records: int = 0
    clusters_found: int = 0
    clusters_merged: int = 0
    records_deleted: int = 0
    records_refreshed: int = 0
    errors: list[MergeError] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


@dataclass
class ContributionResult:
    address_id: str
    is_new_address: bool


@dataclass
class SummaryReport:
    total: int = 0
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
