"""Document store abstraction for canonical addresses.

Matching and merge logic only talk to AddressStore, so the backing store can
be swapped without touching them. Single-record writes are atomic store
primitives (the equivalent of a document database's array-union or
field update), never a read-modify-write done by the caller.
"""
import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from address_registry.errors import StoreError
from address_registry.models import (
    AddressFeedback,
    Alias,
    CanonicalAddress,
    Description,
    MatchingPattern,
    MergeLogEntry,
)

logger = logging.getLogger(__name__)


class AddressStore(ABC):
    """Get/query/put/delete over the address collection, plus the merge log
    and the matching feedback collections."""

    @abstractmethod
    async def get(self, address_id: str) -> Optional[CanonicalAddress]:
        pass

    @abstractmethod
    async def find_by_formatted_address(self, text: str) -> Optional[CanonicalAddress]:
        pass

    @abstractmethod
    async def find_by_alias(self, raw_text: str) -> Optional[CanonicalAddress]:
        pass

    @abstractmethod
    async def list_all(self) -> list[CanonicalAddress]:
        pass

    @abstractmethod
    async def put(self, address: CanonicalAddress) -> None:
        """Insert or fully replace a record."""
        pass

    @abstractmethod
    async def delete(self, address_id: str) -> bool:
        """Delete a record. Returns False (not an error) if it was already gone."""
        pass

    @abstractmethod
    async def append_alias(self, address_id: str, alias: Alias) -> Optional[CanonicalAddress]:
        """Atomically add an alias unless one with the same raw_text exists.

        Returns the updated record, or None if the record does not exist.
        """
        pass

    @abstractmethod
    async def append_description(
        self, address_id: str, description: Description
    ) -> Optional[CanonicalAddress]:
        """Atomically append a description. Returns None if the record does not exist."""
        pass

    @abstractmethod
    async def set_summary(
        self, address_id: str, summary: str, updated_at: datetime
    ) -> Optional[CanonicalAddress]:
        pass

    @abstractmethod
    async def set_derived_fields(
        self, address_id: str, confidence: float, geohash: str, updated_at: datetime
    ) -> Optional[CanonicalAddress]:
        """Update only confidence and geohash, leaving aliases and descriptions alone."""
        pass

    @abstractmethod
    async def append_merge_log(self, entry: MergeLogEntry) -> None:
        pass

    @abstractmethod
    async def list_merge_logs(self) -> list[MergeLogEntry]:
        pass

    @abstractmethod
    async def add_feedback(self, feedback: AddressFeedback) -> None:
        pass

    @abstractmethod
    async def list_feedback(self) -> list[AddressFeedback]:
        pass

    @abstractmethod
    async def get_pattern(self, pattern_id: str) -> Optional[MatchingPattern]:
        pass

    @abstractmethod
    async def increment_pattern(
        self, pattern_id: str, pattern: str, successes: int, failures: int, used_at: datetime
    ) -> MatchingPattern:
        """Atomically bump a pattern's counters, creating it on first use."""
        pass


@dataclass
class _State:
    addresses: dict = field(default_factory=dict)
    merge_logs: list = field(default_factory=list)
    feedback: list = field(default_factory=list)
    patterns: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "addresses": list(self.addresses.values()),
            "merge_logs": self.merge_logs,
            "feedback": self.feedback,
            "patterns": list(self.patterns.values()),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "_State":
        return cls(
            addresses={doc["id"]: doc for doc in data.get("addresses", [])},
            merge_logs=list(data.get("merge_logs", [])),
            feedback=list(data.get("feedback", [])),
            patterns={doc["id"]: doc for doc in data.get("patterns", [])},
        )


class InMemoryAddressStore(AddressStore):
    """Dict-backed store. Documents are kept serialized so callers never share state.

    Every mutation works on a copy of the state and only replaces the live
    state once the copy has been committed.
    """

    def __init__(self):
        self._state = _State()
        self._lock = asyncio.Lock()

    async def _read(self) -> _State:
        return self._state

    async def _begin(self) -> _State:
        return copy.deepcopy(self._state)

    async def _commit(self, state: _State) -> None:
        self._state = state

    async def _rollback(self) -> None:
        pass

    @asynccontextmanager
    async def _transaction(self):
        async with self._lock:
            state = await self._begin()
            try:
                yield state
            except BaseException:
                await self._rollback()
                raise
            await self._commit(state)

    async def get(self, address_id: str) -> Optional[CanonicalAddress]:
        doc = (await self._read()).addresses.get(address_id)
        return CanonicalAddress.from_dict(doc) if doc else None

    async def find_by_formatted_address(self, text: str) -> Optional[CanonicalAddress]:
        for doc in (await self._read()).addresses.values():
            if doc["formatted_address"] == text:
                return CanonicalAddress.from_dict(doc)
        return None

    async def find_by_alias(self, raw_text: str) -> Optional[CanonicalAddress]:
        for doc in (await self._read()).addresses.values():
            if any(a["raw_text"] == raw_text for a in doc.get("aliases", [])):
                return CanonicalAddress.from_dict(doc)
        return None

    async def list_all(self) -> list[CanonicalAddress]:
        state = await self._read()
        return [CanonicalAddress.from_dict(doc) for doc in list(state.addresses.values())]

    async def put(self, address: CanonicalAddress) -> None:
        async with self._transaction() as state:
            state.addresses[address.id] = address.to_dict()

    async def delete(self, address_id: str) -> bool:
        async with self._transaction() as state:
            return state.addresses.pop(address_id, None) is not None

    async def append_alias(self, address_id: str, alias: Alias) -> Optional[CanonicalAddress]:
        async with self._transaction() as state:
            doc = state.addresses.get(address_id)
            if doc is None:
                return None
            if not any(a["raw_text"] == alias.raw_text for a in doc["aliases"]):
                doc["aliases"].append(alias.to_dict())
                doc["updated_at"] = alias.matched_at.isoformat()
            return CanonicalAddress.from_dict(doc)

    async def append_description(
        self, address_id: str, description: Description
    ) -> Optional[CanonicalAddress]:
        async with self._transaction() as state:
            doc = state.addresses.get(address_id)
            if doc is None:
                return None
            doc["descriptions"].append(description.to_dict())
            doc["updated_at"] = description.created_at.isoformat()
            return CanonicalAddress.from_dict(doc)

    async def set_summary(
        self, address_id: str, summary: str, updated_at: datetime
    ) -> Optional[CanonicalAddress]:
        async with self._transaction() as state:
            doc = state.addresses.get(address_id)
            if doc is None:
                return None
            doc["summary"] = summary
            doc["updated_at"] = updated_at.isoformat()
            return CanonicalAddress.from_dict(doc)

    async def set_derived_fields(
        self, address_id: str, confidence: float, geohash: str, updated_at: datetime
    ) -> Optional[CanonicalAddress]:
        async with self._transaction() as state:
            doc = state.addresses.get(address_id)
            if doc is None:
                return None
            doc["confidence"] = confidence
            doc["geohash"] = geohash
            doc["updated_at"] = updated_at.isoformat()
            return CanonicalAddress.from_dict(doc)

    async def append_merge_log(self, entry: MergeLogEntry) -> None:
        async with self._transaction() as state:
            state.merge_logs.append(entry.to_dict())

    async def list_merge_logs(self) -> list[MergeLogEntry]:
        return [MergeLogEntry.from_dict(e) for e in (await self._read()).merge_logs]

    async def add_feedback(self, feedback: AddressFeedback) -> None:
        async with self._transaction() as state:
            state.feedback.append(feedback.to_dict())

    async def list_feedback(self) -> list[AddressFeedback]:
        return [AddressFeedback.from_dict(f) for f in (await self._read()).feedback]

    async def get_pattern(self, pattern_id: str) -> Optional[MatchingPattern]:
        doc = (await self._read()).patterns.get(pattern_id)
        return MatchingPattern.from_dict(doc) if doc else None

    async def increment_pattern(
        self, pattern_id: str, pattern: str, successes: int, failures: int, used_at: datetime
    ) -> MatchingPattern:
        async with self._transaction() as state:
            doc = state.patterns.get(pattern_id)
            if doc is None:
                doc = MatchingPattern(
                    id=pattern_id, pattern=pattern, created_at=used_at, updated_at=used_at
                ).to_dict()
                state.patterns[pattern_id] = doc
            doc["success_count"] += successes
            doc["failure_count"] += failures
            doc["last_used"] = used_at.isoformat()
            doc["updated_at"] = used_at.isoformat()
            return MatchingPattern.from_dict(doc)


class JsonFileAddressStore(InMemoryAddressStore):
    """Store persisted to a JSON file, shareable between processes.

    Each mutation takes an exclusive lock on a sidecar ``.lock`` file, reloads
    the file so writes from other processes are kept, applies the change and
    writes it back through an atomic rename. Reads reload the file too.
    """

    LOCK_TIMEOUT = 30.0

    def __init__(self, path, lock_timeout: float = LOCK_TIMEOUT):
        super().__init__()
        self.path = Path(path)
        self._file_lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)
        self._state = self._load()

    def _load(self) -> _State:
        if not self.path.exists():
            return _State()
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StoreError(f"Could not read address store {self.path}: {e}") from e
        state = _State.from_dict(data)
        logger.debug("Loaded %d addresses from %s", len(state.addresses), self.path)
        return state

    def _write(self, state: _State) -> None:
        try:
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
            tmp_path.replace(self.path)
        except OSError as e:
            raise StoreError(f"Could not write address store {self.path}: {e}") from e

    async def _read(self) -> _State:
        self._state = self._load()
        return self._state

    async def _begin(self) -> _State:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._file_lock.acquire()
        except Timeout as e:
            raise StoreError(f"Timed out waiting for lock on {self.path}") from e
        try:
            return self._load()
        except StoreError:
            self._file_lock.release()
            raise

    async def _commit(self, state: _State) -> None:
        try:
            self._write(state)
            self._state = state
        finally:
            self._file_lock.release()

    async def _rollback(self) -> None:
        self._file_lock.release()
