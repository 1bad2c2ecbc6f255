"""Learning from user feedback on address matches.

Each piece of feedback compares the text a user typed with the address it
was matched to and extracts simple patterns from the pair:

- ``word_order:`` the lower-cased words both sides share, sorted
- ``numbers:`` the numbers in the input, when both sides contain numbers
- ``postcode:`` the input's postcode, when both sides carry one
- ``building_type:`` the first building word (house, flat, ...) in the input

Every pattern keeps success and failure counters. A pattern's confidence
is its share of successes, and the confidence of a candidate match is the
mean confidence of its patterns that have been seen before.
"""
import hashlib
import logging
import re
import uuid
from typing import Callable, Optional

from address_registry.models import AddressFeedback, MatchingPattern, utcnow
from address_registry.scoring import POSTCODE_PATTERN
from address_registry.store import AddressStore

logger = logging.getLogger(__name__)

BUILDING_WORDS = ("house", "building", "flat", "apartment", "suite")
NUMBER_PATTERN = re.compile(r"\d+")


def extract_patterns(input_address: str, matched_address: str) -> list[str]:
    patterns = []

    input_words = input_address.lower().split()
    matched_words = set(matched_address.lower().split())
    common = sorted(w for w in input_words if w in matched_words)
    if common:
        patterns.append(f"word_order:{'_'.join(common)}")

    input_numbers = NUMBER_PATTERN.findall(input_address)
    if input_numbers and NUMBER_PATTERN.search(matched_address):
        patterns.append(f"numbers:{'_'.join(input_numbers)}")

    input_postcode = POSTCODE_PATTERN.search(input_address)
    if input_postcode and POSTCODE_PATTERN.search(matched_address):
        patterns.append(f"postcode:{input_postcode.group(0)}")

    lowered = input_address.lower()
    building = next((w for w in BUILDING_WORDS if w in lowered), None)
    if building:
        patterns.append(f"building_type:{building}")

    return patterns


def pattern_id(pattern: str) -> str:
    return hashlib.md5(pattern.encode("utf-8")).hexdigest()


class FeedbackLearner:
    """Stores match feedback and keeps pattern counters up to date."""

    def __init__(self, store: AddressStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    async def record_feedback(
        self,
        address_id: str,
        is_positive: bool,
        input_address: str,
        matched_address: str,
        comment: Optional[str] = None,
    ) -> AddressFeedback:
        """Save one verdict and count it against every pattern it exhibits.

        Raises ValueError if any of the identifying fields is blank.
        """
        if not address_id or not (input_address or "").strip() or not (matched_address or "").strip():
            raise ValueError("address_id, input_address and matched_address are required")

        feedback = AddressFeedback(
            id=uuid.uuid4().hex,
            address_id=address_id,
            is_positive=bool(is_positive),
            input_address=input_address.strip(),
            matched_address=matched_address.strip(),
            created_at=self.clock(),
            comment=comment,
        )
        await self.store.add_feedback(feedback)

        successes, failures = (1, 0) if feedback.is_positive else (0, 1)
        for pattern in extract_patterns(feedback.input_address, feedback.matched_address):
            await self.store.increment_pattern(
                pattern_id(pattern), pattern, successes, failures, feedback.created_at
            )

        logger.info("Recorded %s feedback for address %s",
                    "positive" if feedback.is_positive else "negative", address_id)
        return feedback

    async def get_pattern(self, pattern: str) -> Optional[MatchingPattern]:
        return await self.store.get_pattern(pattern_id(pattern))

    async def get_matching_confidence(self, input_address: str, potential_match: str) -> float:
        """Mean confidence of the known patterns for this pair, 0.0 if none are known."""
        known = []
        for pattern in extract_patterns(input_address, potential_match):
            stored = await self.get_pattern(pattern)
            if stored is not None:
                known.append(stored.confidence)
        return sum(known) / len(known) if known else 0.0
