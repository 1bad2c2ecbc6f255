"""Quality scoring for canonical addresses.

Two scores with similar inputs but different jobs:

completeness (uncapped, only used to pick the surviving record of a merge):
- 0.2 per alias
- 0.3 per description
- 0.2 if the formatted address contains a comma
- 0.3 if the formatted address contains a UK postcode

confidence (capped at 1.0, persisted on the record):
- 0.1 per alias, counting at most 3
- 0.1 per description, counting at most 3
- 0.2 if the formatted address contains a comma
- 0.2 if the formatted address contains a UK postcode
"""
import re
from typing import Sequence

from address_registry.models import CanonicalAddress

# UK-only for now; other regions would need their own pattern
POSTCODE_PATTERN = re.compile(r"[A-Z]{1,2}[0-9][A-Z0-9]? ?[0-9][A-Z]{2}", re.IGNORECASE)

WEIGHT_COMPLETENESS_ALIAS = 0.2
WEIGHT_COMPLETENESS_DESCRIPTION = 0.3
WEIGHT_COMPLETENESS_COMMA = 0.2
WEIGHT_COMPLETENESS_POSTCODE = 0.3

WEIGHT_CONFIDENCE_ALIAS = 0.1
WEIGHT_CONFIDENCE_DESCRIPTION = 0.1
WEIGHT_CONFIDENCE_COMMA = 0.2
WEIGHT_CONFIDENCE_POSTCODE = 0.2
CONFIDENCE_COUNT_CAP = 3

MERGE_MEMBER_BONUS = 0.1


def matches_postcode(text: str) -> bool:
    return bool(POSTCODE_PATTERN.search(text or ""))


def completeness(addr: CanonicalAddress) -> float:
    score = WEIGHT_COMPLETENESS_ALIAS * len(addr.aliases)
    score += WEIGHT_COMPLETENESS_DESCRIPTION * len(addr.descriptions)
    if "," in addr.formatted_address:
        score += WEIGHT_COMPLETENESS_COMMA
    if matches_postcode(addr.formatted_address):
        score += WEIGHT_COMPLETENESS_POSTCODE
    return score


def confidence(addr: CanonicalAddress) -> float:
    score = WEIGHT_CONFIDENCE_ALIAS * min(len(addr.aliases), CONFIDENCE_COUNT_CAP)
    score += WEIGHT_CONFIDENCE_DESCRIPTION * min(len(addr.descriptions), CONFIDENCE_COUNT_CAP)
    if "," in addr.formatted_address:
        score += WEIGHT_CONFIDENCE_COMMA
    if matches_postcode(addr.formatted_address):
        score += WEIGHT_CONFIDENCE_POSTCODE
    return round(min(1.0, score), 4)


def merged_confidence(cluster: Sequence[CanonicalAddress]) -> float:
    """Best member confidence plus a bonus per extra corroborating record."""
    if not cluster:
        return 0.0
    best = max(confidence(addr) for addr in cluster)
    return round(min(1.0, best + MERGE_MEMBER_BONUS * (len(cluster) - 1)), 4)
