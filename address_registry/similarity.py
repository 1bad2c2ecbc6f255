"""Token-set similarity between address strings."""
import re

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> set[str]:
    """Lower-cased word tokens; punctuation and whitespace both separate words."""
    return set(_TOKEN_RE.findall((text or "").lower()))


def jaccard_word_similarity(a: str, b: str) -> float:
    """Jaccard index of the two strings' word sets, 0.0 when both are empty."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)
