"""
Normalization and string similarity helpers for canonical product matching.
Trigram similarity mirrors PostgreSQL pg_trgm so in-process search ranks the same
way as the search_canonical_products_by_name RPC.
"""

import math
import re

_WHITESPACE = re.compile(r"\s+")
_SPECIAL_CHARS = re.compile(r"[^\w\s-]")
_HYPHEN_SPACING = re.compile(r"\s*-\s*")
_TRIGRAM_WORDS = re.compile(r"[^\W_]+")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "up", "about", "into", "through", "during",
    }
)


def normalize_upc(upc: str | None) -> str | None:
    """Trim, strip all whitespace and uppercase. Empty results become None."""
    if not upc:
        return None
    normalized = _WHITESPACE.sub("", upc.strip()).upper()
    return normalized or None


def normalize_product_name(name: str | None) -> str:
    """
    Normalize a product name for consistent matching.
    Lowercases, collapses whitespace, drops special characters except hyphens
    and removes spacing around hyphens.
    """
    if not name:
        return ""
    normalized = _WHITESPACE.sub(" ", name.lower().strip())
    normalized = _SPECIAL_CHARS.sub("", normalized)
    return _HYPHEN_SPACING.sub("-", normalized)


def extract_key_terms(product_name: str, limit: int = 10) -> list[str]:
    """Meaningful words of a product name (no stop words, longer than two chars)."""
    normalized = normalize_product_name(product_name)
    if not normalized:
        return []
    words = [w for w in normalized.split(" ") if len(w) > 2 and w not in STOP_WORDS]
    return words[:limit]


def trigrams(text: str) -> set[str]:
    """pg_trgm style trigram set: each word padded with two leading and one trailing space."""
    grams: set[str] = set()
    for word in _TRIGRAM_WORDS.findall(text.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i : i + 3])
    return grams


def trigram_similarity(a: str, b: str) -> float:
    """Shared trigrams over total distinct trigrams, 0.0-1.0."""
    grams_a = trigrams(a)
    grams_b = trigrams(b)
    if not grams_a or not grams_b:
        return 0.0
    return len(grams_a & grams_b) / len(grams_a | grams_b)


def levenshtein_distance(str1: str, str2: str) -> int:
    """Case-insensitive edit distance."""
    s1 = str1.lower()
    s2 = str2.lower()
    previous = list(range(len(s1) + 1))
    for i, c2 in enumerate(s2, start=1):
        current = [i]
        for j, c1 in enumerate(s1, start=1):
            if c1 == c2:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j - 1], current[j - 1], previous[j]) + 1)
        previous = current
    return previous[-1]


def similarity_percentage(str1: str, str2: str) -> int:
    """Levenshtein based similarity as a whole percentage."""
    max_length = max(len(str1), len(str2))
    if max_length == 0:
        return 100
    distance = levenshtein_distance(str1, str2)
    return to_confidence((max_length - distance) / max_length)


def to_confidence(similarity: float) -> int:
    """Convert a 0.0-1.0 similarity into a 0-100 confidence (half rounds up)."""
    return int(math.floor(similarity * 100 + 0.5))
