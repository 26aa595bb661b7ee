"""Text normalization, near-duplicate detection and script detection."""

import re
from collections import Counter
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

T = TypeVar("T")

DUPLICATE_THRESHOLD = 0.85

_WHITESPACE = re.compile(r"\s+")

# Unicode blocks of the scripts used by the supported languages.
# Devanagari is shared by hindi and marathi; hindi is assumed.
SCRIPT_RANGES = {
    "hindi": (0x0900, 0x097F),
    "bengali": (0x0980, 0x09FF),
    "punjabi": (0x0A00, 0x0A7F),
    "gujarati": (0x0A80, 0x0AFF),
    "odia": (0x0B00, 0x0B7F),
    "tamil": (0x0B80, 0x0BFF),
    "telugu": (0x0C00, 0x0C7F),
    "kannada": (0x0C80, 0x0CFF),
    "malayalam": (0x0D00, 0x0D7F),
}


def normalize_text(text: str) -> str:
    """Trim and collapse every whitespace run (newlines included) to one space."""
    return _WHITESPACE.sub(" ", text.strip())


def dedup_key(text: str) -> str:
    """Key used for exact-duplicate detection: normalized, lowercased text."""
    return normalize_text(text).lower()


def _token_set(text: str) -> set[str]:
    return set(text.lower().split())


def similarity(a: str, b: str) -> float:
    """Jaccard index of the case-folded whitespace token sets of two texts.

    Returns 0.0 when both texts have no tokens.
    """
    tokens_a = _token_set(a)
    tokens_b = _token_set(b)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def find_near_duplicate(
    text: str,
    candidates: Iterable[dict[str, Any]],
    threshold: float = DUPLICATE_THRESHOLD,
) -> Optional[tuple[str, float]]:
    """Return ``(id, similarity)`` of the first candidate at or over the threshold.

    Candidates are documents with ``id`` and ``text`` keys.
    """
    for candidate in candidates:
        score = similarity(text, candidate.get("text", ""))
        if score >= threshold:
            return candidate["id"], score
    return None


def _record_text(record: dict[str, Any]) -> Optional[str]:
    return record.get("text")


def deduplicate_records(
    records: Sequence[T],
    get_text: Optional[Callable[[T], Optional[str]]] = None,
) -> list[T]:
    """Drop records whose normalized lowercased text was already seen.

    The first occurrence wins; records with empty text are dropped too.
    ``get_text`` defaults to reading the ``text`` key of dict records.
    """
    get_text = get_text or _record_text

    seen: set[str] = set()
    unique = []
    for record in records:
        key = dedup_key(str(get_text(record) or ""))
        if key and key not in seen:
            seen.add(key)
            unique.append(record)
    return unique


def detect_language(text: str) -> Optional[str]:
    """Guess the language from the dominant Indic script in ``text``.

    Returns None when no supported script is present.
    """
    counts: Counter = Counter()
    for char in text:
        code = ord(char)
        for language, (start, end) in SCRIPT_RANGES.items():
            if start <= code <= end:
                counts[language] += 1
                break

    if not counts:
        return None
    return counts.most_common(1)[0][0]
