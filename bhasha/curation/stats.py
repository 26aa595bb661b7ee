"""Token distribution statistics over a text corpus."""

import math
from dataclasses import dataclass, asdict
from typing import Any, Iterable

from bhasha.curation.validator import estimate_tokens

SHORT_TOKENS = 50
LONG_TOKENS = 200


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return math.floor(value + 0.5)


@dataclass
class TokenDistribution:
    """Summary of estimated token counts.

    ``avg``, ``median`` and ``std_dev`` are rounded to integers; percentiles
    and extremes are actual item counts. Buckets count short (<50),
    medium (50-199) and long (>=200) items.
    """

    avg: int = 0
    median: int = 0
    min: int = 0
    max: int = 0
    std_dev: int = 0
    p25: int = 0
    p75: int = 0
    p95: int = 0
    short: int = 0
    medium: int = 0
    long: int = 0

    @property
    def total(self) -> int:
        return self.short + self.medium + self.long

    @property
    def coefficient_of_variation(self) -> float:
        """Standard deviation relative to the mean, 0 for an empty corpus."""
        return self.std_dev / self.avg if self.avg else 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["distribution"] = {
            "short": data.pop("short"),
            "medium": data.pop("medium"),
            "long": data.pop("long"),
        }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenDistribution":
        """Create from dictionary."""
        buckets = data.get("distribution", {})
        return cls(
            avg=data.get("avg", 0),
            median=data.get("median", 0),
            min=data.get("min", 0),
            max=data.get("max", 0),
            std_dev=data.get("std_dev", 0),
            p25=data.get("p25", 0),
            p75=data.get("p75", 0),
            p95=data.get("p95", 0),
            short=buckets.get("short", 0),
            medium=buckets.get("medium", 0),
            long=buckets.get("long", 0),
        )


def _item_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        return item.get("text") or ""
    return getattr(item, "text", "") or ""


def analyze_token_distribution(items: Iterable[Any]) -> TokenDistribution:
    """Compute token statistics for items exposing ``text``.

    Items may be objects with a ``text`` attribute, dicts with a ``text`` key
    or plain strings. An empty corpus gives an all-zero distribution.
    """
    counts = sorted(estimate_tokens(_item_text(item)) for item in items)
    n = len(counts)
    if n == 0:
        return TokenDistribution()

    mean = sum(counts) / n
    variance = sum((c - mean) ** 2 for c in counts) / n

    if n % 2 == 0:
        median = (counts[n // 2 - 1] + counts[n // 2]) / 2
    else:
        median = counts[n // 2]

    return TokenDistribution(
        avg=round_half_up(mean),
        median=round_half_up(median),
        min=counts[0],
        max=counts[-1],
        std_dev=round_half_up(math.sqrt(variance)),
        p25=counts[math.floor(n * 0.25)],
        p75=counts[math.floor(n * 0.75)],
        p95=counts[math.floor(n * 0.95)],
        short=sum(1 for c in counts if c < SHORT_TOKENS),
        medium=sum(1 for c in counts if SHORT_TOKENS <= c < LONG_TOKENS),
        long=sum(1 for c in counts if c >= LONG_TOKENS),
    )
