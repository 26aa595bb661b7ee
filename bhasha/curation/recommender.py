"""Rule-based fine-tuning hyperparameter recommendations.

The recommender maps a dataset's size and token distribution to a training
configuration, a cost and time estimate, and a per-parameter explanation of
which rule fired.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional

from bhasha.curation.stats import TokenDistribution

# USD per 1K trained tokens
COST_PER_1K_TOKENS = 0.008

LEGACY_AVG_TOKENS = 100
MAX_LORA_RANK = 32
MIN_BATCH_SIZE = 4
LONG_SEQUENCE_TOKENS = 500
HIGH_VARIATION = 0.5


@dataclass
class Hyperparameters:
    """Training parameters for a fine-tuning job."""

    learning_rate: float
    batch_size: int
    epochs: int
    lora_rank: int
    lora_alpha: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "learning_rate": self.learning_rate,
            "batch_size": self.batch_size,
            "epochs": self.epochs,
            "lora_rank": self.lora_rank,
            "lora_alpha": self.lora_alpha,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Hyperparameters":
        """Create from dictionary."""
        return cls(
            learning_rate=float(data["learning_rate"]),
            batch_size=int(data["batch_size"]),
            epochs=int(data["epochs"]),
            lora_rank=int(data["lora_rank"]),
            lora_alpha=int(data["lora_alpha"]),
        )


@dataclass
class Recommendation:
    """Output of the recommender.

    Attributes:
        parameters: Recommended hyperparameters
        reasoning: Explanation per category (learning_rate, batch_size, epochs, lora)
        estimated_cost: Estimated training cost in USD
        estimated_time_minutes: Estimated training time
        confidence: 0.90 with a full token distribution, 0.85 otherwise
        dataset_analysis: Inputs the rules were applied to
    """

    parameters: Hyperparameters
    reasoning: dict[str, str]
    estimated_cost: float
    estimated_time_minutes: int
    confidence: float
    dataset_analysis: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "parameters": self.parameters.to_dict(),
            "reasoning": dict(self.reasoning),
            "estimated_cost": self.estimated_cost,
            "estimated_time_minutes": self.estimated_time_minutes,
            "confidence": self.confidence,
            "dataset_analysis": dict(self.dataset_analysis),
        }


def estimate_cost(dataset_size: int, avg_tokens: float, epochs: int) -> float:
    """Training cost in USD, rounded to cents."""
    total_tokens = dataset_size * avg_tokens * epochs
    return round(total_tokens / 1000 * COST_PER_1K_TOKENS, 2)


def time_multiplier(avg_tokens: float) -> float:
    if avg_tokens > 200:
        return 1.5
    if avg_tokens > 100:
        return 1.2
    return 1.0


def estimate_time_minutes(dataset_size: int, avg_tokens: float, epochs: int) -> int:
    """Training time in minutes, assuming roughly 1000 samples per hour."""
    return math.ceil(dataset_size * epochs / 1000 * 60 * time_multiplier(avg_tokens))


def _learning_rate(size: int) -> float:
    if size < 1000:
        return 5e-5
    if size < 5000:
        return 3e-5
    if size < 10000:
        return 2e-5
    return 1e-5


def _batch_size(size: int) -> int:
    if size < 1000:
        return 8
    if size < 5000:
        return 16
    if size < 10000:
        return 32
    return 64


def _epochs(avg_tokens: float) -> int:
    if avg_tokens < 50:
        return 5
    if avg_tokens < 100:
        return 4
    if avg_tokens < 200:
        return 3
    return 2


def _lora_rank(size: int) -> int:
    if size < 500:
        return 4
    if size < 2000:
        return 8
    if size < 5000:
        return 16
    if size < 10000:
        return 32
    return 64


def _fmt_rate(rate: float) -> str:
    return f"{rate:.0e}".replace("e-0", "e-")


class HyperparameterRecommender:
    """Derives training parameters from dataset statistics.

    ``recommend`` is a pure function of its arguments.
    """

    def recommend(
        self,
        dataset_size: int,
        distribution: Optional[TokenDistribution] = None,
        avg_tokens: Optional[float] = None,
    ) -> Recommendation:
        """Recommend hyperparameters for a dataset.

        Args:
            dataset_size: Number of entries in the dataset
            distribution: Full token distribution, when the dataset has one
            avg_tokens: Legacy average token count used without a distribution

        Returns:
            Recommendation with parameters, estimates and reasoning
        """
        if distribution is not None:
            avg = distribution.avg
            std_dev = distribution.std_dev
            max_tokens = distribution.max
            confidence = 0.90
        else:
            avg = avg_tokens or LEGACY_AVG_TOKENS
            std_dev = 0
            max_tokens = 0
            confidence = 0.85

        cv = std_dev / avg if avg else 0.0
        high_variation = cv > HIGH_VARIATION
        long_sequences = max_tokens > LONG_SEQUENCE_TOKENS

        learning_rate = _learning_rate(dataset_size)
        reasoning = {
            "learning_rate": (
                f"Dataset size of {dataset_size} samples: using {_fmt_rate(learning_rate)} "
                f"to balance convergence speed and stability."
            ),
        }

        base_batch = _batch_size(dataset_size)
        batch_size = base_batch
        penalties = []
        if std_dev > 0.5 * avg:
            penalties.append(f"token std dev {std_dev} exceeds half the average ({0.5 * avg:g})")
        if long_sequences:
            penalties.append(f"longest sample has {max_tokens} tokens (over {LONG_SEQUENCE_TOKENS})")
        if penalties:
            batch_size = max(base_batch // 2, MIN_BATCH_SIZE)
            reasoning["batch_size"] = (
                f"Base batch size {base_batch} for {dataset_size} samples, halved to "
                f"{batch_size} because {' and '.join(penalties)}."
            )
        else:
            reasoning["batch_size"] = (
                f"Batch size {batch_size} for {dataset_size} samples; "
                f"sequence lengths are uniform enough to keep it."
            )

        epochs = _epochs(avg)
        reasoning["epochs"] = (
            f"{epochs} epochs for an average of {avg:g} tokens per sample to avoid overfitting."
        )

        base_rank = _lora_rank(dataset_size)
        lora_rank = base_rank
        lora_notes = [f"Base LoRA rank {base_rank} for {dataset_size} samples"]
        if high_variation:
            lora_rank = min(lora_rank * 2, MAX_LORA_RANK)
            lora_notes.append(
                f"scaled x2 to {lora_rank} for coefficient of variation {cv:.2f} (over {HIGH_VARIATION})"
            )
        if long_sequences:
            lora_rank = min(int(lora_rank * 1.5), MAX_LORA_RANK)
            lora_notes.append(
                f"scaled x1.5 to {lora_rank} for samples up to {max_tokens} tokens"
            )

        alpha_factor = 4 if dataset_size < 500 else 2
        lora_alpha = lora_rank * alpha_factor
        if alpha_factor == 4:
            lora_notes.append(f"alpha {lora_alpha} (rank x4, aggressive for fewer than 500 samples)")
        else:
            lora_notes.append(f"alpha {lora_alpha} (rank x2)")
        reasoning["lora"] = "; ".join(lora_notes) + "."

        analysis: dict[str, Any] = {
            "size": dataset_size,
            "avg_tokens": avg,
            "std_dev": std_dev,
            "max_tokens": max_tokens,
            "coefficient_of_variation": round(cv, 4),
        }
        if distribution is not None:
            analysis["distribution"] = distribution.to_dict()

        return Recommendation(
            parameters=Hyperparameters(
                learning_rate=learning_rate,
                batch_size=batch_size,
                epochs=epochs,
                lora_rank=lora_rank,
                lora_alpha=lora_alpha,
            ),
            reasoning=reasoning,
            estimated_cost=estimate_cost(dataset_size, avg, epochs),
            estimated_time_minutes=estimate_time_minutes(dataset_size, avg, epochs),
            confidence=confidence,
            dataset_analysis=analysis,
        )
