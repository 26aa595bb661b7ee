"""Fine-tune job records."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from bhasha.curation.recommender import Hyperparameters


class JobStatus(str, Enum):
    """Canonical status of a fine-tune job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class JobMetrics:
    """Training progress reported by the provider.

    Loss history is append-only; step and epoch counters never go back.
    """

    loss: list[float] = field(default_factory=list)
    steps: int = 0
    current_epoch: int = 0

    def merge(
        self,
        loss: Union[None, float, list[float]] = None,
        steps: Optional[int] = None,
        epoch: Optional[int] = None,
    ) -> "JobMetrics":
        """Return metrics extended with a provider report.

        A reported loss list only contributes entries past the known history;
        a single loss value is appended. Non-numeric loss entries and counters
        are ignored.
        """
        history = list(self.loss)
        if isinstance(loss, list):
            reported = [v for v in (_number(item) for item in loss) if v is not None]
            history.extend(reported[len(history):])
        else:
            value = _number(loss)
            if value is not None:
                history.append(value)

        return JobMetrics(
            loss=history,
            steps=max(self.steps, int(_number(steps) or 0)),
            current_epoch=max(self.current_epoch, int(_number(epoch) or 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"loss": self.loss, "steps": self.steps, "current_epoch": self.current_epoch}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobMetrics":
        """Create from dictionary."""
        return cls(
            loss=data.get("loss", []),
            steps=data.get("steps", 0),
            current_epoch=data.get("current_epoch", 0),
        )


@dataclass
class FineTuneJob:
    """A single training run request.

    Attributes:
        user_id: Owner of the job
        dataset_id: Dataset the job trains on (referenced, never embedded)
        parameters: Training hyperparameters
        provider: Registered provider adapter name
        model: Base model identifier
        connection_id: Custom endpoint used by the ``custom`` provider
        provider_job_id: Set once the provider accepts the job
        model_id: Fine-tuned model, set once the provider reports it
        metrics: Progress reported by polling
        results: Raw provider payload from the last poll
        error: Last submission or polling failure
    """

    user_id: str
    dataset_id: str
    parameters: Hyperparameters
    provider: str
    model: str
    status: JobStatus = JobStatus.PENDING
    connection_id: Optional[str] = None
    provider_job_id: Optional[str] = None
    model_id: Optional[str] = None
    metrics: JobMetrics = field(default_factory=JobMetrics)
    results: Optional[dict[str, Any]] = None
    estimated_cost: float = 0.0
    estimated_time_minutes: int = 0
    error: Optional[str] = None
    completed_at: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "user_id": self.user_id,
            "dataset_id": self.dataset_id,
            "parameters": self.parameters.to_dict(),
            "provider": self.provider,
            "model": self.model,
            "status": self.status.value,
            "connection_id": self.connection_id,
            "provider_job_id": self.provider_job_id,
            "model_id": self.model_id,
            "metrics": self.metrics.to_dict(),
            "results": self.results,
            "estimated_cost": self.estimated_cost,
            "estimated_time_minutes": self.estimated_time_minutes,
            "error": self.error,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FineTuneJob":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            dataset_id=data["dataset_id"],
            parameters=Hyperparameters.from_dict(data["parameters"]),
            provider=data["provider"],
            model=data["model"],
            status=JobStatus(data.get("status", "pending")),
            connection_id=data.get("connection_id"),
            provider_job_id=data.get("provider_job_id"),
            model_id=data.get("model_id"),
            metrics=JobMetrics.from_dict(data.get("metrics") or {}),
            results=data.get("results"),
            estimated_cost=data.get("estimated_cost", 0.0),
            estimated_time_minutes=data.get("estimated_time_minutes", 0),
            error=data.get("error"),
            completed_at=data.get("completed_at"),
            created_at=(
                datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None
            ),
        )
