"""Import pipeline data model."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

PIPELINES_COLLECTION = "import_pipelines"


class PipelineStatus(str, Enum):
    """Import pipeline status."""

    PENDING = "pending"
    NORMALIZING = "normalizing"
    VALIDATING = "validating"
    INGESTING = "ingesting"
    CREATING_DATASET = "creating_dataset"
    FINE_TUNING = "fine_tuning"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"  # User cancelled pipeline

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {PipelineStatus.COMPLETED, PipelineStatus.FAILED, PipelineStatus.CANCELLED}
)

# Step number -> status the pipeline is in while that step runs
STEP_ORDER = {
    1: PipelineStatus.NORMALIZING,
    2: PipelineStatus.VALIDATING,
    3: PipelineStatus.INGESTING,
    4: PipelineStatus.CREATING_DATASET,
    5: PipelineStatus.FINE_TUNING,
}


@dataclass
class DatasetSettings:
    """Dataset built automatically from the ingested content."""

    name: Optional[str] = None
    min_quality_score: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "min_quality_score": self.min_quality_score}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "DatasetSettings":
        data = data or {}
        return cls(name=data.get("name"), min_quality_score=data.get("min_quality_score"))


@dataclass
class FinetuneSettings:
    """Fine-tune job started on the automatically built dataset.

    ``parameters`` overrides individual recommended hyperparameters.
    """

    provider: str = "openai"
    model: str = "gpt-3.5-turbo"
    connection_id: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "connection_id": self.connection_id,
            "parameters": self.parameters,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "FinetuneSettings":
        data = data or {}
        return cls(
            provider=data.get("provider", "openai"),
            model=data.get("model", "gpt-3.5-turbo"),
            connection_id=data.get("connection_id"),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class PipelineConfig:
    """Options chosen when an import pipeline is created.

    Attributes:
        field_mappings: Canonical field name -> source column name
        auto_detect_language: Guess a missing language from the text's script
        remove_duplicates: Drop exact-text duplicates before validation
        enable_ai_analysis: Queue quality analysis for each ingested item
        default_content_type: Used when a row's content type is missing or invalid
        default_status: Status given to ingested content
        min_quality_threshold: Quality score for rows that carry none
        auto_create_dataset: Build a dataset from the ingested content
        dataset: Settings for the automatic dataset
        auto_finetune: Start a fine-tune job on the automatic dataset
        finetune: Settings for the automatic fine-tune job
    """

    field_mappings: dict[str, str] = field(default_factory=dict)
    auto_detect_language: bool = False
    remove_duplicates: bool = True
    enable_ai_analysis: bool = False
    default_content_type: str = "text"
    default_status: str = "draft"
    min_quality_threshold: float = 0.0
    auto_create_dataset: bool = False
    dataset: DatasetSettings = field(default_factory=DatasetSettings)
    auto_finetune: bool = False
    finetune: FinetuneSettings = field(default_factory=FinetuneSettings)

    @property
    def total_steps(self) -> int:
        """normalize, validate and ingest, plus the optional stages."""
        return 3 + int(self.auto_create_dataset) + int(self.auto_finetune)

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_mappings": self.field_mappings,
            "auto_detect_language": self.auto_detect_language,
            "remove_duplicates": self.remove_duplicates,
            "enable_ai_analysis": self.enable_ai_analysis,
            "default_content_type": self.default_content_type,
            "default_status": self.default_status,
            "min_quality_threshold": self.min_quality_threshold,
            "auto_create_dataset": self.auto_create_dataset,
            "dataset": self.dataset.to_dict(),
            "auto_finetune": self.auto_finetune,
            "finetune": self.finetune.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineConfig":
        return cls(
            field_mappings=dict(data.get("field_mappings") or {}),
            auto_detect_language=data.get("auto_detect_language", False),
            remove_duplicates=data.get("remove_duplicates", True),
            enable_ai_analysis=data.get("enable_ai_analysis", False),
            default_content_type=data.get("default_content_type") or "text",
            default_status=data.get("default_status", "draft"),
            min_quality_threshold=data.get("min_quality_threshold", 0.0),
            auto_create_dataset=data.get("auto_create_dataset", False),
            dataset=DatasetSettings.from_dict(data.get("dataset")),
            auto_finetune=data.get("auto_finetune", False),
            finetune=FinetuneSettings.from_dict(data.get("finetune")),
        )


@dataclass
class ImportPipeline:
    """A resumable import of one external dataset."""

    user_id: str
    external_dataset_id: str
    config: PipelineConfig = field(default_factory=PipelineConfig)
    status: PipelineStatus = PipelineStatus.PENDING
    current_step: int = 0
    total_steps: int = 3
    content_ids: list[str] = field(default_factory=list)
    error_log: list[str] = field(default_factory=list)
    dataset_id: Optional[str] = None
    finetune_job_id: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "user_id": self.user_id,
            "external_dataset_id": self.external_dataset_id,
            "config": self.config.to_dict(),
            "status": self.status.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "content_ids": self.content_ids,
            "error_log": self.error_log,
            "dataset_id": self.dataset_id,
            "finetune_job_id": self.finetune_job_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportPipeline":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            external_dataset_id=data["external_dataset_id"],
            config=PipelineConfig.from_dict(data.get("config") or {}),
            status=PipelineStatus(data.get("status", "pending")),
            current_step=data.get("current_step", 0),
            total_steps=data.get("total_steps", 3),
            content_ids=list(data.get("content_ids") or []),
            error_log=list(data.get("error_log") or []),
            dataset_id=data.get("dataset_id"),
            finetune_job_id=data.get("finetune_job_id"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )
