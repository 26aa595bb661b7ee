"""Import pipelines: normalize, validate and ingest external datasets."""

from bhasha.pipeline.models import ImportPipeline, PipelineConfig, PipelineStatus
from bhasha.pipeline.driver import ImportPipelineDriver

__all__ = [
    "ImportPipeline",
    "PipelineConfig",
    "PipelineStatus",
    "ImportPipelineDriver",
]
