"""Fine-tune job lifecycle, provider adapters and model evaluation."""

from bhasha.finetuning.models import FineTuneJob, JobMetrics, JobStatus
from bhasha.finetuning.manager import FineTuneManager
from bhasha.finetuning.evaluator import ModelEvaluator, bleu_score, cultural_accuracy

__all__ = [
    "FineTuneJob",
    "JobMetrics",
    "JobStatus",
    "FineTuneManager",
    "ModelEvaluator",
    "bleu_score",
    "cultural_accuracy",
]
