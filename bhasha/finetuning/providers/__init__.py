"""Fine-tuning provider adapters."""

from bhasha.finetuning.providers.base import ProviderAdapter, ProviderStatus, map_status
from bhasha.finetuning.providers.custom import CustomProvider
from bhasha.finetuning.providers.openai import OpenAIProvider
from bhasha.finetuning.providers.registry import ProviderRegistry

__all__ = [
    "ProviderAdapter",
    "ProviderStatus",
    "map_status",
    "CustomProvider",
    "OpenAIProvider",
    "ProviderRegistry",
]
