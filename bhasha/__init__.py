"""Bhasha - curation and fine-tuning orchestration for low-resource languages.

Collect text samples, assemble them into quality-filtered training datasets,
and drive fine-tuning jobs against external model providers.
"""

__version__ = "1.0.0"

from bhasha.config import BhashaConfig
from bhasha.core.context import RequestContext

__all__ = [
    "__version__",
    "BhashaConfig",
    "RequestContext",
]
