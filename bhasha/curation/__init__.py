"""Corpus curation: normalization, validation, parsing, statistics and
hyperparameter recommendation.

Dataset assembly lives in ``bhasha.curation.datasets`` and is imported from
there directly.
"""

from bhasha.curation.text import normalize_text, similarity, deduplicate_records, detect_language
from bhasha.curation.validator import validate_content, validate_import_batch, estimate_tokens
from bhasha.curation.formats import detect_format, parse_records, apply_field_mapping
from bhasha.curation.stats import TokenDistribution, analyze_token_distribution
from bhasha.curation.recommender import HyperparameterRecommender, Hyperparameters, Recommendation

__all__ = [
    "normalize_text",
    "similarity",
    "deduplicate_records",
    "detect_language",
    "validate_content",
    "validate_import_batch",
    "estimate_tokens",
    "detect_format",
    "parse_records",
    "apply_field_mapping",
    "TokenDistribution",
    "analyze_token_distribution",
    "HyperparameterRecommender",
    "Hyperparameters",
    "Recommendation",
]
