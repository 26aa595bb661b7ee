"""Validation of content records.

Two modes share the same rules:

- direct creation (``validate_content``) collects every violation and the
  caller rejects the write, including invalid content types and overlong
  optional fields;
- bulk import (``validate_import_batch``) filters a list of rows, coerces an
  invalid content type to the configured default, fills a missing quality
  score with the pipeline threshold, and gives up after too many errors.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional
import structlog

from bhasha.curation.text import detect_language

log = structlog.get_logger()

SUPPORTED_LANGUAGES = (
    "hindi",
    "bengali",
    "tamil",
    "telugu",
    "marathi",
    "gujarati",
    "kannada",
    "malayalam",
    "punjabi",
    "odia",
)

CONTENT_TYPES = ("text", "proverb", "narrative")

MIN_TEXT_LENGTH = 10
MAX_TEXT_LENGTH = 10000
MAX_TOKENS = 2000
MIN_QUALITY = 0.0
MAX_QUALITY = 10.0
MAX_IMPORT_ERRORS = 100

# Only enforced on direct creation
OPTIONAL_FIELD_LIMITS = {
    "region": 100,
    "category": 100,
    "source": 200,
    "dialect": 100,
    "cultural_context": 1000,
}

TOO_MANY_ERRORS = "Too many validation errors; stopped processing remaining rows"


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per three characters, rounded up."""
    return math.ceil(len(text) / 3)


def parse_quality_score(value: Any) -> Optional[float]:
    """Parse a quality score in [0, 10]; None when it is not one."""
    if isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(score) or not MIN_QUALITY <= score <= MAX_QUALITY:
        return None
    return score


def _text_errors(text: Any) -> list[str]:
    if text is None or not str(text).strip():
        return ["Text is required"]

    text = str(text).strip()
    errors = []
    if len(text) < MIN_TEXT_LENGTH:
        errors.append(f"Text must be at least {MIN_TEXT_LENGTH} characters")
    if len(text) > MAX_TEXT_LENGTH:
        errors.append(f"Text cannot exceed {MAX_TEXT_LENGTH:,} characters")

    tokens = estimate_tokens(text)
    if tokens > MAX_TOKENS:
        errors.append(f"Text is too long: ~{tokens} tokens (max {MAX_TOKENS})")
    return errors


def _language_errors(language: Any) -> list[str]:
    if language is None or not str(language).strip():
        return ["Language is required"]
    if str(language).strip().lower() not in SUPPORTED_LANGUAGES:
        return [f"Unsupported language: {language}"]
    return []


@dataclass
class ValidationResult:
    """Outcome of validating a single record."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_content(record: dict[str, Any]) -> ValidationResult:
    """Validate a record for direct content creation.

    Args:
        record: Fields of the new content item

    Returns:
        ValidationResult listing every violation found
    """
    errors = _text_errors(record.get("text"))
    errors.extend(_language_errors(record.get("language")))

    content_type = record.get("content_type")
    if not content_type:
        errors.append("Content type is required")
    elif content_type not in CONTENT_TYPES:
        errors.append(f"Invalid content type: {content_type}")

    if record.get("quality_score") is not None and parse_quality_score(record["quality_score"]) is None:
        errors.append("Quality score must be a number between 0 and 10")

    for name, limit in OPTIONAL_FIELD_LIMITS.items():
        value = record.get(name)
        if value is not None and len(str(value)) > limit:
            label = name.replace("_", " ").capitalize()
            errors.append(f"{label} cannot exceed {limit} characters")

    return ValidationResult(valid=not errors, errors=errors)


@dataclass
class BatchValidation:
    """Outcome of validating an import batch.

    Attributes:
        records: Rows that passed, in canonical shape
        errors: One message per rejected row, plus a sentinel if stopped early
        rows_checked: Number of rows examined before stopping
        stopped_early: True if the error cap was exceeded
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    rows_checked: int = 0
    stopped_early: bool = False


def validate_import_batch(
    records: list[dict[str, Any]],
    default_content_type: str = "text",
    min_quality_threshold: float = 0.0,
    auto_detect_language: bool = False,
    max_errors: int = MAX_IMPORT_ERRORS,
) -> BatchValidation:
    """Validate import rows, keeping the good ones.

    Args:
        records: Mapped, normalized rows
        default_content_type: Used when a row's content type is missing or invalid
        min_quality_threshold: Quality score for rows that carry none
        auto_detect_language: Guess a missing language from the text's script
        max_errors: Stop once more than this many rows have failed

    Returns:
        BatchValidation with surviving records and per-row error messages
    """
    result = BatchValidation()

    for index, record in enumerate(records, start=1):
        if len(result.errors) > max_errors:
            result.errors.append(TOO_MANY_ERRORS)
            result.stopped_early = True
            log.warning("import_validation_stopped", rows_checked=result.rows_checked)
            break

        result.rows_checked += 1
        text = record.get("text")
        language = record.get("language")
        if auto_detect_language and not language and text:
            language = detect_language(str(text))

        errors = _text_errors(text)
        errors.extend(_language_errors(language))

        quality = min_quality_threshold
        raw_quality = record.get("quality_score")
        if raw_quality is not None and raw_quality != "":
            parsed = parse_quality_score(raw_quality)
            if parsed is None:
                errors.append(f"Invalid quality score: {raw_quality}")
            else:
                quality = parsed

        if errors:
            result.errors.append(f"Row {index}: {'; '.join(errors)}")
            continue

        content_type = record.get("content_type")
        if content_type not in CONTENT_TYPES:
            content_type = default_content_type

        validated = {
            key: value for key, value in record.items()
            if key in OPTIONAL_FIELD_LIMITS and value not in (None, "")
        }
        validated.update(
            text=str(text).strip(),
            language=str(language).strip().lower(),
            content_type=content_type,
            quality_score=quality,
        )
        result.records.append(validated)

    log.info(
        "import_batch_validated",
        valid=len(result.records),
        errors=len(result.errors),
        rows_checked=result.rows_checked,
    )
    return result
