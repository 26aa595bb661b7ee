"""Format detection and parsing for raw import payloads."""

import json
import re
from typing import Any, Optional

from bhasha.core.errors import ValidationError

FORMATS = ("csv", "json", "jsonl")

_SURROUNDING_QUOTES = re.compile(r'^"|"$')


def _lines(raw: str) -> list[str]:
    return [line.rstrip("\r") for line in raw.strip().split("\n") if line.strip()]


def detect_format(raw: str) -> str:
    """Classify a payload as ``jsonl``, ``json``, ``csv`` or ``unknown``.

    JSON Lines wins when every non-empty line parses on its own, then a
    whole-payload JSON array, then anything with a comma spanning more than
    one line is treated as CSV.
    """
    trimmed = raw.strip()
    if not trimmed:
        return "unknown"

    lines = _lines(trimmed)
    try:
        for line in lines:
            json.loads(line)
        return "jsonl"
    except json.JSONDecodeError:
        pass

    try:
        if isinstance(json.loads(trimmed), list):
            return "json"
    except json.JSONDecodeError:
        pass

    if "," in trimmed and len(lines) > 1:
        return "csv"

    return "unknown"


def _strip_field(value: str) -> str:
    return _SURROUNDING_QUOTES.sub("", value.strip())


def parse_csv(raw: str) -> list[dict[str, str]]:
    """Parse CSV by splitting on commas; the first line is the header.

    Quoted fields lose one pair of surrounding quotes. Embedded commas,
    escaped quotes and multi-line fields are not supported. Missing trailing
    values become empty strings.
    """
    lines = _lines(raw)
    if not lines:
        return []

    headers = [_strip_field(h) for h in lines[0].split(",")]
    records = []
    for line in lines[1:]:
        values = [_strip_field(v) for v in line.split(",")]
        records.append(
            {header: values[i] if i < len(values) else "" for i, header in enumerate(headers)}
        )
    return records


def _as_records(items: list[Any]) -> list[dict[str, Any]]:
    records = []
    for item in items:
        if isinstance(item, list):
            records.extend(_as_records(item))
        elif isinstance(item, dict):
            records.append(item)
        else:
            raise ValidationError(f"Expected JSON objects, got {type(item).__name__}")
    return records


def parse_json(raw: str, fmt: str = "json") -> list[dict[str, Any]]:
    """Parse a JSON array (``json``) or one object per line (``jsonl``)."""
    try:
        if fmt == "jsonl":
            return _as_records([json.loads(line) for line in _lines(raw)])
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid {fmt.upper()} data: {e}")

    if not isinstance(data, list):
        raise ValidationError("JSON data must be an array of records")
    return _as_records(data)


def parse_records(raw: str, fmt: Optional[str] = None) -> tuple[str, list[dict[str, Any]]]:
    """Detect (unless given) the format of ``raw`` and parse it.

    Returns:
        Tuple of (format, records)

    Raises:
        ValidationError: If the format is unknown or the payload is malformed
    """
    fmt = fmt or detect_format(raw)
    if fmt == "csv":
        return fmt, parse_csv(raw)
    if fmt in ("json", "jsonl"):
        return fmt, parse_json(raw, fmt)
    raise ValidationError("Unrecognized data format; expected CSV, JSON or JSON Lines")


def apply_field_mapping(record: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    """Build a record of target fields from source columns.

    ``mapping`` maps target field to source column. A target is set only when
    its source column name is non-empty and present in the raw record; every
    other target is left out.
    """
    mapped = {}
    for target, source in mapping.items():
        if source and source in record:
            mapped[target] = record[source]
    return mapped
