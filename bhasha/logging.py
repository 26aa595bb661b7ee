"""Structured logging setup for Bhasha."""

import sys
import logging
from pathlib import Path
from typing import Optional
import structlog

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """Configure stdlib logging and structlog together.

    Pipeline workers usually run with ``json_format=True`` so their error
    logs can be shipped; the CLI uses the colored console renderer.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path; log lines are also appended there
        json_format: Render events as JSON instead of console output
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_pipeline(pipeline_id: str, user_id: Optional[str] = None) -> None:
    """Attach pipeline identifiers to every log event in the current task."""
    structlog.contextvars.bind_contextvars(pipeline_id=pipeline_id, user_id=user_id)


def clear_bindings() -> None:
    """Drop context bound with bind_pipeline."""
    structlog.contextvars.clear_contextvars()
