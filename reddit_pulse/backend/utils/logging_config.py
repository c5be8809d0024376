"""Logging configuration for reddit-pulse.

All modules log through structlog with JSON output. Event names are
snake_case and carry their context as keyword fields, so a run can be
reconstructed from the log file alone:

    >>> from reddit_pulse.backend.utils.logging_config import setup_logging
    >>> setup_logging()
    >>> import structlog
    >>> logger = structlog.get_logger()
    >>> logger.info("pipeline_started", subreddit="whoop", extended=False)
    >>> logger.error("stage_failed", exc_info=True, stage="collect")
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog


def _shared_processors() -> List:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        structlog.processors.StackInfoRenderer(),
    ]


def setup_logging(
    log_dir: Optional[str] = "logs",
    log_filename: str = "pipeline.log",
    console_level: int = logging.INFO,
) -> None:
    """Configure structlog with a JSON renderer on file and console.

    Args:
        log_dir: Directory for the log file, created if missing. Pass None to
            log to the console only (used by the HTTP trigger and tests).
        log_filename: Name of the log file (default: "pipeline.log")
        console_level: Minimum level written to stdout (default: INFO). The
            file handler always records DEBUG and up.

    Log entry format (JSON):
        {
            "event": "stage_finished",
            "level": "info",
            "timestamp": "2026-02-10T12:34:56.789Z",
            "logger": "reddit_pulse.pipeline",
            "stage": "collect",
            ...
        }

    Errors logged with exc_info=True carry an "exception" field holding the
    full traceback.
    """
    shared_processors = _shared_processors()

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=shared_processors,
    )

    handlers: List[logging.Handler] = []

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_path / log_filename), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)

    # asyncprawcore and httpx are chatty at DEBUG
    for noisy in ("asyncprawcore", "asyncpraw", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str = None):
    """Get a configured structlog logger instance.

    Args:
        name: Logger name (typically __name__). If None, returns root logger.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("collection_started", subreddit="whoop")
    """
    return structlog.get_logger(name)
