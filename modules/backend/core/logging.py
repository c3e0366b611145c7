"""
Centralized Logging Configuration.

All modules must use this logging setup. Do not create standalone loggers.
Configuration is loaded from config/settings/logging.yaml.

Structured fields in every JSON log record:
    timestamp      - ISO 8601 UTC timestamp
    level          - Log level (debug, info, warning, error, critical)
    logger         - Module path (e.g., modules.backend.events.worker)
    event          - Log message
    func_name      - Function that emitted the log
    lineno         - Line number in source file
    source         - Origin context (cli, events, worker, internal)
    event_id       - Event being dispatched (bound by the event pipeline)
    event_name     - Event name in module:action notation
    correlation_id - Event correlation ID (bound by the event pipeline)
    handler        - Handler id (bound by the event pipeline)
    outbox_id      - Outbox row being delivered (bound by the worker)
    exception      - Formatted traceback (when logged with exc_info)

Fields passed as extra={...} are merged into the record at top level.

Usage:
    from modules.backend.core.logging import get_logger, setup_logging

    setup_logging()
    setup_logging(level="DEBUG", format_type="console")

    logger = get_logger(__name__)
    logger.info("Message", extra={"key": "value"})

    # Context for every record logged inside the block
    with log_context("worker", outbox_id=record.id):
        ...

    # One-off record with an explicit source
    log_with_source(logger, "worker", "info", "Batch claimed", count=12)

Log File:
    logs/system.jsonl: single file, all records, filter by 'source' field
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from modules.backend.core.config import find_project_root, load_yaml_config

VALID_SOURCES = frozenset({
    "cli",
    "events",
    "worker",
    "internal",
    "unknown",
})
"""
Recognized log source values.
Source is always set explicitly by the caller. Never guessed from logger names.
"""

DEFAULT_LOGGER_LEVELS = {
    "sqlalchemy.engine": "WARNING",
    "aiosqlite": "WARNING",
    "asyncio": "WARNING",
}

_logging_config: dict[str, Any] | None = None


def _load_logging_config() -> dict[str, Any]:
    """
    Load logging configuration from config/settings/logging.yaml (cached).

    Raises:
        FileNotFoundError: If logging.yaml does not exist
    """
    global _logging_config
    if _logging_config is None:
        _logging_config = load_yaml_config("logging.yaml")
    return _logging_config


def _resolve_log_path(configured_path: str) -> Path:
    """Resolve a log file path from logging.yaml against the project root."""
    return find_project_root() / configured_path


def _check_source(source: str) -> None:
    if source not in VALID_SOURCES:
        raise ValueError(f"Unknown log source: {source!r} (expected one of {sorted(VALID_SOURCES)})")


def flatten_extra(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Merge an extra={...} dict into the record.

    Keys already on the record (the message, bound context) win over
    extra keys of the same name.
    """
    extra = event_dict.pop("extra", None)
    if isinstance(extra, dict):
        for key, value in extra.items():
            event_dict.setdefault(key, value)
    elif extra is not None:
        event_dict["extra"] = extra
    return event_dict


def setup_logging(
    level: str | None = None,
    format_type: str | None = None,
    enable_console: bool | None = None,
    enable_file_logging: bool | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Configuration is loaded from config/settings/logging.yaml.
    Parameters passed to this function override the YAML configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL). Overrides config.
        format_type: Output format ('json' or 'console'). Overrides config.
        enable_console: Whether to enable console output. Overrides config.
        enable_file_logging: Whether to write to JSONL file. Overrides config.
    """
    config = _load_logging_config()

    effective_level = level if level is not None else config["level"]
    effective_format = format_type if format_type is not None else config["format"]

    console_config = config["handlers"]["console"]
    file_config = config["handlers"]["file"]

    effective_console_enabled = (
        enable_console if enable_console is not None
        else console_config["enabled"]
    )
    effective_file_enabled = (
        enable_file_logging if enable_file_logging is not None
        else file_config["enabled"]
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        flatten_extra,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            ],
        ),
    ]

    json_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=shared_processors,
    )

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if effective_format == "console":
        console_formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=True),
            foreign_pre_chain=shared_processors,
        )
    else:
        console_formatter = json_formatter

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, effective_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if effective_console_enabled:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    if effective_file_enabled:
        log_path = _resolve_log_path(file_config["path"])
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=file_config["max_bytes"],
            backupCount=file_config["backup_count"],
            encoding="utf-8",
        )
        file_handler.setFormatter(json_formatter)
        root_logger.addHandler(file_handler)

    logger_levels = {**DEFAULT_LOGGER_LEVELS, **config.get("loggers", {})}
    for name, logger_level in logger_levels.items():
        logging.getLogger(name).setLevel(getattr(logging, logger_level.upper()))


def get_logger(name: str) -> Any:
    """Get a structlog logger, typically get_logger(__name__)."""
    return structlog.get_logger(name)


@contextmanager
def log_context(source: str, **fields: Any) -> Iterator[None]:
    """
    Bind source and fields to every record logged inside the block.

    Bindings are contextvars, so concurrent tasks keep separate contexts
    and the previous values are restored on exit.

    Raises:
        ValueError: If source is not in VALID_SOURCES
    """
    _check_source(source)
    with structlog.contextvars.bound_contextvars(source=source, **fields):
        yield


def bind_source(source: str) -> None:
    """
    Bind the log source for the rest of the current context.

    Used by entry points (the CLI) that own the whole process.

    Raises:
        ValueError: If source is not in VALID_SOURCES
    """
    _check_source(source)
    structlog.contextvars.bind_contextvars(source=source)


def log_with_source(logger: Any, source: str, level: str, message: str, **kwargs: Any) -> None:
    """
    Log a message with an explicit source.

    Args:
        logger: The logger instance
        source: Log source (cli, events, worker, internal)
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        **kwargs: Additional context fields

    Raises:
        ValueError: If source is not in VALID_SOURCES
        AttributeError: If level is not a valid log level

    Example:
        log_with_source(logger, "worker", "info", "Outbox drained", processed=3)
    """
    _check_source(source)
    log_method = getattr(logger, level.lower())
    log_method(message, source=source, **kwargs)
