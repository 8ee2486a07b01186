"""
Logging for the trailing stop engine.

structlog renders every event (JSON for the service, console for a
terminal) through the stdlib root logger, which writes to stdout and,
when configured, to a rotating file such as logs/trailstop.log.
setup_logging() can be called again (each CLI command does) and replaces
the handlers it installed earlier instead of stacking them.
"""
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, List, Optional
import logging
import sys

import structlog

DEFAULT_LOG_FILE = "logs/trailstop.log"

# Third-party loggers that are chatty at INFO/DEBUG
QUIET_LOGGERS = ("ccxt", "urllib3", "aiohttp", "asyncio", "sqlalchemy.engine")

SENSITIVE_FIELDS = ("credential_token", "api_key", "api_secret", "secret", "password")
REDACTED = "***REDACTED***"

_HANDLER_MARK = "_trailstop_handler"


def redact_secrets(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """structlog processor: mask broker credentials passed as log fields."""
    for key, value in event_dict.items():
        if isinstance(value, str) and value and key.lower() in SENSITIVE_FIELDS:
            event_dict[key] = REDACTED
    return event_dict


def _install(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    setattr(handler, _HANDLER_MARK, True)
    logging.root.addHandler(handler)
    return handler


def _remove_installed_handlers() -> None:
    for handler in list(logging.root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            logging.root.removeHandler(handler)
            handler.close()


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> List[logging.Handler]:
    """
    Configure structured logging for the engine and the CLI.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: json or text
        log_file: Optional path of a rotating log file, parent created on demand
        max_bytes: Rotate the file once it reaches this size
        backup_count: Rotated files to keep

    Returns:
        The handlers installed on the root logger
    """
    level = getattr(logging, log_level.upper())

    _remove_installed_handlers()
    handlers = [_install(logging.StreamHandler(sys.stdout), level)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(_install(
            RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"),
            level,
        ))

    logging.root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty() and not log_file))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).debug(
        "Logging initialized",
        log_file=str(log_file) if log_file else None,
        log_level=log_level,
        log_format=log_format,
    )
    return handlers


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger for a module (pass __name__)."""
    return structlog.get_logger(name)
