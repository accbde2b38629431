import logging
import logging.handlers
import os
import re
import sys
from typing import Any, Dict

import structlog

_configured = False

ARCHIVE_CONTEXT_FIELDS = ("correlation_id", "post_id", "url")
QUIET_LOGGERS = {
    "werkzeug": logging.INFO,
    "google": logging.WARNING,
    "urllib3": logging.WARNING,
    "bs4": logging.ERROR,
}
PROBE_PATHS = frozenset({"/health", "/healthz"})

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)


def _add_archive_context(
    _: logging.Logger, __: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Every event carries the post and URL it belongs to, ``None`` outside a pipeline."""
    bound = structlog.contextvars.get_contextvars()
    for key in ARCHIVE_CONTEXT_FIELDS:
        if event_dict.get(key) is None:
            event_dict[key] = bound.get(key)
    if not event_dict.get("event"):
        event_dict["event"] = event_dict.get("message") or event_dict.get(
            "logger", "log.event"
        )
    return event_dict


def _redact_tokens(
    _: logging.Logger, __: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and "earer" in value:
            event_dict[key] = _BEARER_RE.sub(r"\1[redacted]", value)
    return event_dict


def _quiet_probes(
    _: logging.Logger, __: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    if event_dict.get("path") in PROBE_PATHS and event_dict.get("level") == "info":
        event_dict["level"] = "debug"
    return event_dict


def _shared_processors(plain: bool) -> list:
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_archive_context,
        _redact_tokens,
        _quiet_probes,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if plain:
        processors.append(structlog.processors.UnicodeDecoder())
    return processors


def setup_logging(force: bool = False) -> None:
    """Route structlog and stdlib records through one formatter on stdout.

    ``LOG_FORMAT`` picks ``json`` (default) or ``plain``; ``LOG_FILE`` adds a
    rotating file handler next to the console one.
    """
    global _configured
    if _configured and not force:
        return

    level = os.getenv("LOG_LEVEL", "INFO").upper()
    plain = os.getenv("LOG_FORMAT", "json").strip().lower() == "plain"
    shared = _shared_processors(plain)
    renderer = (
        structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        if plain
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer, foreign_pre_chain=shared, fmt="%(message)s"
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    log_file = os.getenv("LOG_FILE")
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    _configured = True
