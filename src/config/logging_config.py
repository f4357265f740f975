"""Structured logging setup (structlog).

Console rendering for local runs, JSON lines for deployed pollers. Webhook
URLs embed their credentials in the query string, so every event passes
through ``scrub_sensitive`` before rendering.
"""

import logging
import sys
from typing import Any, Final
from urllib.parse import urlsplit, urlunsplit

import structlog
from structlog.types import EventDict, Processor

APP_NAME: Final[str] = "sales_celebration_bot"

SECRET_KEY_FRAGMENTS: Final[frozenset[str]] = frozenset(
    {"secret", "password", "token", "app_key", "authorization", "api_key"}
)
URL_KEYS: Final[frozenset[str]] = frozenset({"url", "webhook_url", "gif_url"})

NOISY_LOGGERS: Final[tuple[str, ...]] = (
    "urllib3",
    "requests",
    "slack_sdk",
    "uvicorn.access",
)


def strip_query(url: str) -> str:
    """Drop query string and fragment, keeping scheme, host and path."""
    parts = urlsplit(url)
    if not parts.query and not parts.fragment:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def scrub_sensitive(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Remove credential fields and webhook keys from a log event."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(fragment in lowered for fragment in SECRET_KEY_FRAGMENTS):
            event_dict[key] = "[REDACTED]"
        elif lowered in URL_KEYS and isinstance(event_dict[key], str):
            event_dict[key] = strip_query(event_dict[key])
    return event_dict


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["app"] = APP_NAME
    return event_dict


def build_processors(json_logs: bool) -> list[Processor]:
    """Processor chain shared by the poller scripts and the API."""
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_app_context,
        scrub_sensitive,
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure stdlib logging and structlog.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_logs: Emit JSON lines instead of console output
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=build_processors(json_logs),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger (typically ``get_logger(__name__)``)."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Bind context variables (e.g. ``poll_run_id``) to later log entries."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
