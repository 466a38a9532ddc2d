"""
Structured logging configuration using structlog.

Every record goes out as one JSON line on stdout. Credential-bearing keys are
masked before rendering so OAuth tokens and provider keys never reach the
logs, even when a caller passes them by mistake.
"""
import logging
import structlog
from pythonjsonlogger import jsonlogger
from typing import Any
import sys

SERVICE_NAME = "meetbot"

# Keys whose values are replaced before a record is rendered
SENSITIVE_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "id_token",
    "authorization",
    "api_key",
    "client_secret",
    "webhook_secret",
    "cron_secret",
})

# Chatty third-party loggers kept at WARNING unless debugging
NOISY_LOGGERS = ("httpx", "httpcore", "msal", "sqlalchemy.engine", "uvicorn.access")


def mask_sensitive(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking credential values."""
    for key in event_dict:
        if key.lower() in SENSITIVE_KEYS and event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def add_service(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(debug: bool = False) -> None:
    """
    Configure JSON logging for the API server and the cron CLI.

    Args:
        debug: Enable debug level logging, including third-party libraries
    """
    log_level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"}
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(log_level if debug else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_service,
            mask_sensitive,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Structured logger for a module (pass __name__)."""
    return structlog.get_logger(name)


class LogContext:
    """
    Bind bot_id / user_id (or any keys) to every log line inside a block.

    Nested blocks restore the outer values on exit, so a per-user block inside
    a per-pass block does not wipe the outer context.
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._previous = {}

    def __enter__(self):
        current = structlog.contextvars.get_contextvars()
        self._previous = {k: current[k] for k in self.context if k in current}
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        structlog.contextvars.unbind_contextvars(*self.context.keys())
        if self._previous:
            structlog.contextvars.bind_contextvars(**self._previous)
