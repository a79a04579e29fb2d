"""
structlog setup shared by the API process and the RQ worker.

Every event carries the component that emitted it and the release, so API
and worker lines can be told apart in one stream. Credentials and customer
e-mail addresses are scrubbed before rendering.
"""

import logging
import re
import sys
from typing import Any

import structlog

from quotedesk.config import settings

# event keys whose values are never written out
SECRET_KEYS = frozenset({
    "api_key",
    "authorization",
    "x_api_key",
    "secret_key",
    "stripe_secret_key",
    "brevo_api_key",
    "cron_secret",
    "password",
})

_EMAIL = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")


def mask_email(value: str) -> str:
    """client@example.com -> c***@example.com"""
    return _EMAIL.sub(r"\1***@\2", value)


def redact(_logger: Any, _method: str, event_dict: dict) -> dict:
    for key in list(event_dict):
        if key.lower().replace("-", "_") in SECRET_KEYS:
            event_dict[key] = "[redacted]"
        elif isinstance(event_dict[key], str) and key != "event":
            event_dict[key] = mask_email(event_dict[key])
    return event_dict


def service_context(component: str):
    """Processor stamping component, service and release on every event."""
    def _add(_logger: Any, _method: str, event_dict: dict) -> dict:
        event_dict.setdefault("component", component)
        event_dict.setdefault("service", settings.APP_NAME)
        event_dict.setdefault("version", settings.APP_VERSION)
        return event_dict
    return _add


def build_processors(component: str) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        service_context(component),
        redact,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(component: str = "api") -> None:
    """Route structlog through stdlib logging; console renderer when DEBUG."""
    renderer = structlog.dev.ConsoleRenderer() if settings.DEBUG else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *build_processors(component),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # third-party chatter
    for name in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DB_ECHO else logging.WARNING)
