"""Structured logging — structlog over the stdlib logging tree.

One JSON object per line in production, ConsoleRenderer output in debug.
uvicorn, SQLAlchemy and the stripe SDK log through the same formatter, so
every line carries the request's correlation id and no line carries a
credential.
"""

import logging
import logging.config
from typing import Any

import structlog
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "entitlement-sync"

# Event-dict keys whose values never reach a log sink
REDACTED_KEYS = frozenset(
    {
        "authorization",
        "api_key",
        "secret",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "stripe_signature",
        "service_api_token",
    }
)
REDACTED = "[redacted]"

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("uvicorn.access", "stripe", "sqlalchemy.engine", "aiosqlite")


def add_correlation_id(logger, method, event_dict):
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def add_service_name(logger, method, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_secrets(logger, method, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential-bearing keys, including keys passed with dashes (header names)."""
    for key in list(event_dict):
        if key.lower().replace("-", "_") in REDACTED_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_name,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and route stdlib records through the same chain.

    Must run before the rest of the package is imported: loggers created
    earlier keep the default processor chain.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines when True, ConsoleRenderer when False
    """
    processors = shared_processors()
    if json_logs:
        # ConsoleRenderer prints tracebacks itself
        final = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        final = [structlog.dev.ConsoleRenderer()]

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        *final,
                    ],
                    "foreign_pre_chain": processors,
                },
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "formatter": "structured",
                    "stream": "ext://sys.stdout",
                },
            },
            "root": {"handlers": ["stdout"], "level": log_level},
            "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        }
    )

    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
