"""
Structured logging for the API and the worker, built on structlog.

Development gets coloured console output; every other environment emits one
JSON object per line. Gateway secrets and signatures are masked before
rendering so raw credentials never reach the log stream.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog

from servio.config import settings

REDACTED = "***"
SENSITIVE_KEYS = frozenset({
    "authorization",
    "gateway_signature",
    "key_secret",
    "password",
    "signature",
    "webhook_secret",
})


def add_app_context(logger: Any, method_name: str, event_dict: Dict) -> Dict:
    event_dict.setdefault("app", settings.APP_NAME.lower())
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: Dict) -> Dict:
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(json_logs: Optional[bool] = None) -> None:
    if json_logs is None:
        json_logs = settings.ENVIRONMENT != "development"

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_app_context,
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str = __name__):
    return structlog.get_logger(name)
