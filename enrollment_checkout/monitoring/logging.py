"""
Structured logging for the checkout service.

structlog renders every event as one JSON object on stdout. Request ids,
methods and paths bound by the API middleware are merged in from
contextvars; client secrets and gateway credentials never reach the output.
"""
import logging
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from enrollment_checkout import __version__
from enrollment_checkout.config import Settings, get_settings

REDACTED_KEYS = frozenset(
    {"client_secret", "stripe_secret_key", "stripe_webhook_secret", "stripe_signature"}
)


class AppContext:
    """Processor stamping service identity onto every event."""

    def __init__(self, settings: Settings):
        self.fields = {
            "service": settings.app_name,
            "env": settings.app_env,
            "version": __version__,
        }

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def _processors(settings: Settings) -> List[Any]:
    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer(sort_keys=True)
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        AppContext(settings),
        redact_secrets,
        renderer,
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Debug mode swaps the JSON renderer for structlog's console renderer.
    Library loggers (SQLAlchemy, httpx, Stripe) go through a
    python-json-logger handler so their records are JSON too.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(settings.log_level)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, debug=settings.debug
    )
