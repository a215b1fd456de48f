"""
Structured logging configuration.

structlog events are handed to the standard library as a message (the event
name) plus extras, and python-json-logger renders every record, ours and
third-party ones alike, as one flat JSON object:

    {"@timestamp": "...", "level": "info", "logger": "storefront.core.ledger",
     "event": "balance_debited", "user_id": "user-1", "amount": "20.00", ...}
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

from storefront.config import get_settings

REDACTED = "***REDACTED***"
SENSITIVE_KEYS = ("api_key", "api_secret", "secret", "password", "signature", "authorization")


class StorefrontJsonFormatter(jsonlogger.JsonFormatter):
    """Fills timestamp, level and logger from the record and scrubs credentials."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["@timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname.lower()
        log_record["logger"] = record.name
        for key in SENSITIVE_KEYS:
            if log_record.get(key):
                log_record[key] = REDACTED


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with JSON formatter.

    Request id, gateway code and order number are bound through
    structlog.contextvars by the HTTP middleware and the workers.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        StorefrontJsonFormatter("%(message)s", rename_fields={"message": "event"})
    )
    root_logger.addHandler(json_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
