"""
Structured logging for the order service.

Every event is rendered by structlog as one JSON line, with the request id
and caller identity merged in from contextvars. Order events routinely carry
customer contact details and Stripe error text, so a redaction processor
masks both before anything is rendered.
"""
import logging
import re
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

from otw_orders.config import get_settings

# Customer contact fields, as they appear in log calls and in customerInfo
PII_FIELDS = frozenset(
    {
        "name",
        "email",
        "phone",
        "address",
        "specialInstructions",
        "customer_name",
        "customer_email",
        "customer_phone",
        "customer_address",
        "special_instructions",
    }
)

# Stripe secret and restricted keys, webhook secrets
SECRET_PATTERN = re.compile(r"\b(sk|rk|whsec)_[A-Za-z0-9_]+")


def mask_value(key: str, value: Any) -> str:
    """Mask a PII value, keeping just enough to correlate support tickets."""
    text = str(value)
    if "email" in key and "@" in text:
        local, _, domain = text.partition("@")
        return f"{local[:1]}***@{domain}"
    if "phone" in key:
        digits = re.sub(r"\D", "", text)
        return f"***{digits[-4:]}"
    return "***"


def _redact(key: str, value: Any) -> Any:
    if key in PII_FIELDS and value:
        return mask_value(key, value)
    if isinstance(value, dict):
        return {k: _redact(k, v) for k, v in value.items()}
    if isinstance(value, str):
        return SECRET_PATTERN.sub(lambda m: f"{m.group(1)}_***", value)
    return value


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor masking customer PII and Stripe secrets."""
    return {key: _redact(key, value) for key, value in event_dict.items()}


def add_service_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    settings = get_settings()
    event_dict["service"] = settings.app_name
    event_dict["env"] = settings.app_env
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger for JSON output.

    Called once by the API app and by each worker entrypoint.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            redact_sensitive,
            add_service_context,
            structlog.processors.JSONRenderer(),
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

    # Library records (uvicorn, SQLAlchemy, stripe) share the JSON sink
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        env=settings.app_env,
    )
