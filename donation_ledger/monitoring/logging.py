"""
Structured logging configuration.

structlog renders application events as JSON; stdlib loggers (uvicorn,
SQLAlchemy, alembic) go through python-json-logger so every line on stdout is
one JSON object. Gateway signatures and credentials are masked before
rendering.
"""
import logging
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

from donation_ledger.config import Settings, get_settings

SENSITIVE_KEYS = frozenset({
    "signature",
    "vnp_securehash",
    "secret",
    "secret_key",
    "hash_secret",
    "access_key",
    "api_key",
    "authorization",
})

# Libraries that are noisy at INFO; SQL echo has its own setting
QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}

MASK = "***"


def _mask(key: Any, value: Any) -> Any:
    return MASK if str(key).lower() in SENSITIVE_KEYS else value


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask signatures and credentials, including one level into payload dicts."""
    for key, value in list(event_dict.items()):
        if isinstance(value, dict):
            event_dict[key] = {k: _mask(k, v) for k, v in value.items()}
        else:
            event_dict[key] = _mask(key, value)
    return event_dict


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter for stdlib records, tagged like structlog events."""

    def __init__(self, settings: Settings):
        super().__init__(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
        self._app_name = settings.app_name
        self._app_env = settings.app_env

    def add_fields(
        self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["app_name"] = self._app_name
        log_record["app_env"] = self._app_env


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        settings: Optional settings (defaults to the cached application settings)
    """
    settings = settings or get_settings()
    app_context = {"app_name": settings.app_name, "app_env": settings.app_env}

    def add_app_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        for key, value in app_context.items():
            event_dict.setdefault(key, value)
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_app_context,
            redact_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ServiceJsonFormatter(settings))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info("logging_configured", log_level=settings.log_level)
