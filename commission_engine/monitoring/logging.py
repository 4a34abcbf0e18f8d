"""
Structured logging configuration.

All modules log through ``structlog.get_logger(__name__)`` with snake_case
event names and keyword fields. ``setup_logging`` renders them as JSON on
stdout (console rendering when ``debug`` is on) and routes stdlib loggers
(uvicorn, alembic, sqlalchemy) through a ``python-json-logger`` handler so a
single stream carries both.

One-time credentials and API keys are masked before rendering.
"""
import logging
import sys
from typing import Any, Callable, Dict

import structlog
from pythonjsonlogger import jsonlogger

from commission_engine import __version__
from commission_engine.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {
        "verification_code",
        "otp",
        "api_key",
        "authorization",
        "telegram_bot_token",
        "withdrawal_otp_code",
    }
)
REDACTED = "***"

# Loggers that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "aiosqlite")


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential values, including one level of nested dicts."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if k.lower() in SENSITIVE_KEYS and v else v
                for k, v in value.items()
            }
    return event_dict


def app_context_processor(settings: Settings) -> Callable[..., Dict[str, Any]]:
    """
    Build a processor stamping service name, environment and version.

    Args:
        settings: Application settings, read once

    Returns:
        Callable: structlog processor
    """
    context = {
        "app_name": settings.app_name,
        "app_env": settings.app_env,
        "version": __version__,
    }

    def add_app_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_app_context


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the stdlib root handler."""
    settings = settings or get_settings()
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
            app_context_processor(settings),
            renderer,
        ],
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
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        renderer="console" if settings.debug else "json",
    )
