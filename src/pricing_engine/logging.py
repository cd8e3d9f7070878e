"""
structlog configuration for the billing engine.

Three log streams: module loggers for operational events, ``audit`` for
administrator actions on subscriptions, and ``billing.alerts`` for money that
needs an operator (unknown charge outcomes, failed compensations).
"""

import logging
import sys
from typing import Any

import structlog

from pricing_engine.settings import settings

AUDIT_LOGGER = "audit"
ALERT_LOGGER = "billing.alerts"


def setup_logging() -> None:
    """Configure stdlib logging and structlog from ``settings.observability``."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.observability.log_level.value,
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_alert_logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(ALERT_LOGGER)


def log_audit_event(
    action: str,
    category: str,
    user_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    **kwargs: Any,
) -> None:
    """
    Record an administrator action on the ``audit`` stream.

    Amounts logged here are informational; the subscription ledger holds the
    authoritative record.
    """
    structlog.get_logger(AUDIT_LOGGER).info(
        action,
        audit_category=category,
        audit_user_id=user_id,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        **kwargs,
    )


setup_logging()
