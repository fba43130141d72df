"""Structured logging configuration using structlog."""

import logging
import sys
import uuid
from typing import Any, List, Optional

import structlog
from structlog.types import FilteringBoundLogger, Processor

from hsse_escalation.config import settings

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "twilio.http_client", "aiosqlite")


def setup_logging(log_format: Optional[str] = None) -> None:
    """Configure structlog once per process.

    ``json`` output is meant for log shipping; ``console`` renders
    human-readable lines for local runs.
    """
    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    log_format = (log_format or settings.LOG_FORMAT).lower()

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    else:
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.CallsiteParameterAdder(
                parameters={
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                    structlog.processors.CallsiteParameter.LINENO,
                }
            ),
            structlog.processors.JSONRenderer(),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> FilteringBoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name or __name__)


class CorrelationContextManager:
    """Binds a correlation id, plus any extra fields, for one unit of work.

    Used around each API request, sweep and delayed action so every log line
    they produce can be grouped. Fields bound by an outer context are
    restored on exit.
    """

    def __init__(self, correlation_id: Optional[str] = None, **context: Any):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.context = {"correlation_id": self.correlation_id, **context}
        self._tokens = None

    def __enter__(self) -> str:
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._tokens:
            structlog.contextvars.reset_contextvars(**self._tokens)
            self._tokens = None


def log_escalation_event(
    logger: FilteringBoundLogger,
    incident_id: int,
    rule_name: str,
    action_type: str,
    status: str,
    **kwargs: Any
) -> None:
    """Log escalation events with consistent format."""
    logger.info(
        f"Escalation {status}: {rule_name} / {action_type}",
        incident_id=incident_id,
        escalation_rule=rule_name,
        escalation_action=action_type,
        escalation_status=status,
        **kwargs
    )


def log_notification_event(
    logger: FilteringBoundLogger,
    notification_id: int,
    channel: str,
    status: str,
    **kwargs: Any
) -> None:
    """Log notification lifecycle transitions with consistent format."""
    level = "warning" if status == "failed" else "info"
    getattr(logger, level)(
        f"Notification {status} via {channel}",
        notification_id=notification_id,
        notification_channel=channel,
        notification_status=status,
        **kwargs
    )


def log_external_api_call(
    logger: FilteringBoundLogger,
    service: str,
    operation: str,
    success: bool,
    duration_ms: float,
    **kwargs: Any
) -> None:
    """Log external API calls with consistent format."""
    level = "info" if success else "error"
    getattr(logger, level)(
        f"{service} API call: {operation}",
        external_service=service,
        operation=operation,
        success=success,
        duration_ms=duration_ms,
        **kwargs
    )
