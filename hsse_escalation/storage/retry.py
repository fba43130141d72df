"""Retry and error-translation helpers for database access."""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hsse_escalation.config import settings
from hsse_escalation.errors import InfrastructureError
from hsse_escalation.utils.logging import get_logger

logger = get_logger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying database operation",
        operation=getattr(retry_state.fn, "__qualname__", None),
        attempt=retry_state.attempt_number,
        error=str(error)
    )


db_retry = retry(
    stop=stop_after_attempt(settings.DB_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=_log_retry,
    reraise=True,
)


@contextmanager
def infrastructure_errors(operation: str) -> Iterator[None]:
    """Re-raise database failures as InfrastructureError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("Database operation failed", operation=operation, error=str(e))
        raise InfrastructureError(f"{operation} failed: {e}") from e
