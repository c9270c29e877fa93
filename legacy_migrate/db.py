"""Database helpers: engines, statement timeouts and the retry policy."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import ArgumentError, DBAPIError, OperationalError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import ConfigurationError
from .models.migration import MigrationConfig

logger = logging.getLogger(__name__)


def create_engine_from_url(url: str, **kwargs: Any) -> Engine:
    """
    Create an engine for a source or target URL.

    Args:
        url: SQLAlchemy database URL
        **kwargs: Extra keyword arguments for create_engine

    Returns:
        Engine with pre-ping enabled
    """
    if not url:
        raise ConfigurationError("Database URL is empty")
    options: Dict[str, Any] = {"pool_pre_ping": True}
    options.update(kwargs)
    try:
        return create_engine(url, **options)
    except (ArgumentError, ImportError) as e:
        raise ConfigurationError(f"Invalid database URL: {e}", cause=e) from e


def apply_statement_timeout(conn: Connection, timeout_ms: Optional[int]) -> None:
    """Bound statement execution time for the current transaction."""
    if not timeout_ms:
        return
    dialect = conn.dialect.name
    if dialect == "postgresql":
        conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
    elif dialect == "mysql":
        conn.execute(text(f"SET SESSION MAX_EXECUTION_TIME = {int(timeout_ms)}"))


def is_transient_error(error: BaseException) -> bool:
    """Errors worth retrying: timeouts, dropped connections, lock waits."""
    if isinstance(error, TimeoutError):
        return True
    if isinstance(error, OperationalError):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return False


def retry_policy(
    config: MigrationConfig,
    log: Optional[logging.Logger] = None,
    retry_on: Any = is_transient_error,
) -> Retrying:
    """
    Bounded exponential backoff for one query or batch transaction.

    Args:
        config: Run configuration (max_retries and backoff bounds)
        log: Logger that records each retry
        retry_on: Predicate deciding which exceptions are retried

    Returns:
        A tenacity Retrying object; the last error is re-raised on exhaustion
    """
    return Retrying(
        stop=stop_after_attempt(config.max_retries + 1),
        wait=wait_exponential(
            multiplier=config.retry_backoff_ms / 1000.0,
            max=config.retry_max_backoff_ms / 1000.0,
        ),
        retry=retry_if_exception(retry_on),
        before_sleep=before_sleep_log(log or logger, logging.WARNING),
        reraise=True,
    )
