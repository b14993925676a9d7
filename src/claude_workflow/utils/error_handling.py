"""Standardized error handling utilities."""

import logging
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def log_and_reraise(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.ERROR,
) -> None:
    """
    Log an error with context and re-raise it.

    Must be called from inside the ``except`` block handling ``error``.

    Args:
        error: Exception to log and re-raise
        message: Context message to log
        logger_instance: Logger to use (defaults to module logger)
        level: Log level (default: ERROR)

    Raises:
        The original exception
    """
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")
    raise error


def log_and_ignore(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Log an error and ignore it (don't re-raise).

    Use for non-critical errors that should not interrupt the flow.
    """
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")


def safe_call(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    log_errors: bool = True,
    error_message: str = "Error in function call",
    **kwargs,
) -> Optional[T]:
    """
    Safely call a function, catching and logging exceptions.

    Args:
        func: Function to call
        *args: Positional arguments for func
        default: Default value to return on error
        log_errors: Whether to log errors
        error_message: Message to log on error
        **kwargs: Keyword arguments for func

    Returns:
        Function result on success, default value on error
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        if log_errors:
            logger.error(f"{error_message}: {e}")
        return default
