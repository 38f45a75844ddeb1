"""Retry logic with exponential backoff for transient failures.

A decorator for retrying Azure CLI invocations that fail transiently
(throttling, network timeouts, service hiccups).

Security:
- No credential leakage in logs (registration tokens, passwords)
- Safe default limits

Usage:
    @retry_with_exponential_backoff(max_attempts=3)
    def list_hosts():
        return subprocess.run(["az", ...], check=True)
"""

import functools
import logging
import random
import re
import subprocess
import time
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    TimeoutError,
    ConnectionError,
    subprocess.TimeoutExpired,
)

_SENSITIVE_PATTERN = re.compile(
    r"(secret|password|token|key|authorization)([=:]\s*)\S+", re.IGNORECASE
)


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        jitter: Add random jitter to delays to prevent thundering herd (default: True)
        retryable_exceptions: Tuple of exception types to retry
            (default: network and subprocess timeouts)

    Returns:
        Decorated function that will retry on transient failures
    """
    if retryable_exceptions is None:
        retryable_exceptions = DEFAULT_RETRYABLE_EXCEPTIONS

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt}/{max_attempts}"
                        )

                    return result

                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: "
                            f"{_safe_error_message(e)}"
                        )
                        raise

                    actual_delay = delay
                    if jitter:
                        # ±25% of delay
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)

                    actual_delay = min(actual_delay, max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {_safe_error_message(e)}"
                    )

                    time.sleep(actual_delay)
                    delay *= 2

            raise RuntimeError(f"{func.__name__} called with max_attempts={max_attempts}")

        return wrapper  # type: ignore

    return decorator


def _safe_error_message(exception: Exception) -> str:
    """Create safe error message without leaking credentials.

    Args:
        exception: Exception to create message from

    Returns:
        Sanitized error message safe for logging
    """
    error_str = str(exception)
    stderr = getattr(exception, "stderr", None)
    if isinstance(stderr, str) and stderr.strip():
        error_str = f"{error_str}: {stderr.strip()}"

    error_str = _SENSITIVE_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}***", error_str)

    if len(error_str) > 200:
        error_str = error_str[:200] + "..."

    return error_str


__all__ = ["DEFAULT_RETRYABLE_EXCEPTIONS", "retry_with_exponential_backoff"]
