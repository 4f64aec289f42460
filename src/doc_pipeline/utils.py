"""
Utilities
=========

A small `retry` decorator for transient errors in outbound calls made by the
default collaborators (LLM requests). It retries in-process with exponential
backoff and jitter. It is separate from the queue-level retry
scheduler, which handles failures of whole classification jobs.
"""
import random
import time
from functools import wraps
from typing import Callable, Type, TypeVar

import structlog

log = structlog.get_logger(__name__)
T = TypeVar("T")


def retry(
    retryable_exceptions: tuple[Type[Exception], ...],
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    A decorator that retries a method call on specific exceptions.

    The decorated method's instance must expose ``settings.LLM_MAX_RETRIES``.

    Args:
        retryable_exceptions: A tuple of exception types that should trigger a retry.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> T:
            max_retries = self.settings.LLM_MAX_RETRIES
            for attempt in range(1, max_retries + 1):
                try:
                    return func(self, *args, **kwargs)
                except retryable_exceptions as e:
                    if attempt == max_retries:
                        log.error(
                            "Call failed after all attempts",
                            func=func.__name__,
                            attempts=attempt,
                        )
                        raise
                    log.warning(
                        "Call failed; retrying",
                        func=func.__name__,
                        error=str(e),
                        attempt=attempt,
                        max_retries=max_retries,
                    )
                    _sleep_backoff(attempt, max_retries)
            # This part should be unreachable if LLM_MAX_RETRIES > 0
            raise RuntimeError("Retry loop exited unexpectedly.")

        return wrapper

    return decorator


def _sleep_backoff(attempt: int, max_retries: int) -> None:
    """Sleep for a short duration with exponential backoff and jitter."""
    delay = (2**attempt) * random.uniform(0.8, 1.2)
    log.info(
        "Sleeping before retry",
        delay_seconds=round(delay, 1),
        attempt=attempt,
        max_retries=max_retries,
    )
    time.sleep(delay)
