"""Retry utilities with linear backoff."""

import time
from functools import wraps
from typing import Callable, Tuple, Type

import structlog

log = structlog.stdlib.get_logger()


def linear_backoff_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] | None = None,
) -> Callable:
    """
    Decorator that retries a function with linearly growing delays.

    The n-th retry waits ``delay * n`` seconds. Exceptions not listed in
    ``exceptions`` propagate immediately.

    Args:
        max_attempts: Total number of attempts, including the first call
        delay: Delay step in seconds
        exceptions: Tuple of exception types to catch and retry
        sleep: Optional sleep function (defaults to time.sleep)

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            do_sleep = sleep or time.sleep

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        log.error(
                            "max_retries_reached",
                            function=func.__name__,
                            max_attempts=max_attempts,
                            error=str(e),
                        )
                        raise

                    wait = delay * attempt

                    log.warning(
                        "retrying_after_error",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay_seconds=wait,
                        error=str(e),
                    )

                    do_sleep(wait)

        return wrapper

    return decorator
