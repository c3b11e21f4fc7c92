"""
Timing helpers: elapsed-time logging and bounded polling.
"""

import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Iterator, Optional

from loguru import logger


class WaitUntilTimeoutError(TimeoutError):
    pass


def elapsed_since(start: float) -> timedelta:
    """Time since a ``time.monotonic()`` reading"""
    return timedelta(seconds=time.monotonic() - start)


@contextmanager
def timed(task: str, log=logger) -> Iterator[None]:
    """Log how long the wrapped block took, whether it succeeded or not."""
    start = time.monotonic()
    log.debug(f"Starting {task}")
    try:
        yield
    except BaseException:
        log.warning(f"{task} failed after {elapsed_since(start).total_seconds():.1f}s")
        raise
    log.info(f"{task} took {elapsed_since(start).total_seconds():.1f}s")


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = 5.0,
    description: Optional[str] = None,
) -> None:
    """
    Poll ``predicate`` until it returns True.

    Raises:
        WaitUntilTimeoutError: once ``timeout`` seconds have passed without success
    """
    deadline = time.monotonic() + timeout
    while True:
        if predicate():
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaitUntilTimeoutError(
                f"{description or 'condition'} not met within {timeout}s"
            )
        time.sleep(min(interval, remaining))
