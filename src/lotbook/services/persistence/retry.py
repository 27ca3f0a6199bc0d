"""Retry helper for durable writes: exponential backoff with full jitter."""

import random
import sqlite3
import threading
from dataclasses import dataclass
from typing import Callable, TypeVar

from lotbook.services.ledger.errors import PersistenceFailure
from lotbook.system import LoggerFactory

T = TypeVar("T")
logger = LoggerFactory.get_logger()

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    PersistenceFailure,
    sqlite3.OperationalError,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one retried operation."""

    max_attempts: int = 5
    base_delay_s: float = 0.05
    max_delay_s: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("Retry delays cannot be negative")


def with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    operation: str = "write",
    stop_event: threading.Event | None = None,
) -> T:
    """
    Call fn, retrying transient failures.

    Sleep before attempt n+1 is uniform in [0, min(max_delay, base * 2**n)].
    Non-transient exceptions propagate immediately.

    Raises:
        PersistenceFailure: Transient failures exhausted all attempts
        InterruptedError: stop_event was set while waiting
    """
    waiter = stop_event or threading.Event()
    attempt = 0
    while True:
        try:
            return fn()
        except TRANSIENT_EXCEPTIONS as e:
            if attempt >= policy.max_attempts - 1:
                raise PersistenceFailure(f"{operation} failed after {policy.max_attempts} attempts: {e}") from e

            sleep_s = min(policy.max_delay_s, policy.base_delay_s * (2**attempt))
            logger.info(
                "persistence_retry.backoff",
                operation=operation,
                attempt=attempt + 1,
                sleep_s=round(sleep_s, 3),
                error=str(e),
            )
            if waiter.is_set():
                raise InterruptedError("shutdown requested") from e
            waiter.wait(timeout=random.random() * sleep_s)
            attempt += 1
