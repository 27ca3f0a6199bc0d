"""Mutation serializer: at most one in-flight mutation per position key.

Each key owns a FIFO queue of pending work items. A key with queued work has
exactly one drain task on the thread pool; distinct keys drain in parallel.
"""

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, TypeVar

from lotbook.system import LoggerFactory

logger = LoggerFactory.get_logger()

T = TypeVar("T")


class KeyState(str, Enum):
    """Per-key serializer state: IDLE -> PROCESSING -> (FAILED ->) IDLE."""

    IDLE = "idle"
    PROCESSING = "processing"
    FAILED = "failed"


class MutationSerializer:
    """
    Per-key single-consumer work queues on a shared thread pool.

    Guarantees:
    - Items for one key run one at a time, in submission order
    - Items for different keys may run concurrently
    - A running item is never cancelled; a queued item whose future was
      cancelled is skipped
    - An item that raises delivers the exception through its future, and the
      key goes back to IDLE (or on to the next queued item)

    Example:
        >>> serializer = MutationSerializer(max_workers=4)
        >>> future = serializer.submit("w1:0xtoken", lambda: apply(event))
        >>> update = future.result()
        >>> serializer.shutdown()
    """

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "lotbook-ledger") -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._lock = threading.Lock()
        self._queues: dict[str, deque[tuple[Future, Callable[[], Any]]]] = {}
        self._draining: set[str] = set()
        self._states: dict[str, KeyState] = {}
        self._last_failure: dict[str, BaseException] = {}
        self._closed = False

        logger.debug("mutation_serializer.initialized", max_workers=max_workers)

    def submit(self, key: str, fn: Callable[[], T]) -> "Future[T]":
        """
        Queue a work item for a key.

        Args:
            key: Position key (string form)
            fn: Zero-argument callable performing the mutation

        Returns:
            Future resolved with fn's result or exception

        Raises:
            RuntimeError: If the serializer was shut down
        """
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("MutationSerializer is shut down")
            self._queues.setdefault(key, deque()).append((future, fn))
            self._states.setdefault(key, KeyState.IDLE)
            if key not in self._draining:
                self._draining.add(key)
                self._executor.submit(self._drain, key)
        return future

    def run(self, key: str, fn: Callable[[], T], timeout: float | None = None) -> T:
        """Submit a work item and wait for its result (re-raising its exception)."""
        return self.submit(key, fn).result(timeout=timeout)

    def state(self, key: str) -> KeyState:
        with self._lock:
            return self._states.get(key, KeyState.IDLE)

    def last_failure(self, key: str) -> BaseException | None:
        """Exception raised by the most recent failed item for a key, if any."""
        with self._lock:
            return self._last_failure.get(key)

    def pending(self, key: str) -> int:
        """Number of queued (not yet started) items for a key."""
        with self._lock:
            queue = self._queues.get(key)
            return len(queue) if queue else 0

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; optionally wait for queued items to finish."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.debug("mutation_serializer.shutdown")

    def _drain(self, key: str) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(key)
                if not queue:
                    self._queues.pop(key, None)
                    self._draining.discard(key)
                    self._states[key] = KeyState.IDLE
                    return
                future, fn = queue.popleft()

            if not future.set_running_or_notify_cancel():
                continue

            self._set_state(key, KeyState.PROCESSING)
            try:
                result = fn()
            except BaseException as e:
                with self._lock:
                    self._states[key] = KeyState.FAILED
                    self._last_failure[key] = e
                logger.debug(
                    "mutation_serializer.item_failed",
                    position_key=key,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._set_state(key, KeyState.IDLE)
                future.set_exception(e)
            else:
                self._set_state(key, KeyState.IDLE)
                future.set_result(result)

    def _set_state(self, key: str, state: KeyState) -> None:
        with self._lock:
            self._states[key] = state
