"""Retrying ledger writer with per-key replay queues for failed writes."""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable

from lotbook.services.ledger.errors import PersistenceFailure
from lotbook.services.ledger.models import Lot, PortfolioSnapshot, Position, PositionKey, TransactionPnL
from lotbook.services.persistence.repository import ILedgerRepository
from lotbook.services.persistence.retry import RetryPolicy, with_retry
from lotbook.system import LoggerFactory

logger = LoggerFactory.get_logger()


@dataclass(frozen=True)
class PendingWrite:
    """A write that failed, kept for replay."""

    key: PositionKey
    position: Position
    record: TransactionPnL | None = None
    lots: tuple[Lot, ...] = ()


class LedgerWriter:
    """
    Writes ledger mutations through a repository with retry.

    A mutation (record, open lots, position) is stored with one atomic
    repository call. Every write is idempotent (records dedupe on
    transaction id, positions and lot sets are overwritten), so a write can
    be retried or replayed any number of times.

    A write that fails for any reason is queued for its position key, and
    later writes for that key queue behind it until ``flush_pending``
    succeeds. Other keys keep writing directly; repository I/O never runs
    under the writer's lock.

    Example:
        >>> writer = LedgerWriter(repository, RetryPolicy(max_attempts=3))
        >>> writer.write_mutation(record, position, lots)
        True
    """

    def __init__(self, repository: ILedgerRepository, policy: RetryPolicy | None = None) -> None:
        self.repository = repository
        self.policy = policy or RetryPolicy()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._pending: dict[PositionKey, deque[PendingWrite]] = {}

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(len(queue) for queue in self._pending.values())

    def pending(self) -> list[PendingWrite]:
        """Queued writes, grouped by key in the order keys first stalled."""
        with self._lock:
            return [item for queue in self._pending.values() for item in queue]

    def pending_keys(self) -> list[PositionKey]:
        with self._lock:
            return list(self._pending)

    def write_mutation(self, record: TransactionPnL, position: Position, lots: list[Lot]) -> bool:
        """
        Persist one processed event: record, position and open lots.

        Returns:
            True if durably written, False if queued for replay
        """
        return self._write(PendingWrite(key=record.key, position=position, record=record, lots=tuple(lots)))

    def write_position(self, position: Position) -> bool:
        """Persist a price-only position update."""
        return self._write(PendingWrite(key=position.key, position=position))

    def write_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        """
        Append a portfolio snapshot.

        Raises:
            PersistenceFailure: The snapshot could not be stored
        """
        self._retry(lambda: self.repository.append_snapshot(snapshot), f"snapshot {snapshot.snapshot_id}")

    def flush_pending(self) -> int:
        """
        Replay queued writes key by key, in order.

        A key stops at its first failure; the remaining keys are still
        flushed.

        Returns:
            Number of writes flushed
        """
        flushed = 0
        with self._flush_lock:
            for key in self.pending_keys():
                flushed += self._flush_key(key)
        if flushed:
            logger.info("ledger_writer.flushed", count=flushed, remaining=self.pending_count)
        return flushed

    def _flush_key(self, key: PositionKey) -> int:
        flushed = 0
        while True:
            with self._lock:
                queue = self._pending.get(key)
                if not queue:
                    return flushed
                item = queue[0]

            try:
                self._apply(item)
            except PersistenceFailure as e:
                logger.warning(
                    "ledger_writer.flush_stalled",
                    position_key=str(key),
                    remaining=self._queued(key),
                    error=str(e),
                )
                return flushed

            with self._lock:
                queue = self._pending[key]
                queue.popleft()
                if not queue:
                    del self._pending[key]
            flushed += 1

    def _queued(self, key: PositionKey) -> int:
        with self._lock:
            return len(self._pending.get(key, ()))

    def _write(self, item: PendingWrite) -> bool:
        queued = False
        with self._lock:
            queue = self._pending.get(item.key)
            if queue:
                queue.append(item)
                queued, pending = True, len(queue)
        if queued:
            logger.warning(
                "ledger_writer.write_queued",
                position_key=str(item.key),
                transaction_id=item.record.transaction_id if item.record else None,
                reason="earlier writes pending",
                pending=pending,
            )
            return False

        try:
            self._apply(item)
        except PersistenceFailure as e:
            with self._lock:
                queue = self._pending.setdefault(item.key, deque())
                queue.append(item)
                pending = len(queue)
            logger.error(
                "ledger_writer.write_failed",
                position_key=str(item.key),
                transaction_id=item.record.transaction_id if item.record else None,
                error=str(e),
                pending=pending,
            )
            return False
        return True

    def _apply(self, item: PendingWrite) -> None:
        if item.record is not None:
            record = item.record
            self._retry(
                lambda: self.repository.write_mutation(record, list(item.lots), item.position),
                f"persist {item.key}",
            )
        else:
            self._retry(lambda: self.repository.upsert_position(item.position), f"persist {item.key}")

    def _retry(self, fn: Callable[[], None], operation: str) -> None:
        try:
            with_retry(fn, self.policy, operation=operation)
        except PersistenceFailure:
            raise
        except Exception as e:
            raise PersistenceFailure(f"{operation} failed: {type(e).__name__}: {e}") from e
