"""Persistence for ledger records, positions and lot state.

Key components:
- ILedgerRepository: Protocol implemented by every backend
- InMemoryLedgerRepository / SQLiteLedgerRepository: Backends
- LedgerWriter: Retrying writer with a replay queue
- RetryPolicy / with_retry: Exponential backoff with full jitter
"""

from lotbook.services.persistence.repository import (
    ILedgerRepository,
    InMemoryLedgerRepository,
    SQLiteLedgerRepository,
)
from lotbook.services.persistence.retry import RetryPolicy, with_retry
from lotbook.services.persistence.writer import LedgerWriter, PendingWrite

__all__ = [
    "ILedgerRepository",
    "InMemoryLedgerRepository",
    "SQLiteLedgerRepository",
    "LedgerWriter",
    "PendingWrite",
    "RetryPolicy",
    "with_retry",
]
