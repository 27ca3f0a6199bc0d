"""
lotbook - Lot-based position accounting

Public API for FIFO/LIFO lot tracking, realized/unrealized P&L and
deterministic ledger reconstruction.
"""

from importlib.metadata import version

try:
    __version__ = version("lotbook")
except Exception:
    __version__ = "0.0.0.dev"  # Fallback for development


__all__ = [
    "__version__",
]
