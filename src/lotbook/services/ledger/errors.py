"""Error taxonomy for the ledger service.

Every failure the ledger reports derives from LedgerError so callers can
catch the whole family in one place. InvalidEvent also derives from
ValueError, matching how input validation errors surface elsewhere.
"""

from decimal import Decimal


class LedgerError(Exception):
    """Base class for all ledger errors."""


class InvalidEvent(LedgerError, ValueError):
    """Inbound event failed boundary validation (non-positive quantity/price, unknown direction, ...)."""


class InsufficientLots(LedgerError):
    """Sell quantity exceeds the open balance of the position."""

    def __init__(self, requested: Decimal, available: Decimal, position_key: str | None = None):
        self.requested = requested
        self.available = available
        self.position_key = position_key
        where = f" for {position_key}" if position_key else ""
        super().__init__(f"Insufficient lots{where}: need {requested}, have {available}")


class PriceUnavailable(LedgerError):
    """Market data collaborator has no price for the token."""

    def __init__(self, token_address: str, reason: str | None = None):
        self.token_address = token_address
        message = f"Price unavailable for {token_address}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PersistenceFailure(LedgerError):
    """Durable write failed after exhausting retries."""


class ReconstructionFailure(LedgerError):
    """Ledger state for one position key could not be rebuilt from history."""

    def __init__(self, position_key: str, reason: str):
        self.position_key = position_key
        self.reason = reason
        super().__init__(f"Reconstruction failed for {position_key}: {reason}")
