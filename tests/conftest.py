"""Root conftest: shared fixtures for ledger tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

WALLET = "wallet-1"
TOKEN = "0xtoken"


@pytest.fixture
def base_time() -> datetime:
    """Standard timestamp for tests."""
    return datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_event(base_time: datetime) -> Callable[..., dict[str, Any]]:
    """
    Factory for inbound transaction payloads.

    Usage:
        make_event("tx1", "buy", "100", "1.00", minutes=1, fees="0.5")
    """

    def _make(
        source_tx_id: str,
        direction: str,
        quantity: str,
        price: str,
        fees: str = "0",
        minutes: int = 0,
        wallet_id: str = WALLET,
        token_address: str = TOKEN,
        **extra: Any,
    ) -> dict[str, Any]:
        event = {
            "source_tx_id": source_tx_id,
            "wallet_id": wallet_id,
            "token_address": token_address,
            "direction": direction,
            "quantity": quantity,
            "price": price,
            "fees": fees,
            "timestamp": (base_time + timedelta(minutes=minutes)).isoformat(),
        }
        event.update(extra)
        return event

    return _make
