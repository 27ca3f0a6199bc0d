"""
Ledger lifecycle integration test.

Runs the whole stack against a SQLite database:
    Transaction events -> LedgerService -> SQLite + EventBus
        -> process restart -> LedgerReconstructor -> identical state

Verifies:
- Rebuilt positions and lots equal the live state before restart
- Processing continues after restart with dedupe intact
- Price ticks after restart only touch price-derived fields
- Independent keys processed concurrently stay consistent
- A write that fails midway leaves no partial state behind
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from pathlib import Path

import pytest

from lotbook.events import EventBus
from lotbook.services.ledger.models import Lot, PositionKey
from lotbook.services.ledger.service import LedgerService
from lotbook.services.persistence import RetryPolicy, SQLiteLedgerRepository
from lotbook.system import SystemConfig

pytestmark = pytest.mark.integration


@pytest.fixture
def system_config(tmp_path: Path) -> SystemConfig:
    config = SystemConfig()
    config.persistence.backend = "sqlite"
    config.persistence.sqlite_path = str(tmp_path / "ledger.db")
    config.persistence.retry_base_delay_s = 0
    return config


@pytest.fixture
def history(make_event) -> list[dict]:
    """Two wallets trading two tokens with fees, gas and a partial close."""
    events = []
    for wallet in ("wallet-1", "wallet-2"):
        for token, price in (("0xaaa", "1"), ("0xbbb", "10")):
            events.extend(
                [
                    make_event(
                        f"{wallet}-{token}-b1", "buy", "100", price, fees="1", wallet_id=wallet, token_address=token
                    ),
                    make_event(
                        f"{wallet}-{token}-b2",
                        "buy",
                        "40",
                        str(Decimal(price) * 2),
                        minutes=1,
                        wallet_id=wallet,
                        token_address=token,
                    ),
                    make_event(
                        f"{wallet}-{token}-s1",
                        "sell",
                        "110",
                        str(Decimal(price) * 3),
                        fees="0.25",
                        minutes=2,
                        wallet_id=wallet,
                        token_address=token,
                    ),
                    make_event(
                        f"{wallet}-{token}-g1",
                        "fee_payment",
                        "1",
                        "0.01",
                        gas_used=21000,
                        minutes=3,
                        wallet_id=wallet,
                        token_address=token,
                    ),
                ]
            )
    return events


def snapshot(service: LedgerService) -> dict:
    return {
        position.key: (position, service.get_lots(position.wallet_id, position.token_address))
        for position in service.get_positions()
    }


class TestRestart:
    def test_rebuild_matches_live_state(self, system_config: SystemConfig, history: list[dict]) -> None:
        live = LedgerService.from_system_config(system_config)
        live.initialize()
        for payload in history:
            live.process_event(payload)
        live.on_price("0xaaa", Decimal("1.5"))
        before = snapshot(live)
        live.shutdown(close_repository=True)

        restarted = LedgerService.from_system_config(system_config)
        report = restarted.initialize()
        try:
            assert report.ok
            assert report.rebuilt_count == 4
            assert snapshot(restarted) == before
            assert restarted.validate_state() == []
        finally:
            restarted.shutdown(close_repository=True)

    def test_processing_continues_after_restart(
        self, system_config: SystemConfig, history: list[dict], make_event
    ) -> None:
        first = LedgerService.from_system_config(system_config)
        first.initialize()
        for payload in history:
            first.process_event(payload)
        first.shutdown(close_repository=True)

        bus = EventBus()
        second = LedgerService.from_system_config(system_config, event_bus=bus)
        second.initialize()
        try:
            replayed = second.process_event(history[0])
            assert replayed.duplicate is True

            # FIFO after restart: 30 left of b2 (unit cost 2)
            update = second.process_event(
                make_event("wallet-1-0xaaa-s2", "sell", "30", "4", minutes=10, token_address="0xaaa")
            )
            assert update.record.cost_basis == Decimal("60")
            assert update.record.realized_pnl == Decimal("60")
            assert update.position.current_balance == Decimal("0")
            assert update.position.realized_pnl == Decimal("208.75") + Decimal("60")

            assert len(bus.get_history(event_type="position_update")) == 1
        finally:
            second.shutdown(close_repository=True)

    def test_price_tick_after_restart(self, system_config: SystemConfig, history: list[dict]) -> None:
        first = LedgerService.from_system_config(system_config)
        first.initialize()
        for payload in history:
            first.process_event(payload)
        first.shutdown(close_repository=True)

        bus = EventBus()
        second = LedgerService.from_system_config(system_config, event_bus=bus)
        second.initialize()
        try:
            before = second.get_position("wallet-2", "0xbbb")
            (after, *_) = [p for p in second.on_price("0xbbb", Decimal("25")) if p.wallet_id == "wallet-2"]

            assert after.realized_pnl == before.realized_pnl
            assert after.current_balance == before.current_balance
            assert after.total_cost == before.total_cost
            assert after.transaction_count == before.transaction_count
            assert after.unrealized_pnl == Decimal("30") * Decimal("25") - before.total_cost
            assert after.price_stale is False
            assert len(bus.get_history(event_type="price_update")) == 2
        finally:
            second.shutdown(close_repository=True)


    def test_restart_after_failed_write(self, tmp_path: Path, make_event) -> None:
        class LotWriteFails(SQLiteLedgerRepository):
            failing = False

            def _store_lots(self, key: PositionKey, lots: list[Lot], through_tx_id: str | None) -> None:
                if self.failing:
                    raise sqlite3.OperationalError("disk I/O error")
                super()._store_lots(key, lots, through_tx_id)

        path = tmp_path / "ledger.db"
        repository = LotWriteFails(path)
        live = LedgerService(repository=repository, retry_policy=RetryPolicy(max_attempts=1))
        live.initialize()
        live.process_event(make_event("b1", "buy", "100", "1"))
        repository.failing = True
        update = live.process_event(make_event("s1", "sell", "40", "2", minutes=1))
        assert update.persisted is False
        # Process dies with the write still pending
        live.shutdown(close_repository=True)

        restarted = LedgerService(repository=SQLiteLedgerRepository(path))
        report = restarted.initialize()
        try:
            assert report.ok
            assert report.lot_mismatches == []
            position = restarted.get_position("wallet-1", "0xtoken")
            assert position.current_balance == Decimal("100")
            assert [r.transaction_id for r in restarted.get_transactions("wallet-1")] == ["b1"]
            assert restarted.validate_state() == []

            redelivered = restarted.process_event(make_event("s1", "sell", "40", "2", minutes=1))
            assert redelivered.duplicate is False
            assert redelivered.position.current_balance == Decimal("60")
        finally:
            restarted.shutdown(close_repository=True)

class TestConcurrency:
    def test_parallel_keys_match_sequential_run(
        self, system_config: SystemConfig, history: list[dict]
    ) -> None:
        sequential = LedgerService()
        sequential.initialize()
        for payload in history:
            sequential.process_event(payload)

        concurrent = LedgerService.from_system_config(system_config)
        concurrent.initialize()
        try:
            by_key: dict[tuple[str, str], list[dict]] = {}
            for payload in history:
                by_key.setdefault((payload["wallet_id"], payload["token_address"]), []).append(payload)

            def run(payloads: list[dict]) -> None:
                for payload in payloads:
                    concurrent.process_event(payload)

            with ThreadPoolExecutor(max_workers=4) as pool:
                list(pool.map(run, by_key.values()))

            assert snapshot(concurrent) == snapshot(sequential)
            assert concurrent.validate_state() == []
        finally:
            concurrent.shutdown(close_repository=True)
            sequential.shutdown()
