"""Unit tests for SystemConfig loading."""

from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from lotbook.services.ledger.models import AccountingMethod, FeeAllocation, OversellPolicy
from lotbook.system import SystemConfig, get_system_config, reload_system_config
from lotbook.system.config import _deep_merge, _substitute_env_vars


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "system.yaml"
    path.write_text(
        """
accounting:
  method: lifo
  fee_allocation: separate
  oversell_policy: clamp
persistence:
  backend: sqlite
  sqlite_path: ${LEDGER_DIR}/ledger.db
market_data:
  max_price_age_seconds: 300
logging:
  level: DEBUG
"""
    )
    return path


class TestLoad:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = SystemConfig.load(tmp_path / "absent.yaml")

        assert config == SystemConfig()
        assert config.persistence.backend == "memory"
        assert config.logging.enable_file is False

    def test_file_merges_over_defaults(self, config_file: Path, monkeypatch) -> None:
        monkeypatch.setenv("LEDGER_DIR", "/var/lib/lotbook")

        config = SystemConfig.load(config_file)

        assert config.accounting.method == "lifo"
        assert config.accounting.include_fees is True
        assert config.persistence.sqlite_path == "/var/lib/lotbook/ledger.db"
        assert config.persistence.retry_attempts == 5
        assert config.ledger.workers == 4
        assert config.logging.level == "DEBUG"

    def test_env_var_selects_file(self, config_file: Path, monkeypatch) -> None:
        monkeypatch.setenv("LOTBOOK_CONFIG", str(config_file))

        assert SystemConfig.load().persistence.backend == "sqlite"

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError, match="mapping"):
            SystemConfig.load(path)

    def test_unknown_key_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "typo.yaml"
        path.write_text("ledger:\n  wokers: 8\n")

        with pytest.raises(TypeError):
            SystemConfig.load(path)


class TestConversions:
    def test_accounting_config(self, config_file: Path) -> None:
        accounting = SystemConfig.load(config_file).accounting.to_accounting_config()

        assert accounting.method == AccountingMethod.LIFO
        assert accounting.fee_allocation == FeeAllocation.SEPARATE
        assert accounting.oversell_policy == OversellPolicy.CLAMP
        assert accounting.gas_price_estimate == Decimal("0.000000005")

    def test_retry_policy(self) -> None:
        policy = SystemConfig().persistence.to_retry_policy()

        assert policy.max_attempts == 5
        assert policy.base_delay_s == 0.05

    def test_max_price_age(self, config_file: Path) -> None:
        assert SystemConfig().market_data.max_price_age is None
        assert SystemConfig.load(config_file).market_data.max_price_age == timedelta(minutes=5)

    def test_logger_config(self, config_file: Path) -> None:
        logger_config = SystemConfig.load(config_file).logging.to_logger_config()

        assert logger_config.level == "DEBUG"
        assert logger_config.file_path == Path("logs/lotbook.log")


class TestHelpers:
    def test_deep_merge(self) -> None:
        merged = _deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}, "c": 4})

        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}

    def test_undefined_env_var_left_in_place(self, monkeypatch) -> None:
        monkeypatch.delenv("LOTBOOK_UNSET_VAR", raising=False)

        assert _substitute_env_vars({"k": ["${LOTBOOK_UNSET_VAR}"]}) == {"k": ["${LOTBOOK_UNSET_VAR}"]}


class TestSingleton:
    def test_reload_replaces_cached_config(self, config_file: Path, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setattr("lotbook.system.config._system_config", None)

        first = reload_system_config(tmp_path / "absent.yaml")
        assert get_system_config() is first

        second = reload_system_config(config_file)

        assert second is not first
        assert get_system_config().persistence.backend == "sqlite"
