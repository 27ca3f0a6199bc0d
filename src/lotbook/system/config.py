"""
System configuration for lotbook.

One YAML file configures the whole process: accounting policy, ledger
runtime, persistence backend, market data freshness and logging.

Search order for the file:
1. Explicit path passed to SystemConfig.load() / get_system_config()
2. $LOTBOOK_CONFIG
3. config/system.yaml (relative to the working directory)

Missing files and missing keys fall back to the defaults below. String
values may reference environment variables as ${VAR}.
"""

import os
import re
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml

from lotbook.system.log_system import LoggingConfig as LoggerConfig

CONFIG_ENV_VAR = "LOTBOOK_CONFIG"
DEFAULT_CONFIG_PATH = Path("config/system.yaml")

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


@dataclass
class AccountingPolicyConfig:
    """Accounting policy section (converted to the ledger's AccountingConfig)."""

    method: str = "FIFO"
    include_fees: bool = True
    fee_allocation: str = "proportional"
    oversell_policy: str = "reject"
    gas_price_estimate: str = "0.000000005"

    def to_accounting_config(self):
        from lotbook.services.ledger.models import AccountingConfig

        return AccountingConfig(
            method=self.method,
            include_fees=self.include_fees,
            fee_allocation=self.fee_allocation,
            oversell_policy=self.oversell_policy,
            gas_price_estimate=Decimal(str(self.gas_price_estimate)),
        )


@dataclass
class LedgerConfig:
    """Ledger runtime: worker pool size and event bus settings."""

    workers: int = 4
    max_event_history: int = 10_000
    display_events: list[str] = field(default_factory=list)


@dataclass
class PersistenceConfig:
    """Durable storage backend and write retry policy."""

    backend: str = "memory"  # memory | sqlite
    sqlite_path: str = "data/ledger.db"
    retry_attempts: int = 5
    retry_base_delay_s: float = 0.05
    retry_max_delay_s: float = 2.0

    def to_retry_policy(self):
        from lotbook.services.persistence.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay_s=self.retry_base_delay_s,
            max_delay_s=self.retry_max_delay_s,
        )


@dataclass
class MarketDataConfig:
    """Price freshness settings."""

    max_price_age_seconds: Optional[float] = None

    @property
    def max_price_age(self) -> Optional[timedelta]:
        if self.max_price_age_seconds is None:
            return None
        return timedelta(seconds=self.max_price_age_seconds)


@dataclass
class LoggingConfig:
    """Logging section (converted to log_system.LoggingConfig)."""

    level: str = "INFO"
    format: str = "console"
    timestamp_format: str = "compact"
    enable_file: bool = False
    file_path: str = "logs/lotbook.log"
    file_level: str = "WARNING"
    file_rotation: bool = True
    max_file_size_mb: int = 10
    backup_count: int = 3
    enable_event_display: bool = True

    def to_logger_config(self) -> LoggerConfig:
        return LoggerConfig(
            level=self.level,
            format=self.format,
            timestamp_format=self.timestamp_format,
            enable_file=self.enable_file,
            file_path=Path(self.file_path),
            file_level=self.file_level,
            file_rotation=self.file_rotation,
            max_file_size_mb=self.max_file_size_mb,
            backup_count=self.backup_count,
            enable_event_display=self.enable_event_display,
        )


@dataclass
class SystemConfig:
    """
    Complete system configuration.

    Example:
        >>> config = SystemConfig.load("config/system.yaml")
        >>> config.accounting.to_accounting_config().method
        <AccountingMethod.FIFO: 'FIFO'>
    """

    accounting: AccountingPolicyConfig = field(default_factory=AccountingPolicyConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "SystemConfig":
        """
        Load configuration from YAML, merged over defaults.

        Args:
            path: Config file; None searches $LOTBOOK_CONFIG then config/system.yaml

        Returns:
            SystemConfig (all defaults if no file is found)
        """
        config_path = cls._resolve_path(path)
        defaults = asdict(cls())
        if config_path is None or not config_path.exists():
            return cls._from_dict(defaults)

        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping, got {type(raw).__name__}")

        return cls._from_dict(_deep_merge(defaults, _substitute_env_vars(raw)))

    @staticmethod
    def _resolve_path(path: str | Path | None) -> Optional[Path]:
        if path is not None:
            return Path(path)
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            return Path(env_path)
        return DEFAULT_CONFIG_PATH

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "SystemConfig":
        return cls(
            accounting=AccountingPolicyConfig(**data.get("accounting", {})),
            ledger=LedgerConfig(**data.get("ledger", {})),
            persistence=PersistenceConfig(**data.get("persistence", {})),
            market_data=MarketDataConfig(**data.get("market_data", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base (override wins)."""
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _substitute_env_vars(value: Any) -> Any:
    """Replace ${VAR} in strings (recursively); undefined variables are left as-is."""
    if isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env_vars(v) for v in value]
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)
    return value


_system_config: Optional[SystemConfig] = None


def get_system_config(path: str | Path | None = None) -> SystemConfig:
    """
    Get the system configuration singleton.

    An explicit path always loads (and caches) that file.
    """
    global _system_config
    if path is not None:
        _system_config = SystemConfig.load(path)
    elif _system_config is None:
        _system_config = SystemConfig.load()
    return _system_config


def reload_system_config(path: str | Path | None = None) -> SystemConfig:
    """Force a reload from disk and replace the singleton."""
    global _system_config
    _system_config = SystemConfig.load(path)
    return _system_config
