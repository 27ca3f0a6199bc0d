"""
System configuration package.

One configuration for the whole process.

Exports:
    - LoggerFactory: Factory for creating configured loggers
    - LoggingConfig: Logging configuration model
    - SystemConfig: Complete system configuration
    - get_system_config: Get system config singleton
    - reload_system_config: Force reload system config
"""

from lotbook.system.log_system import LoggerFactory, LoggingConfig
from lotbook.system.config import SystemConfig, get_system_config, reload_system_config  # noqa: I001

__all__ = [
    "SystemConfig",
    "get_system_config",
    "reload_system_config",
    "LoggerFactory",
    "LoggingConfig",
]
