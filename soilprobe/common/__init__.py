"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Fixed-cadence async timer
"""

from .config import (
    EngineConfig,
    SerialSettings,
    DiscoverySettings,
    PollingSettings,
    LoggingSettings,
    DEFAULT_VENDOR_IDS,
    load_engine_config,
    load_config_file,
)
from .exceptions import (
    SoilProbeError,
    ConfigError,
    DeviceError,
    TransportError,
    PermissionDeniedError,
    BusyError,
    InvariantError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    configure_service_loggers,
    log_transaction,
    log_connection_change,
)
from .scheduler import PeriodicTimer

__all__ = [
    # Config
    "EngineConfig",
    "SerialSettings",
    "DiscoverySettings",
    "PollingSettings",
    "LoggingSettings",
    "DEFAULT_VENDOR_IDS",
    "load_engine_config",
    "load_config_file",
    # Exceptions
    "SoilProbeError",
    "ConfigError",
    "DeviceError",
    "TransportError",
    "PermissionDeniedError",
    "BusyError",
    "InvariantError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "configure_service_loggers",
    "log_transaction",
    "log_connection_change",
    # Scheduling
    "PeriodicTimer",
]
