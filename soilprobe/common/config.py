"""
Configuration Dataclasses

Type-safe configuration structures for the engine.
Loaded from a YAML file (or a plain dict) via load_engine_config().
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

# Common USB-to-serial chipset vendors
DEFAULT_VENDOR_IDS: tuple[int, ...] = (
    0x0403,  # FTDI
    0x067B,  # Prolific
    0x1A86,  # QinHeng (CH340/CH341)
    0x10C4,  # Silicon Labs (CP210x)
    0x16D0,  # MCS
)

VALID_PARITIES = ("N", "E", "O")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class SerialSettings:
    """Serial line parameters"""
    baudrate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = "N"  # N=None, E=Even, O=Odd


@dataclass
class DiscoverySettings:
    """Device discovery heuristics"""
    vendor_ids: list[int] = field(default_factory=lambda: list(DEFAULT_VENDOR_IDS))
    accept_cdc_class: bool = True
    serial_port: str = ""  # Pin discovery to one path, e.g. "/dev/ttyUSB0"


@dataclass
class PollingSettings:
    """Polling cadence and per-transaction timeout"""
    interval_s: float = 5.0
    response_timeout_ms: int = 1000


@dataclass
class LoggingSettings:
    """Log output configuration"""
    level: str = "INFO"
    json_format: bool = True


@dataclass
class EngineConfig:
    """Complete engine configuration"""
    serial: SerialSettings = field(default_factory=SerialSettings)
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    # Number of TransactionRecords kept in memory for diagnostics
    history_size: int = 50

    @property
    def response_timeout_s(self) -> float:
        return self.polling.response_timeout_ms / 1000.0


def _parse_vendor_id(value: Any) -> int:
    """Accept 1027, "1027" or "0x0403" """
    try:
        if isinstance(value, str):
            return int(value, 0)
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid vendor id: {value!r}")


def _validate(config: EngineConfig) -> None:
    errors = []

    if config.serial.baudrate <= 0:
        errors.append(f"baudrate must be positive, got {config.serial.baudrate}")
    if config.serial.data_bits not in (5, 6, 7, 8):
        errors.append(f"data_bits must be 5-8, got {config.serial.data_bits}")
    if config.serial.stop_bits not in (1, 2):
        errors.append(f"stop_bits must be 1 or 2, got {config.serial.stop_bits}")
    if config.serial.parity not in VALID_PARITIES:
        errors.append(f"parity must be one of {VALID_PARITIES}, got {config.serial.parity!r}")
    if config.polling.interval_s <= 0:
        errors.append(f"interval_s must be positive, got {config.polling.interval_s}")
    if config.polling.response_timeout_ms <= 0:
        errors.append(
            f"response_timeout_ms must be positive, got {config.polling.response_timeout_ms}"
        )
    if config.polling.response_timeout_ms >= config.polling.interval_s * 1000:
        errors.append("response_timeout_ms must be shorter than the polling interval")
    if config.logging.level not in VALID_LOG_LEVELS:
        errors.append(f"log level must be one of {VALID_LOG_LEVELS}, got {config.logging.level!r}")
    if config.history_size < 0:
        errors.append(f"history_size must be >= 0, got {config.history_size}")

    if errors:
        raise ConfigError("; ".join(errors))


def load_engine_config(data: dict | None) -> EngineConfig:
    """Load EngineConfig from dictionary (e.g., parsed YAML)"""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError("Top-level configuration must be a mapping")

    serial_data = data.get("serial", {}) or {}
    discovery_data = data.get("discovery", {}) or {}
    polling_data = data.get("polling", {}) or {}
    logging_data = data.get("logging", {}) or {}

    try:
        serial = SerialSettings(
            baudrate=int(serial_data.get("baudrate", 9600)),
            data_bits=int(serial_data.get("data_bits", 8)),
            stop_bits=int(serial_data.get("stop_bits", 1)),
            parity=str(serial_data.get("parity", "N")).upper(),
        )

        vendor_ids = discovery_data.get("vendor_ids")
        discovery = DiscoverySettings(
            vendor_ids=(
                [_parse_vendor_id(v) for v in vendor_ids]
                if vendor_ids is not None
                else list(DEFAULT_VENDOR_IDS)
            ),
            accept_cdc_class=bool(discovery_data.get("accept_cdc_class", True)),
            serial_port=str(discovery_data.get("serial_port", "") or ""),
        )

        polling = PollingSettings(
            interval_s=float(polling_data.get("interval_s", 5.0)),
            response_timeout_ms=int(polling_data.get("response_timeout_ms", 1000)),
        )

        logging_settings = LoggingSettings(
            level=str(logging_data.get("level", "INFO")).upper(),
            json_format=bool(logging_data.get("json_format", True)),
        )

        config = EngineConfig(
            serial=serial,
            discovery=discovery,
            polling=polling,
            logging=logging_settings,
            history_size=int(data.get("history_size", 50)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value: {e}")

    _validate(config)
    return config


def load_config_file(config_path: str | Path) -> EngineConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated EngineConfig

    Raises:
        ConfigError: file missing, unparsable or invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {config_path}: {e}")

    return load_engine_config(data)
