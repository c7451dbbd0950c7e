"""
Device Data Models

Value types exchanged between the device layer and the engine's listeners.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


def local_now() -> datetime:
    """Timezone-aware local wall-clock time"""
    return datetime.now().astimezone()


def format_hex(data: bytes | None) -> str:
    """b"\\x01\\x03" -> "01 03" """
    if not data:
        return ""
    return " ".join(f"{b:02X}" for b in data)


class ConnectionStatus(str, Enum):
    """Serial link state"""
    DISCONNECTED = "disconnected"
    AWAITING_PERMISSION = "awaiting_permission"
    CONNECTED = "connected"


class DisconnectReason(str, Enum):
    """Why the link was torn down"""
    TRANSPORT_ERROR = "transport_error"
    PERMISSION_DENIED = "permission_denied"
    SUSPENDED = "suspended"
    SHUTDOWN = "shutdown"
    EXPLICIT = "explicit"


class TransactionOutcome(str, Enum):
    """How a request/response cycle resolved"""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    CRC_MISMATCH = "crc_mismatch"
    MALFORMED_FRAME = "malformed_frame"
    DEVICE_EXCEPTION = "device_exception"
    TRANSPORT_ERROR = "transport_error"
    ABORTED = "aborted"


# Holding register order on the probe
REGISTER_FIELDS = (
    "temperature_c",
    "humidity_pct",
    "ph",
    "nitrogen_ppm",
    "phosphorus_ppm",
    "potassium_ppm",
)


@dataclass(frozen=True)
class SensorReading:
    """One complete probe reading. All six channels or nothing."""
    timestamp: datetime
    temperature_c: float
    humidity_pct: float
    ph: float
    nitrogen_ppm: int
    phosphorus_ppm: int
    potassium_ppm: int

    @classmethod
    def from_registers(
        cls,
        registers: list[int] | tuple[int, ...],
        timestamp: datetime | None = None,
    ) -> "SensorReading":
        """
        Build a reading from the six raw holding registers.

        Temperature and humidity are encoded x10, pH x100, N/P/K unscaled.
        """
        if len(registers) != len(REGISTER_FIELDS):
            raise ValueError(
                f"Expected {len(REGISTER_FIELDS)} registers, got {len(registers)}"
            )
        temperature, humidity, ph, nitrogen, phosphorus, potassium = registers
        return cls(
            timestamp=timestamp or local_now(),
            temperature_c=temperature / 10.0,
            humidity_pct=humidity / 10.0,
            ph=ph / 100.0,
            nitrogen_ppm=int(nitrogen),
            phosphorus_ppm=int(phosphorus),
            potassium_ppm=int(potassium),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "temperature_c": self.temperature_c,
            "humidity_pct": self.humidity_pct,
            "ph": self.ph,
            "nitrogen_ppm": self.nitrogen_ppm,
            "phosphorus_ppm": self.phosphorus_ppm,
            "potassium_ppm": self.potassium_ppm,
        }


@dataclass(frozen=True)
class TransactionRecord:
    """Diagnostic record of one request/response attempt"""
    transaction_id: int
    timestamp: datetime
    request_bytes: bytes
    response_bytes: bytes | None
    elapsed_ms: float
    outcome: TransactionOutcome
    unit_id: int = 1
    function_code: int = 3
    start_address: int = 0
    quantity: int = 6
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == TransactionOutcome.SUCCESS

    @property
    def request_hex(self) -> str:
        return format_hex(self.request_bytes)

    @property
    def response_hex(self) -> str:
        return format_hex(self.response_bytes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "timestamp": self.timestamp.isoformat(),
            "unit_id": self.unit_id,
            "function_code": self.function_code,
            "start_address": self.start_address,
            "quantity": self.quantity,
            "request": self.request_hex,
            "response": self.response_hex,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "outcome": self.outcome.value,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class TransactionHandle:
    """Returned by begin_transaction() for the request just sent"""
    transaction_id: int
    request_bytes: bytes
    started_at: datetime


@dataclass(frozen=True)
class DeviceInfo:
    """A serial-capable device as enumerated by the transport"""
    path: str
    vendor_id: int | None = None
    product_id: int | None = None
    device_class: int | None = None
    description: str = ""
    serial_number: str | None = None

    def __str__(self) -> str:
        if self.vendor_id is not None and self.product_id is not None:
            return f"{self.path} [{self.vendor_id:04X}:{self.product_id:04X}]"
        return self.path


@dataclass
class LinkStats:
    """Counters kept by the connection manager"""
    connect_count: int = 0
    disconnect_count: int = 0
    permission_denied_count: int = 0
    transport_error_count: int = 0
    last_error: str | None = None
    connected_since: datetime | None = None
    by_reason: dict[str, int] = field(default_factory=dict)
