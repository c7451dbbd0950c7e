"""
Device Service - Modbus RTU link to the soil probe

Responsible for:
- CRC16 and frame assembly
- The single-in-flight request/response cycle
- Serial discovery, connection and teardown
"""

from .connection_manager import ConnectionManager, make_device_filter
from .models import (
    ConnectionStatus,
    DeviceInfo,
    DisconnectReason,
    SensorReading,
    TransactionHandle,
    TransactionOutcome,
    TransactionRecord,
)
from .transaction import TransactionController
from .transport import PortHandle, PySerialTransport, SerialTransport

__all__ = [
    "ConnectionManager",
    "make_device_filter",
    "ConnectionStatus",
    "DeviceInfo",
    "DisconnectReason",
    "SensorReading",
    "TransactionHandle",
    "TransactionOutcome",
    "TransactionRecord",
    "TransactionController",
    "PortHandle",
    "PySerialTransport",
    "SerialTransport",
]
