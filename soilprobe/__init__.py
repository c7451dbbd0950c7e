"""
SoilProbe - Modbus RTU polling engine for USB soil sensor probes
"""

from .engine import SensorEngine
from .services.device.models import (
    ConnectionStatus,
    SensorReading,
    TransactionOutcome,
    TransactionRecord,
)

__version__ = "1.0.0"

__all__ = [
    "SensorEngine",
    "ConnectionStatus",
    "SensorReading",
    "TransactionOutcome",
    "TransactionRecord",
    "__version__",
]
