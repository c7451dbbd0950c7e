"""
Custom Exception Classes for the SoilProbe engine

Hierarchical exception structure. Every error carries a `recoverable` flag:
recoverable errors are logged and reported through the status/record
channels, non-recoverable ones are programmer errors and should fail loudly.
"""


class SoilProbeError(Exception):
    """Base exception for all SoilProbe engine errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(SoilProbeError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class DeviceError(SoilProbeError):
    """Serial device errors"""

    def __init__(
        self,
        message: str,
        device: str | None = None,
        recoverable: bool = True,
    ):
        self.device = device
        super().__init__(f"Device Error: {message}", recoverable)


class TransportError(DeviceError):
    """I/O failure on the serial link (cable pulled, device reset, open failed)"""

    def __init__(self, message: str, port: str | None = None):
        self.port = port
        super().__init__(message, device=port, recoverable=True)


class PermissionDeniedError(DeviceError):
    """Candidate device found but access was refused"""

    def __init__(self, device: str | None = None):
        super().__init__(
            f"Permission denied for {device or 'device'}",
            device=device,
            recoverable=True,
        )


class BusyError(SoilProbeError):
    """A transaction is already in flight"""

    def __init__(self, transaction_id: int | None = None):
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} still pending",
            recoverable=True,
        )


class InvariantError(SoilProbeError):
    """Internal invariant violated - always a programmer error"""

    def __init__(self, message: str):
        super().__init__(f"Invariant violated: {message}", recoverable=False)
