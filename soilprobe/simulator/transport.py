"""
Simulated Serial Transport

A SerialTransport whose "device" is a VirtualProbe. Responses are delivered
either synchronously from inside write() or, with latency, from the running
event loop. Faults (permission denied, open/write/close failures, cable
pulls) can be switched on per test.
"""

import asyncio

from soilprobe.common.exceptions import TransportError
from soilprobe.common.logging_setup import get_service_logger
from soilprobe.services.device.models import DeviceInfo
from soilprobe.services.device.transport import (
    DataCallback,
    ErrorCallback,
    PortHandle,
    SerialTransport,
)

from .virtual_probe import VirtualProbe

logger = get_service_logger("simulator.transport")

SIMULATED_DEVICE = DeviceInfo(
    path="/dev/ttyUSB0",
    vendor_id=0x1A86,
    product_id=0x7523,
    description="USB-SERIAL CH340 (simulated)",
)


class SimulatedHandle(PortHandle):
    def __init__(self, device: DeviceInfo, settings: tuple):
        super().__init__(device)
        self.settings = settings
        self.on_data: DataCallback | None = None
        self.on_error: ErrorCallback | None = None
        self.closed = False


class SimulatedTransport(SerialTransport):
    """
    In-memory transport around a VirtualProbe.

    Args:
        probe: The simulated slave (a default probe if omitted)
        devices: What list_candidate_devices() reports
        permission: Answer to request_permission()
        chunk_size: Split responses into chunks of this many bytes
        latency_s: Deliver responses this long after the write (needs a loop)
    """

    def __init__(
        self,
        probe: VirtualProbe | None = None,
        *,
        devices: list[DeviceInfo] | None = None,
        permission: bool = True,
        chunk_size: int | None = None,
        latency_s: float = 0.0,
    ):
        self.probe = probe or VirtualProbe()
        self.devices = list(devices) if devices is not None else [SIMULATED_DEVICE]
        self.permission = permission
        self.chunk_size = chunk_size
        self.latency_s = latency_s

        self.fail_open = False
        self.fail_write = False
        self.fail_close = False

        self.handle: SimulatedHandle | None = None
        self.writes: list[bytes] = []
        self.permission_requests = 0
        self.open_count = 0
        self.close_count = 0

    # SerialTransport ---------------------------------------------------

    def list_candidate_devices(self) -> list[DeviceInfo]:
        return list(self.devices)

    def request_permission(self, device: DeviceInfo) -> bool:
        self.permission_requests += 1
        return self.permission

    def open(
        self,
        device: DeviceInfo,
        baudrate: int,
        data_bits: int,
        stop_bits: int,
        parity: str,
    ) -> SimulatedHandle:
        if self.fail_open:
            raise TransportError(f"Failed to open {device.path}", port=device.path)
        if self.handle is not None and not self.handle.closed:
            raise TransportError(f"{device.path} already open", port=device.path)

        self.open_count += 1
        self.handle = SimulatedHandle(device, (baudrate, data_bits, stop_bits, parity))
        return self.handle

    def write(self, handle: SimulatedHandle, data: bytes) -> None:
        if handle.closed:
            raise TransportError("Write to closed port", port=handle.device.path)
        if self.fail_write:
            raise TransportError("Simulated write failure", port=handle.device.path)

        self.writes.append(bytes(data))
        response = self.probe.handle_request(bytes(data))
        if response is None:
            return

        if self.latency_s > 0:
            asyncio.get_running_loop().call_later(
                self.latency_s, self._deliver, handle, response
            )
        else:
            self._deliver(handle, response)

    def register_receive_callback(
        self,
        handle: SimulatedHandle,
        on_data: DataCallback,
        on_error: ErrorCallback | None = None,
    ) -> None:
        handle.on_data = on_data
        handle.on_error = on_error

    def close(self, handle: SimulatedHandle) -> None:
        handle.closed = True
        handle.on_data = None
        handle.on_error = None
        self.close_count += 1
        if self.fail_close:
            raise TransportError("Simulated close failure", port=handle.device.path)

    # Test hooks --------------------------------------------------------

    def _deliver(self, handle: SimulatedHandle, data: bytes) -> None:
        if handle.closed or handle.on_data is None:
            return
        size = self.chunk_size or len(data)
        for i in range(0, len(data), size):
            handle.on_data(data[i:i + size])

    def feed(self, data: bytes) -> None:
        """Push raw bytes into the open port as if the device sent them"""
        if self.handle is not None:
            self._deliver(self.handle, data)

    def pull_cable(self, message: str = "device disconnected") -> None:
        """Raise an I/O error on the open port"""
        handle = self.handle
        if handle is None or handle.closed or handle.on_error is None:
            return
        handle.on_error(TransportError(message, port=handle.device.path))
