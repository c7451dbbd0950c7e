"""
Serial Transport

The engine's view of the serial hardware. SerialTransport is the contract
the connection manager drives; PySerialTransport implements it on top of
pyserial with a background ReaderThread delivering received bytes.
"""

import os
import threading
from abc import ABC, abstractmethod
from typing import Callable

import serial
import serial.threaded
from serial.tools import list_ports

from soilprobe.common.exceptions import TransportError
from soilprobe.common.logging_setup import get_service_logger

from .models import DeviceInfo

logger = get_service_logger("device.transport")

# USB interface class for Communications Device Class (CDC ACM)
USB_CLASS_CDC = 0x02

DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[Exception], None]


class PortHandle:
    """Opaque handle to an open port. Transports subclass it to carry their state."""

    def __init__(self, device: DeviceInfo):
        self.device = device

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.device.path}>"


class SerialTransport(ABC):
    """
    Serial hardware abstraction.

    Lifecycle:
        1. list_candidate_devices() -> pick one
        2. request_permission(device)
        3. open(device, ...) -> handle
        4. register_receive_callback(handle, on_data, on_error)
        5. write(handle, data) as often as needed
        6. close(handle)

    Callbacks may be invoked from a transport-owned thread.
    """

    @abstractmethod
    def list_candidate_devices(self) -> list[DeviceInfo]:
        """Enumerate attached serial-capable devices"""

    @abstractmethod
    def request_permission(self, device: DeviceInfo) -> bool:
        """Ask the OS for access. False means denied."""

    @abstractmethod
    def open(
        self,
        device: DeviceInfo,
        baudrate: int,
        data_bits: int,
        stop_bits: int,
        parity: str,
    ) -> PortHandle:
        """
        Open the port with fixed line parameters.

        Raises:
            TransportError: the port could not be opened
        """

    @abstractmethod
    def write(self, handle: PortHandle, data: bytes) -> None:
        """
        Write bytes without waiting for a reply.

        Raises:
            TransportError: the write failed
        """

    @abstractmethod
    def register_receive_callback(
        self,
        handle: PortHandle,
        on_data: DataCallback,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Start delivering received bytes (and I/O errors) for `handle`"""

    @abstractmethod
    def close(self, handle: PortHandle) -> None:
        """Release the port. May raise; callers treat close as best-effort."""


def _looks_like_cdc(port) -> bool:
    """pyserial does not expose the USB class; infer CDC ACM from the node name/hwid"""
    device = port.device or ""
    text = f"{port.description or ''} {port.hwid or ''}".upper()
    return "TTYACM" in device.upper() or "CDC" in text


def device_info_from_port(port) -> DeviceInfo:
    """Convert a pyserial ListPortInfo into a DeviceInfo"""
    return DeviceInfo(
        path=port.device,
        vendor_id=port.vid,
        product_id=port.pid,
        device_class=USB_CLASS_CDC if _looks_like_cdc(port) else None,
        description=port.description or "",
        serial_number=port.serial_number,
    )


_PARITY = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
}

_STOP_BITS = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}


class _ReceiveProtocol(serial.threaded.Protocol):
    """Bridges ReaderThread events onto the registered callbacks"""

    def __init__(self, on_data: DataCallback, on_error: ErrorCallback | None, port: str):
        self._on_data = on_data
        self._on_error = on_error
        self._port = port

    def data_received(self, data: bytes) -> None:
        self._on_data(bytes(data))

    def connection_lost(self, exc: Exception | None) -> None:
        # exc is None on a normal stop()
        if exc is not None and self._on_error is not None:
            self._on_error(TransportError(f"Serial I/O error: {exc}", port=self._port))


class PySerialHandle(PortHandle):
    def __init__(self, device: DeviceInfo, port: serial.Serial):
        super().__init__(device)
        self.port = port
        self.reader: serial.threaded.ReaderThread | None = None
        self.write_lock = threading.Lock()


class PySerialTransport(SerialTransport):
    """
    pyserial-backed transport.

    Permission is the OS's: read/write access on the device node. Received
    bytes arrive on a ReaderThread, so callbacks run off the event loop.
    """

    def __init__(self, write_timeout: float = 1.0):
        self.write_timeout = write_timeout

    def list_candidate_devices(self) -> list[DeviceInfo]:
        return [device_info_from_port(p) for p in list_ports.comports()]

    def request_permission(self, device: DeviceInfo) -> bool:
        allowed = os.access(device.path, os.R_OK | os.W_OK)
        if not allowed:
            logger.warning(
                f"No read/write access to {device.path} "
                f"(add the user to the dialout group or fix udev rules)"
            )
        return allowed

    def open(
        self,
        device: DeviceInfo,
        baudrate: int,
        data_bits: int,
        stop_bits: int,
        parity: str,
    ) -> PySerialHandle:
        try:
            port = serial.Serial(
                port=device.path,
                baudrate=baudrate,
                bytesize=data_bits,
                stopbits=_STOP_BITS[stop_bits],
                parity=_PARITY[parity],
                timeout=0.1,
                write_timeout=self.write_timeout,
            )
        except (serial.SerialException, OSError, ValueError, KeyError) as e:
            raise TransportError(f"Failed to open {device.path}: {e}", port=device.path)

        try:
            port.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            port.close()
            raise TransportError(f"Failed to flush {device.path}: {e}", port=device.path)

        logger.debug(
            f"Opened {device.path} (baud={baudrate}, {data_bits}{parity}{stop_bits})"
        )
        return PySerialHandle(device, port)

    def write(self, handle: PySerialHandle, data: bytes) -> None:
        try:
            with handle.write_lock:
                handle.port.write(data)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Write failed: {e}", port=handle.device.path)

    def register_receive_callback(
        self,
        handle: PySerialHandle,
        on_data: DataCallback,
        on_error: ErrorCallback | None = None,
    ) -> None:
        if handle.reader is not None:
            raise TransportError("Receive callback already registered", port=handle.device.path)

        reader = serial.threaded.ReaderThread(
            handle.port,
            lambda: _ReceiveProtocol(on_data, on_error, handle.device.path),
        )
        reader.start()
        handle.reader = reader

    def close(self, handle: PySerialHandle) -> None:
        reader, handle.reader = handle.reader, None
        if reader is not None:
            # Stops and joins the thread, then closes the port
            reader.close()
        else:
            handle.port.close()
        logger.debug(f"Closed {handle.device.path}")
