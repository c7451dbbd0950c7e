"""
Connection Manager

Owns the serial link to the probe:
- Discovers a compatible USB-serial adapter
- Requests OS access and opens the port at fixed line parameters
- Wires transport callbacks into the transaction controller
- Tears the link down on transport errors, suspension or shutdown
"""

import functools
import threading
from typing import Callable

from soilprobe.common.config import DiscoverySettings, SerialSettings
from soilprobe.common.exceptions import InvariantError, PermissionDeniedError, TransportError
from soilprobe.common.logging_setup import get_service_logger, log_connection_change

from .models import ConnectionStatus, DeviceInfo, DisconnectReason, LinkStats, local_now
from .transaction import TransactionController
from .transport import USB_CLASS_CDC, PortHandle, SerialTransport

logger = get_service_logger("device.connection")

DeviceFilter = Callable[[DeviceInfo], bool]
StatusListener = Callable[[ConnectionStatus], None]
Dispatch = Callable[..., None]


def make_device_filter(settings: DiscoverySettings) -> DeviceFilter:
    """
    Build the default discovery predicate: vendor id allow-list, or CDC class.

    With `serial_port` set, only that path matches.
    """
    vendor_ids = frozenset(settings.vendor_ids)

    def matches(device: DeviceInfo) -> bool:
        if settings.serial_port:
            return device.path == settings.serial_port
        if device.vendor_id is not None and device.vendor_id in vendor_ids:
            return True
        return settings.accept_cdc_class and device.device_class == USB_CLASS_CDC

    return matches


def _call_now(fn: Callable, *args) -> None:
    fn(*args)


class ConnectionManager:
    """
    Serial link state machine.

    DISCONNECTED -> AWAITING_PERMISSION -> CONNECTED -> DISCONNECTED

    Transport callbacks go through `dispatch` so they can be re-posted onto
    the engine's event loop instead of running on the transport's thread.
    """

    def __init__(
        self,
        transport: SerialTransport,
        controller: TransactionController,
        serial_settings: SerialSettings | None = None,
        *,
        device_filter: DeviceFilter | None = None,
        on_status: StatusListener | None = None,
        dispatch: Dispatch | None = None,
    ):
        self.transport = transport
        self.controller = controller
        self.serial_settings = serial_settings or SerialSettings()
        self.device_filter = device_filter or make_device_filter(DiscoverySettings())
        self.on_status = on_status
        self.dispatch = dispatch or _call_now

        self._lock = threading.RLock()
        self._status = ConnectionStatus.DISCONNECTED
        self._handle: PortHandle | None = None
        self._device: DeviceInfo | None = None
        self.stats = LinkStats()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED

    @property
    def device(self) -> DeviceInfo | None:
        return self._device

    def _set_status(self, new: ConnectionStatus, reason: str | None = None) -> None:
        old = self._status
        if old == new:
            return
        self._status = new
        log_connection_change(
            logger, old, new, reason, device=self._device.path if self._device else None
        )
        if self.on_status is not None:
            try:
                self.on_status(new)
            except Exception as e:
                logger.error(f"Status listener error: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Discovery / connect
    # ------------------------------------------------------------------

    def find_candidate(self) -> DeviceInfo | None:
        try:
            devices = self.transport.list_candidate_devices()
        except Exception as e:
            logger.warning(f"Device enumeration failed: {e}")
            return None

        for device in devices:
            if self.device_filter(device):
                return device
        return None

    def scan_and_connect(self) -> ConnectionStatus:
        """
        Connect to the first compatible device, if any.

        No-op when already connected or when nothing compatible is attached.

        Raises:
            PermissionDeniedError: device found, access refused
            TransportError: the port could not be opened
        """
        with self._lock:
            if self._status != ConnectionStatus.DISCONNECTED:
                return self._status

            device = self.find_candidate()
            if device is None:
                logger.debug("No compatible serial device found")
                return self._status

            if self._handle is not None:
                raise InvariantError(f"port handle still held while {self._status.value}")

            self._device = device
            self._set_status(ConnectionStatus.AWAITING_PERMISSION, str(device))

            try:
                granted = self.transport.request_permission(device)
            except Exception as e:
                logger.warning(f"Permission request for {device.path} failed: {e}")
                granted = False

            if not granted:
                self.stats.permission_denied_count += 1
                self._set_status(
                    ConnectionStatus.DISCONNECTED, DisconnectReason.PERMISSION_DENIED.value
                )
                self._device = None
                raise PermissionDeniedError(device.path)

            self._open(device)
            return self._status

    def _open(self, device: DeviceInfo) -> None:
        settings = self.serial_settings
        try:
            handle = self.transport.open(
                device,
                settings.baudrate,
                settings.data_bits,
                settings.stop_bits,
                settings.parity,
            )
            self._handle = handle
            self.transport.register_receive_callback(
                handle,
                functools.partial(self._on_data, handle),
                functools.partial(self._on_transport_error, handle),
            )
        except TransportError as e:
            self._record_error(e)
            self._release(reason=DisconnectReason.TRANSPORT_ERROR)
            raise
        except Exception as e:
            self._record_error(e)
            self._release(reason=DisconnectReason.TRANSPORT_ERROR)
            raise TransportError(f"Failed to open {device.path}: {e}", port=device.path) from e

        self.controller.attach(self.write)
        self.stats.connect_count += 1
        self.stats.connected_since = local_now()
        self._set_status(ConnectionStatus.CONNECTED, str(device))

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    def write(self, data: bytes) -> None:
        handle = self._handle
        if handle is None:
            raise TransportError("Port not open")
        self.transport.write(handle, data)

    def _on_data(self, handle: PortHandle, data: bytes) -> None:
        self.dispatch(self._deliver, handle, data)

    def _deliver(self, handle: PortHandle, data: bytes) -> None:
        # Bytes from a port we already closed
        if handle is not self._handle:
            return
        self.controller.on_bytes_received(data)

    def _on_transport_error(self, handle: PortHandle, error: Exception) -> None:
        self.dispatch(self.handle_transport_error, error, handle)

    def handle_transport_error(self, error: Exception, handle: PortHandle | None = None) -> None:
        """Any I/O error from the transport forces a full disconnect"""
        if handle is not None and handle is not self._handle:
            logger.debug(f"Ignoring error from stale port {handle}: {error}")
            return
        logger.error(f"Transport error: {error}")
        self._record_error(error)
        self.disconnect(DisconnectReason.TRANSPORT_ERROR)

    def _record_error(self, error: Exception) -> None:
        self.stats.transport_error_count += 1
        self.stats.last_error = str(error)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def disconnect(self, reason: DisconnectReason = DisconnectReason.EXPLICIT) -> None:
        """
        Abort any pending transaction, then release the port.

        Close failures are logged and swallowed; status always ends DISCONNECTED.
        """
        with self._lock:
            self.controller.abort(f"disconnect: {reason.value}")
            if self._status == ConnectionStatus.DISCONNECTED and self._handle is None:
                return
            self._release(reason)

    def _release(self, reason: DisconnectReason) -> None:
        self.controller.detach()

        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                self.transport.close(handle)
            except Exception as e:
                logger.warning(f"Error closing {handle.device.path}: {e}")

        was_connected = self._status == ConnectionStatus.CONNECTED
        if was_connected:
            self.stats.disconnect_count += 1
            self.stats.by_reason[reason.value] = self.stats.by_reason.get(reason.value, 0) + 1
        self.stats.connected_since = None

        self._set_status(ConnectionStatus.DISCONNECTED, reason.value)
        self._device = None

    def get_stats(self) -> dict:
        return {
            "status": self._status.value,
            "device": str(self._device) if self._device else None,
            "connect_count": self.stats.connect_count,
            "disconnect_count": self.stats.disconnect_count,
            "permission_denied_count": self.stats.permission_denied_count,
            "transport_error_count": self.stats.transport_error_count,
            "last_error": self.stats.last_error,
            "connected_since": (
                self.stats.connected_since.isoformat() if self.stats.connected_since else None
            ),
            "disconnects_by_reason": dict(self.stats.by_reason),
        }
