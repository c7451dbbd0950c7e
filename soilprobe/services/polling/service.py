"""
Polling Service

Drives the device service on a fixed cadence while the host application is
in the foreground:
- Connected and idle      -> start a transaction
- Connected and busy      -> skip the tick (never queue a second request)
- Disconnected            -> scan for the probe
"""

from enum import Enum

from soilprobe.common.exceptions import BusyError, SoilProbeError, TransportError
from soilprobe.common.logging_setup import get_service_logger
from soilprobe.common.scheduler import PeriodicTimer
from soilprobe.services.device.connection_manager import ConnectionManager
from soilprobe.services.device.models import ConnectionStatus, DisconnectReason
from soilprobe.services.device.transaction import TransactionController

logger = get_service_logger("polling")

DEFAULT_POLL_INTERVAL_S = 5.0


class PollingState(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class PollingService:
    """Active/Suspended state machine around a PeriodicTimer"""

    def __init__(
        self,
        connection: ConnectionManager,
        controller: TransactionController,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ):
        self.connection = connection
        self.controller = controller
        self.timer = PeriodicTimer(interval_s, self.tick, name="polling")

        self._state = PollingState.SUSPENDED
        self._busy_skips = 0
        self._ticks = 0

    @property
    def state(self) -> PollingState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == PollingState.ACTIVE

    async def resume(self) -> None:
        """Enter ACTIVE: restart the timer and look for the probe right away"""
        if self._state == PollingState.ACTIVE:
            return
        self._state = PollingState.ACTIVE
        logger.info("Polling resumed")
        await self.timer.start()
        self._connect()

    def suspend(self) -> None:
        """Enter SUSPENDED: stop the timer and drop the link before returning"""
        if self._state == PollingState.SUSPENDED:
            return
        self._state = PollingState.SUSPENDED
        self.timer.stop()
        self.connection.disconnect(DisconnectReason.SUSPENDED)
        logger.info("Polling suspended")

    def stop(self) -> None:
        """Shutdown: stop the timer and close the link regardless of state"""
        self._state = PollingState.SUSPENDED
        self.timer.stop()
        self.connection.disconnect(DisconnectReason.SHUTDOWN)

    async def tick(self) -> None:
        if self._state != PollingState.ACTIVE:
            return
        self._ticks += 1

        status = self.connection.status
        if status == ConnectionStatus.CONNECTED:
            if self.controller.is_busy:
                self._busy_skips += 1
                logger.debug(
                    f"Skipping tick: transaction {self.controller.pending_id} still pending"
                )
                return
            self._poll()
        elif status == ConnectionStatus.DISCONNECTED:
            self._connect()
        else:
            logger.debug(f"Skipping tick while {status.value}")

    def _poll(self) -> None:
        try:
            self.controller.begin_transaction()
        except BusyError as e:
            self._busy_skips += 1
            logger.debug(f"Skipping tick: {e}")
        except TransportError as e:
            logger.error(f"Request write failed: {e}")
            self.connection.disconnect(DisconnectReason.TRANSPORT_ERROR)

    def _connect(self) -> None:
        try:
            self.connection.scan_and_connect()
        except SoilProbeError as e:
            if not e.recoverable:
                raise
            logger.warning(f"Connect attempt failed: {e}")

    def get_stats(self) -> dict:
        return {
            "state": self._state.value,
            "ticks": self._ticks,
            "busy_skips": self._busy_skips,
            "timer": self.timer.get_stats(),
        }
