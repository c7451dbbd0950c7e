"""
SensorEngine - the engine's boundary toward the host application

Composes the device and polling services:

    PollingService -> ConnectionManager -> TransactionController -> transport
                                  ^                                    |
                                  +------ dispatch (event loop) <------+

Inbound:  set_foreground(bool), shutdown()
Outbound: reading / record / status listeners
Queries:  status, latest_reading, last_record, recent_records, get_stats()
"""

import asyncio
from collections import deque
from typing import Callable

from soilprobe.common.config import EngineConfig
from soilprobe.common.logging_setup import get_service_logger
from soilprobe.services.device.connection_manager import (
    ConnectionManager,
    DeviceFilter,
    make_device_filter,
)
from soilprobe.services.device.models import (
    ConnectionStatus,
    SensorReading,
    TransactionRecord,
)
from soilprobe.services.device.transaction import TimerFactory, TransactionController
from soilprobe.services.device.transport import SerialTransport
from soilprobe.services.polling.service import PollingService

logger = get_service_logger("engine")

ReadingListener = Callable[[SensorReading], None]
RecordListener = Callable[[TransactionRecord], None]
StatusListener = Callable[[ConnectionStatus], None]


class SensorEngine:
    """
    Owns one probe link. All engine state is touched from the event loop
    that called set_foreground(True); transport callbacks are re-posted
    onto that loop.
    """

    def __init__(
        self,
        transport: SerialTransport,
        config: EngineConfig | None = None,
        *,
        device_filter: DeviceFilter | None = None,
        timer_factory: TimerFactory | None = None,
    ):
        self.config = config or EngineConfig()
        self.transport = transport

        self._reading_listeners: list[ReadingListener] = []
        self._record_listeners: list[RecordListener] = []
        self._status_listeners: list[StatusListener] = []

        self._latest_reading: SensorReading | None = None
        self._records: deque[TransactionRecord] = deque(maxlen=self.config.history_size)
        self._last_record: TransactionRecord | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._shut_down = False

        self.controller = TransactionController(
            self.config.response_timeout_s,
            on_reading=self._handle_reading,
            on_record=self._handle_record,
            timer_factory=timer_factory,
        )
        self.connection = ConnectionManager(
            transport,
            self.controller,
            self.config.serial,
            device_filter=device_filter or make_device_filter(self.config.discovery),
            on_status=self._handle_status,
            dispatch=self._dispatch,
        )
        self.polling = PollingService(
            self.connection,
            self.controller,
            interval_s=self.config.polling.interval_s,
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def set_foreground(self, foreground: bool) -> None:
        """Drive ACTIVE (True) / SUSPENDED (False) from the host application"""
        if self._shut_down:
            logger.warning("set_foreground() after shutdown ignored")
            return

        self._loop = asyncio.get_running_loop()
        if foreground:
            await self.polling.resume()
        else:
            self.polling.suspend()

    async def shutdown(self) -> None:
        """Stop polling and force the link down. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        self.polling.stop()
        logger.info("Engine shut down")

    # ------------------------------------------------------------------
    # Outbound listeners
    # ------------------------------------------------------------------

    def add_reading_listener(self, listener: ReadingListener) -> None:
        self._reading_listeners.append(listener)

    def add_record_listener(self, listener: RecordListener) -> None:
        self._record_listeners.append(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def _notify(self, listeners: list, value, kind: str) -> None:
        for listener in list(listeners):
            try:
                listener(value)
            except Exception as e:
                logger.error(f"{kind} listener error: {e}", exc_info=True)

    def _handle_reading(self, reading: SensorReading) -> None:
        self._latest_reading = reading
        self._notify(self._reading_listeners, reading, "Reading")

    def _handle_record(self, record: TransactionRecord) -> None:
        self._last_record = record
        self._records.append(record)
        self._notify(self._record_listeners, record, "Record")

    def _handle_status(self, status: ConnectionStatus) -> None:
        self._notify(self._status_listeners, status, "Status")

    # ------------------------------------------------------------------
    # Transport thread -> event loop
    # ------------------------------------------------------------------

    def _dispatch(self, fn: Callable, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            fn(*args)
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop closed after the check above
            logger.debug(f"Dropped {getattr(fn, '__name__', fn)!r}: event loop closed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self.connection.status

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def latest_reading(self) -> SensorReading | None:
        return self._latest_reading

    @property
    def last_record(self) -> TransactionRecord | None:
        return self._last_record

    @property
    def recent_records(self) -> list[TransactionRecord]:
        return list(self._records)

    def get_stats(self) -> dict:
        return {
            "status": self.status.value,
            "latest_reading": self._latest_reading.to_dict() if self._latest_reading else None,
            "last_record": self._last_record.to_dict() if self._last_record else None,
            "connection": self.connection.get_stats(),
            "transactions": self.controller.get_stats(),
            "polling": self.polling.get_stats(),
        }
