"""
Transaction Controller

Runs the probe's request/response cycle with at most one request in flight.

Three entry points touch the pending transaction:
- begin_transaction() - scheduler starts a poll
- on_bytes_received() - transport delivers response bytes
- on_timeout()        - the armed response timer fires

plus abort() from the connection manager. Each one does
"check pending, act, destroy pending" inside a single lock region, so a late
event for a transaction that has already resolved is a no-op. Listeners are
called after the lock is released.
"""

import asyncio
import functools
import struct
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from soilprobe.common.exceptions import BusyError, InvariantError, TransportError
from soilprobe.common.logging_setup import get_service_logger, log_transaction

from .crc import crc16, validate_frame
from .frame import (
    EXCEPTION_FLAG,
    FUNC_READ_HOLDING_REGISTERS,
    READ_SENSOR_REQUEST,
    SENSOR_REGISTER_COUNT,
    SENSOR_START_ADDRESS,
    SENSOR_UNIT_ID,
    AssemblyState,
    FrameAssembler,
)
from .models import (
    SensorReading,
    TransactionHandle,
    TransactionOutcome,
    TransactionRecord,
    local_now,
)

logger = get_service_logger("device.transaction")

DEFAULT_RESPONSE_TIMEOUT_S = 1.0


class Cancellable(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Cancellable]
Writer = Callable[[bytes], None]
ReadingListener = Callable[[SensorReading], None]
RecordListener = Callable[[TransactionRecord], None]


def loop_timer(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    """Default timer factory: a call_later on the running event loop"""
    return asyncio.get_running_loop().call_later(delay, callback)


@dataclass
class PendingTransaction:
    """State of the single in-flight request"""
    transaction_id: int
    request: bytes
    started_at: datetime
    started_monotonic: float
    assembler: FrameAssembler = field(default_factory=FrameAssembler)
    timer: Cancellable | None = None


@dataclass(frozen=True)
class _Decoded:
    outcome: TransactionOutcome
    reading: SensorReading | None = None
    detail: str | None = None


def decode_response(frame: bytes) -> _Decoded:
    """Validate a complete frame and turn it into a reading (or a failure outcome)"""
    if not validate_frame(frame):
        received = frame[-2] | (frame[-1] << 8)
        return _Decoded(
            TransactionOutcome.CRC_MISMATCH,
            detail=f"calculated {crc16(frame[:-2]):#06x}, received {received:#06x}",
        )

    unit_id, function_code = frame[0], frame[1]
    if unit_id != SENSOR_UNIT_ID:
        return _Decoded(
            TransactionOutcome.MALFORMED_FRAME,
            detail=f"unexpected unit id {unit_id}",
        )

    if function_code == FUNC_READ_HOLDING_REGISTERS | EXCEPTION_FLAG:
        return _Decoded(
            TransactionOutcome.DEVICE_EXCEPTION,
            detail=f"exception code {frame[2]:#04x}",
        )

    if function_code != FUNC_READ_HOLDING_REGISTERS:
        return _Decoded(
            TransactionOutcome.MALFORMED_FRAME,
            detail=f"unexpected function code {function_code:#04x}",
        )

    byte_count = frame[2]
    if byte_count < SENSOR_REGISTER_COUNT * 2:
        return _Decoded(
            TransactionOutcome.MALFORMED_FRAME,
            detail=f"byte count {byte_count} too short for {SENSOR_REGISTER_COUNT} registers",
        )

    registers = struct.unpack_from(f">{SENSOR_REGISTER_COUNT}H", frame, 3)
    return _Decoded(
        TransactionOutcome.SUCCESS,
        reading=SensorReading.from_registers(registers),
    )


class TransactionController:
    """
    Owns the single-in-flight invariant for the sensor link.

    The write path is attached by the connection manager while the port is
    open. Timers come from `timer_factory` (event loop by default) and elapsed
    time from `clock`.
    """

    def __init__(
        self,
        response_timeout_s: float = DEFAULT_RESPONSE_TIMEOUT_S,
        *,
        on_reading: ReadingListener | None = None,
        on_record: RecordListener | None = None,
        timer_factory: TimerFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.response_timeout_s = response_timeout_s
        self.on_reading = on_reading
        self.on_record = on_record
        self._timer_factory = timer_factory or loop_timer
        self._clock = clock

        # The transaction lock
        self._lock = threading.Lock()
        self._pending: PendingTransaction | None = None
        self._writer: Writer | None = None
        self._next_id = 1

        self._outcomes: Counter = Counter()
        self._busy_rejections = 0
        self._stray_bytes = 0

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def attach(self, writer: Writer) -> None:
        with self._lock:
            self._writer = writer

    def detach(self) -> None:
        with self._lock:
            self._writer = None

    @property
    def is_attached(self) -> bool:
        return self._writer is not None

    @property
    def is_busy(self) -> bool:
        return self._pending is not None

    @property
    def pending_id(self) -> int | None:
        pending = self._pending
        return pending.transaction_id if pending else None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def begin_transaction(self) -> TransactionHandle:
        """
        Send the sensor read request and arm the response timeout.

        Raises:
            BusyError: a transaction is already pending (left untouched)
            TransportError: not connected, or the write failed
        """
        with self._lock:
            if self._pending is not None:
                self._busy_rejections += 1
                raise BusyError(self._pending.transaction_id)

            writer = self._writer
            if writer is None:
                raise TransportError("Not connected")

            txn = PendingTransaction(
                transaction_id=self._next_id,
                request=READ_SENSOR_REQUEST,
                started_at=local_now(),
                started_monotonic=self._clock(),
            )
            self._next_id += 1
            self._pending = txn
            try:
                txn.timer = self._timer_factory(
                    self.response_timeout_s,
                    functools.partial(self.on_timeout, txn.transaction_id),
                )
            except Exception:
                self._pending = None
                raise

        # Written outside the lock: a synchronous transport may deliver the
        # response from inside write()
        try:
            writer(txn.request)
        except TransportError as e:
            self._fail(txn.transaction_id, TransactionOutcome.TRANSPORT_ERROR, e.message)
            raise

        logger.debug(
            f"Request {txn.transaction_id} sent",
            extra={"transaction_id": txn.transaction_id, "request": txn.request.hex(" ")},
        )
        return TransactionHandle(
            transaction_id=txn.transaction_id,
            request_bytes=txn.request,
            started_at=txn.started_at,
        )

    def on_bytes_received(self, data: bytes) -> None:
        """Feed bytes from the transport. Bytes outside a request window are dropped."""
        if not data:
            return

        resolved = None
        with self._lock:
            txn = self._pending
            if txn is None:
                self._stray_bytes += len(data)
            else:
                result = txn.assembler.push(data)
                if result.state == AssemblyState.MALFORMED:
                    resolved = self._resolve_locked(
                        TransactionOutcome.MALFORMED_FRAME,
                        txn.assembler.buffered,
                        detail=result.reason,
                    )
                elif result.state == AssemblyState.COMPLETE:
                    decoded = decode_response(result.frame)
                    resolved = self._resolve_locked(
                        decoded.outcome,
                        result.frame,
                        reading=decoded.reading,
                        detail=decoded.detail,
                    )

        if txn is None:
            logger.debug(f"Dropped {len(data)} stray bytes (no pending transaction)")
        if resolved:
            self._emit(*resolved)

    def on_timeout(self, transaction_id: int | None = None) -> None:
        """Resolve the pending transaction as TIMEOUT if it is still outstanding"""
        with self._lock:
            txn = self._pending
            if txn is None:
                return
            if transaction_id is not None and txn.transaction_id != transaction_id:
                return
            partial = txn.assembler.buffered
            resolved = self._resolve_locked(
                TransactionOutcome.TIMEOUT,
                partial or None,
                detail=(
                    f"partial response ({len(partial)} bytes)" if partial else "no response"
                ),
            )
        self._emit(*resolved)

    def abort(self, reason: str = "aborted") -> bool:
        """Resolve any pending transaction as ABORTED. Never emits a reading."""
        with self._lock:
            txn = self._pending
            if txn is None:
                return False
            resolved = self._resolve_locked(
                TransactionOutcome.ABORTED,
                txn.assembler.buffered or None,
                detail=reason,
            )
        self._emit(*resolved)
        return True

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _fail(self, transaction_id: int, outcome: TransactionOutcome, detail: str) -> None:
        with self._lock:
            txn = self._pending
            if txn is None or txn.transaction_id != transaction_id:
                return
            resolved = self._resolve_locked(outcome, None, detail=detail)
        self._emit(*resolved)

    def _resolve_locked(
        self,
        outcome: TransactionOutcome,
        response: bytes | None,
        reading: SensorReading | None = None,
        detail: str | None = None,
    ) -> tuple[TransactionRecord, SensorReading | None]:
        """Destroy the pending transaction and build its record. Caller holds the lock."""
        txn = self._pending
        if txn is None:
            raise InvariantError("resolve called with no pending transaction")
        if reading is not None and outcome != TransactionOutcome.SUCCESS:
            raise InvariantError(f"reading attached to {outcome.value} outcome")

        self._pending = None
        if txn.timer is not None:
            txn.timer.cancel()
            txn.timer = None

        record = TransactionRecord(
            transaction_id=txn.transaction_id,
            timestamp=txn.started_at,
            request_bytes=txn.request,
            response_bytes=response,
            elapsed_ms=(self._clock() - txn.started_monotonic) * 1000.0,
            outcome=outcome,
            unit_id=SENSOR_UNIT_ID,
            function_code=FUNC_READ_HOLDING_REGISTERS,
            start_address=SENSOR_START_ADDRESS,
            quantity=SENSOR_REGISTER_COUNT,
            detail=detail,
        )
        self._outcomes[outcome] += 1
        return record, reading

    def _emit(self, record: TransactionRecord, reading: SensorReading | None) -> None:
        log_transaction(logger, record)

        if self.on_record is not None:
            try:
                self.on_record(record)
            except Exception as e:
                logger.error(f"Record listener error: {e}", exc_info=True)

        if reading is not None and self.on_reading is not None:
            try:
                self.on_reading(reading)
            except Exception as e:
                logger.error(f"Reading listener error: {e}", exc_info=True)

    def get_stats(self) -> dict:
        return {
            "pending_id": self.pending_id,
            "attached": self.is_attached,
            "busy_rejections": self._busy_rejections,
            "stray_bytes": self._stray_bytes,
            "outcomes": {o.value: self._outcomes.get(o, 0) for o in TransactionOutcome},
        }
