"""Transaction controller: single-in-flight, resolution paths, timeouts."""

from __future__ import annotations

import threading

import pytest

from soilprobe.common.exceptions import BusyError, InvariantError, TransportError
from soilprobe.services.device.crc import append_crc
from soilprobe.services.device.frame import READ_SENSOR_REQUEST
from soilprobe.services.device.models import TransactionOutcome
from soilprobe.services.device.transaction import TransactionController, decode_response

from conftest import CANONICAL_RESPONSE


def test_begin_writes_request_and_arms_timeout(controller, writes, timers) -> None:
    handle = controller.begin_transaction()

    assert writes.items == [READ_SENSOR_REQUEST]
    assert handle.request_bytes == READ_SENSOR_REQUEST
    assert handle.transaction_id == controller.pending_id
    assert timers.last.delay == 1.0
    assert controller.is_busy


def test_second_begin_is_busy_and_leaves_pending_untouched(controller, writes, timers) -> None:
    handle = controller.begin_transaction()
    controller.on_bytes_received(CANONICAL_RESPONSE[:5])

    with pytest.raises(BusyError) as exc_info:
        controller.begin_transaction()

    assert exc_info.value.transaction_id == handle.transaction_id
    assert exc_info.value.recoverable
    assert controller.pending_id == handle.transaction_id
    assert len(writes.items) == 1
    assert len(timers.created) == 1
    assert not timers.last.cancelled

    # The first transaction still completes from where it left off
    controller.on_bytes_received(CANONICAL_RESPONSE[5:])
    assert not controller.is_busy


def test_begin_without_writer_raises_transport_error(timers) -> None:
    ctrl = TransactionController(timer_factory=timers)

    with pytest.raises(TransportError):
        ctrl.begin_transaction()

    assert not ctrl.is_busy
    assert timers.created == []


def test_canonical_response_yields_reading(controller, readings, records, timers) -> None:
    controller.begin_transaction()
    controller.on_bytes_received(CANONICAL_RESPONSE)

    reading = readings.last
    assert reading.temperature_c == 25.0
    assert reading.humidity_pct == 50.0
    assert reading.ph == pytest.approx(6.52)
    assert reading.nitrogen_ppm == 50
    assert reading.phosphorus_ppm == 25
    assert reading.potassium_ppm == 40

    record = records.last
    assert record.outcome == TransactionOutcome.SUCCESS
    assert record.response_bytes == CANONICAL_RESPONSE
    assert record.request_hex == "01 03 00 00 00 06 C5 C8"
    assert timers.last.cancelled
    assert not controller.is_busy


def test_response_split_across_callbacks(controller, readings) -> None:
    controller.begin_transaction()
    for b in CANONICAL_RESPONSE:
        controller.on_bytes_received(bytes([b]))

    assert len(readings.items) == 1


def test_elapsed_time_uses_clock(controller, clock, records) -> None:
    controller.begin_transaction()
    clock.advance(0.25)
    controller.on_bytes_received(CANONICAL_RESPONSE)

    assert records.last.elapsed_ms == pytest.approx(250.0)


def test_crc_mismatch_discards_data(controller, readings, records) -> None:
    corrupted = CANONICAL_RESPONSE[:-1] + bytes([CANONICAL_RESPONSE[-1] ^ 0xFF])

    controller.begin_transaction()
    controller.on_bytes_received(corrupted)

    assert readings.items == []
    assert records.last.outcome == TransactionOutcome.CRC_MISMATCH
    assert records.last.response_bytes == corrupted
    assert not controller.is_busy


def test_impossible_byte_count_is_malformed(controller, readings, records) -> None:
    controller.begin_transaction()
    controller.on_bytes_received(b"\x01\x03\x00")

    assert readings.items == []
    assert records.last.outcome == TransactionOutcome.MALFORMED_FRAME
    assert records.last.response_bytes == b"\x01\x03\x00"


def test_valid_crc_but_too_few_registers_is_malformed(controller, readings, records) -> None:
    controller.begin_transaction()
    controller.on_bytes_received(append_crc(b"\x01\x03\x04\x00\xFA\x01\xF4"))

    assert readings.items == []
    assert records.last.outcome == TransactionOutcome.MALFORMED_FRAME


def test_wrong_unit_is_malformed(controller, records) -> None:
    frame = append_crc(b"\x02" + CANONICAL_RESPONSE[1:-2])

    controller.begin_transaction()
    controller.on_bytes_received(frame)

    assert records.last.outcome == TransactionOutcome.MALFORMED_FRAME
    assert "unit" in records.last.detail


def test_exception_response_is_reported(controller, readings, records) -> None:
    controller.begin_transaction()
    controller.on_bytes_received(append_crc(b"\x01\x83\x02"))

    assert readings.items == []
    assert records.last.outcome == TransactionOutcome.DEVICE_EXCEPTION
    assert "0x02" in records.last.detail


def test_timeout_resolves_and_next_begin_succeeds(controller, timers, records, writes) -> None:
    first = controller.begin_transaction()
    timers.last.fire()

    assert records.last.outcome == TransactionOutcome.TIMEOUT
    assert records.last.response_bytes is None
    assert records.last.transaction_id == first.transaction_id
    assert not controller.is_busy

    second = controller.begin_transaction()
    assert second.transaction_id != first.transaction_id
    assert len(writes.items) == 2


def test_timeout_keeps_partial_bytes(controller, timers, records) -> None:
    controller.begin_transaction()
    controller.on_bytes_received(CANONICAL_RESPONSE[:7])
    timers.last.fire()

    assert records.last.outcome == TransactionOutcome.TIMEOUT
    assert records.last.response_bytes == CANONICAL_RESPONSE[:7]
    assert "7 bytes" in records.last.detail


def test_late_timer_from_previous_transaction_is_noop(controller, timers, records) -> None:
    controller.begin_transaction()
    stale_timer = timers.last
    controller.on_bytes_received(CANONICAL_RESPONSE)

    controller.begin_transaction()
    stale_timer.fire()

    assert controller.is_busy
    assert [r.outcome for r in records.items] == [TransactionOutcome.SUCCESS]


def test_bytes_after_timeout_are_discarded(controller, timers, readings, records) -> None:
    controller.begin_transaction()
    timers.last.fire()

    controller.on_bytes_received(CANONICAL_RESPONSE)

    assert readings.items == []
    assert len(records.items) == 1
    assert controller.get_stats()["stray_bytes"] == len(CANONICAL_RESPONSE)


def test_stray_bytes_without_request_are_dropped(controller, readings, records) -> None:
    controller.on_bytes_received(CANONICAL_RESPONSE)

    assert readings.items == []
    assert records.items == []


def test_abort_emits_aborted_record_and_no_reading(controller, timers, readings, records) -> None:
    controller.begin_transaction()
    controller.on_bytes_received(CANONICAL_RESPONSE[:4])

    assert controller.abort("disconnect") is True

    assert readings.items == []
    assert records.last.outcome == TransactionOutcome.ABORTED
    assert timers.last.cancelled
    assert controller.abort() is False


def test_write_failure_resolves_as_transport_error(timers, records) -> None:
    def failing_writer(data: bytes) -> None:
        raise TransportError("cable pulled")

    ctrl = TransactionController(timer_factory=timers, on_record=records)
    ctrl.attach(failing_writer)

    with pytest.raises(TransportError):
        ctrl.begin_transaction()

    assert records.last.outcome == TransactionOutcome.TRANSPORT_ERROR
    assert timers.last.cancelled
    assert not ctrl.is_busy


def test_synchronous_reply_from_inside_write(timers, readings) -> None:
    ctrl = TransactionController(timer_factory=timers, on_reading=readings)
    ctrl.attach(lambda data: ctrl.on_bytes_received(CANONICAL_RESPONSE))

    ctrl.begin_transaction()

    assert len(readings.items) == 1
    assert not ctrl.is_busy


def test_listener_errors_do_not_break_resolution(timers, writes) -> None:
    def broken(_):
        raise RuntimeError("listener bug")

    ctrl = TransactionController(timer_factory=timers, on_reading=broken, on_record=broken)
    ctrl.attach(writes)

    ctrl.begin_transaction()
    ctrl.on_bytes_received(CANONICAL_RESPONSE)

    assert not ctrl.is_busy
    ctrl.begin_transaction()


def test_resolving_twice_is_an_invariant_error(controller) -> None:
    controller.begin_transaction()
    controller.abort()

    with pytest.raises(InvariantError) as exc_info:
        controller._resolve_locked(TransactionOutcome.TIMEOUT, None)
    assert not exc_info.value.recoverable


def test_detach_blocks_new_transactions(controller) -> None:
    controller.detach()

    with pytest.raises(TransportError):
        controller.begin_transaction()


def test_stats_count_outcomes(controller, timers) -> None:
    controller.begin_transaction()
    controller.on_bytes_received(CANONICAL_RESPONSE)
    controller.begin_transaction()
    timers.last.fire()
    controller.begin_transaction()
    with pytest.raises(BusyError):
        controller.begin_transaction()

    stats = controller.get_stats()
    assert stats["outcomes"]["success"] == 1
    assert stats["outcomes"]["timeout"] == 1
    assert stats["busy_rejections"] == 1
    assert stats["pending_id"] == 3


def test_decode_response_maps_registers_in_order() -> None:
    decoded = decode_response(CANONICAL_RESPONSE)

    assert decoded.outcome == TransactionOutcome.SUCCESS
    assert decoded.reading.to_dict()["ph"] == pytest.approx(6.52)


def test_concurrent_bytes_and_timeout_resolve_once(controller, readings, records) -> None:
    for _ in range(200):
        handle = controller.begin_transaction()
        barrier = threading.Barrier(2)

        def deliver() -> None:
            barrier.wait()
            controller.on_bytes_received(CANONICAL_RESPONSE)

        def expire() -> None:
            barrier.wait()
            controller.on_timeout(handle.transaction_id)

        threads = [threading.Thread(target=deliver), threading.Thread(target=expire)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert not controller.is_busy

    assert len(records.items) == 200
    assert {r.transaction_id for r in records.items} == set(range(1, 201))
    successes = [r for r in records.items if r.outcome == TransactionOutcome.SUCCESS]
    assert len(readings.items) == len(successes)
