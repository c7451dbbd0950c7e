"""Virtual probe behaviour the engine tests rely on."""

from __future__ import annotations

import pytest

from soilprobe.services.device.crc import append_crc, validate_frame
from soilprobe.services.device.frame import READ_SENSOR_REQUEST, build_read_request
from soilprobe.services.device.transaction import decode_response
from soilprobe.services.device.models import TransactionOutcome
from soilprobe.simulator import ProbeFault, VirtualProbe

from conftest import CANONICAL_RESPONSE


def test_default_readings_produce_canonical_response() -> None:
    assert VirtualProbe().handle_request(READ_SENSOR_REQUEST) == CANONICAL_RESPONSE


def test_set_readings_updates_registers() -> None:
    probe = VirtualProbe()
    probe.set_readings(temperature_c=18.3, ph=7.05, potassium_ppm=120)

    assert probe.read_registers(0, 6) == [183, 500, 705, 50, 25, 120]


def test_unknown_channel_is_rejected() -> None:
    with pytest.raises(AttributeError):
        VirtualProbe().set_readings(salinity=3)


def test_ignores_corrupt_or_foreign_requests() -> None:
    probe = VirtualProbe()

    assert probe.handle_request(READ_SENSOR_REQUEST[:-1] + b"\x00") is None
    assert probe.handle_request(build_read_request(7, 0, 6)) is None


def test_out_of_range_read_returns_exception() -> None:
    response = VirtualProbe().handle_request(build_read_request(1, 4, 6))

    assert response == append_crc(b"\x01\x83\x02")


@pytest.mark.parametrize(
    "fault,outcome",
    [
        (ProbeFault.BAD_CRC, TransactionOutcome.CRC_MISMATCH),
        (ProbeFault.EXCEPTION, TransactionOutcome.DEVICE_EXCEPTION),
    ],
)
def test_faults_decode_to_expected_outcome(fault, outcome) -> None:
    probe = VirtualProbe()
    probe.fault = fault

    assert decode_response(probe.handle_request(READ_SENSOR_REQUEST)).outcome == outcome


def test_truncated_and_silent_faults() -> None:
    probe = VirtualProbe()

    probe.fault = ProbeFault.TRUNCATED
    assert len(probe.handle_request(READ_SENSOR_REQUEST)) == len(CANONICAL_RESPONSE) - 3

    probe.fault = ProbeFault.SILENT
    assert probe.handle_request(READ_SENSOR_REQUEST) is None
    assert probe.requests_seen == 2


def test_garbage_fault_declares_impossible_byte_count() -> None:
    probe = VirtualProbe()
    probe.fault = ProbeFault.GARBAGE

    response = probe.handle_request(READ_SENSOR_REQUEST)

    assert response[2] == 0xFF
    assert not validate_frame(response)
