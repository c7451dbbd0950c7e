"""CRC16/Modbus codec."""

from __future__ import annotations

import pytest

from soilprobe.services.device.crc import append_crc, crc16, crc16_bytes, validate_frame
from soilprobe.services.device.frame import READ_SENSOR_REQUEST, build_read_request

from conftest import CANONICAL_RESPONSE


def test_known_vector_for_sensor_request() -> None:
    assert crc16(bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x06])) == 0xC8C5
    assert crc16_bytes(bytes([0x01, 0x03, 0x00, 0x00, 0x00, 0x06])) == b"\xC5\xC8"


def test_empty_input_returns_seed() -> None:
    assert crc16(b"") == 0xFFFF


def test_request_frame_matches_documented_bytes() -> None:
    assert READ_SENSOR_REQUEST == bytes.fromhex("01 03 00 00 00 06 C5 C8")
    assert build_read_request(1, 0, 6) == READ_SENSOR_REQUEST


def test_crc_is_deterministic_and_accepts_bytearray() -> None:
    data = bytearray(b"\x01\x03\x0C\x00\xFA")
    assert crc16(data) == crc16(bytes(data))


def test_validate_accepts_frames_with_correct_crc() -> None:
    assert validate_frame(READ_SENSOR_REQUEST)
    assert validate_frame(CANONICAL_RESPONSE)
    assert validate_frame(append_crc(b"\x11\x22\x33\x44"))


def test_validate_rejects_swapped_crc_bytes() -> None:
    swapped = READ_SENSOR_REQUEST[:-2] + READ_SENSOR_REQUEST[-1:] + READ_SENSOR_REQUEST[-2:-1]
    assert not validate_frame(swapped)


@pytest.mark.parametrize("frame", [b"", b"\x01", b"\x01\x03"])
def test_validate_rejects_too_short_frames(frame: bytes) -> None:
    assert not validate_frame(frame)


@pytest.mark.parametrize("frame", [READ_SENSOR_REQUEST, CANONICAL_RESPONSE])
def test_every_single_bit_flip_is_detected(frame: bytes) -> None:
    for index in range(len(frame)):
        for bit in range(8):
            corrupted = bytearray(frame)
            corrupted[index] ^= 1 << bit
            assert not validate_frame(corrupted), f"flip at byte {index} bit {bit} passed"


@pytest.mark.parametrize(
    "unit_id,start,quantity",
    [(-1, 0, 1), (256, 0, 1), (1, -1, 1), (1, 0x10000, 1), (1, 0, 0), (1, 0, 126)],
)
def test_build_read_request_rejects_out_of_range_fields(unit_id, start, quantity) -> None:
    with pytest.raises(ValueError):
        build_read_request(unit_id, start, quantity)
