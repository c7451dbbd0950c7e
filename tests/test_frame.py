"""Frame assembler: chunking, malformed headers, exception frames."""

from __future__ import annotations

import random

import pytest

from soilprobe.services.device.crc import append_crc
from soilprobe.services.device.frame import AssemblyState, FrameAssembler, expected_frame_length

from conftest import CANONICAL_RESPONSE


def _assemble(chunks: list[bytes]):
    assembler = FrameAssembler()
    result = None
    for chunk in chunks:
        result = assembler.push(chunk)
    return result


def test_needs_three_bytes_before_length_is_known() -> None:
    assembler = FrameAssembler()

    assert assembler.push(b"\x01").state == AssemblyState.INCOMPLETE
    assert assembler.push(b"\x03").state == AssemblyState.INCOMPLETE
    assert assembler.push(b"\x0C").state == AssemblyState.INCOMPLETE
    assert assembler.buffered == b"\x01\x03\x0C"


def test_expected_length_is_byte_count_plus_five() -> None:
    assert expected_frame_length(b"\x01\x03") is None
    assert expected_frame_length(b"\x01\x03\x0C") == 17


def test_whole_frame_in_one_push() -> None:
    result = _assemble([CANONICAL_RESPONSE])

    assert result.state == AssemblyState.COMPLETE
    assert result.frame == CANONICAL_RESPONSE


def test_byte_at_a_time_matches_all_at_once() -> None:
    one_by_one = _assemble([bytes([b]) for b in CANONICAL_RESPONSE])
    all_at_once = _assemble([CANONICAL_RESPONSE])

    assert one_by_one == all_at_once


def test_random_chunking_is_irrelevant() -> None:
    rng = random.Random(1234)
    expected = _assemble([CANONICAL_RESPONSE])

    for _ in range(50):
        chunks, i = [], 0
        while i < len(CANONICAL_RESPONSE):
            size = rng.randint(1, 6)
            chunks.append(CANONICAL_RESPONSE[i:i + size])
            i += size
        assert _assemble(chunks) == expected


def test_trailing_bytes_are_not_part_of_the_frame() -> None:
    result = _assemble([CANONICAL_RESPONSE + b"\xAA\xBB"])

    assert result.frame == CANONICAL_RESPONSE


def test_incomplete_until_last_byte() -> None:
    assembler = FrameAssembler()

    assert assembler.push(CANONICAL_RESPONSE[:-1]).state == AssemblyState.INCOMPLETE
    assert assembler.push(CANONICAL_RESPONSE[-1:]).state == AssemblyState.COMPLETE


@pytest.mark.parametrize("byte_count", [0x00, 0x07, 0xFC, 0xFF])
def test_impossible_byte_count_is_malformed(byte_count: int) -> None:
    result = _assemble([bytes([0x01, 0x03, byte_count])])

    assert result.state == AssemblyState.MALFORMED
    assert str(byte_count) in result.reason


def test_exception_response_is_five_bytes() -> None:
    exception_frame = append_crc(b"\x01\x83\x02")

    assembler = FrameAssembler()
    assert assembler.push(exception_frame[:4]).state == AssemblyState.INCOMPLETE
    result = assembler.push(exception_frame[4:])

    assert result.state == AssemblyState.COMPLETE
    assert result.frame == exception_frame


def test_result_is_sticky_after_completion() -> None:
    assembler = FrameAssembler()
    first = assembler.push(CANONICAL_RESPONSE)

    assert assembler.push(b"\x01\x03\x0C") is first
    assert assembler.result is first


def test_reset_clears_buffer_and_result() -> None:
    assembler = FrameAssembler()
    assembler.push(CANONICAL_RESPONSE)

    assembler.reset()

    assert assembler.buffered == b""
    assert assembler.result.state == AssemblyState.INCOMPLETE
    assert assembler.push(CANONICAL_RESPONSE).frame == CANONICAL_RESPONSE
