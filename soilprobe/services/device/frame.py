"""
Modbus RTU Frame Assembly

Builds the read-holding-registers request and reassembles the response from
whatever chunks the serial driver hands us.

Response layout:
    [unit][function][byte_count][data x byte_count][crc_lo][crc_hi]
Exception response layout:
    [unit][function | 0x80][exception_code][crc_lo][crc_hi]
"""

from dataclasses import dataclass
from enum import Enum

from .crc import append_crc

FUNC_READ_HOLDING_REGISTERS = 0x03
EXCEPTION_FLAG = 0x80

# unit + function + byte_count + crc_lo + crc_hi
FRAME_OVERHEAD = 5
HEADER_LENGTH = 3
EXCEPTION_FRAME_LENGTH = 5

# 125 registers * 2 bytes
MAX_BYTE_COUNT = 250

SENSOR_UNIT_ID = 0x01
SENSOR_START_ADDRESS = 0x0000
SENSOR_REGISTER_COUNT = 6


def build_read_request(unit_id: int, start_address: int, quantity: int) -> bytes:
    """Read holding registers (function 3) request with CRC"""
    if not 0 <= unit_id <= 0xFF:
        raise ValueError(f"unit_id out of range: {unit_id}")
    if not 0 <= start_address <= 0xFFFF:
        raise ValueError(f"start_address out of range: {start_address}")
    if not 1 <= quantity <= MAX_BYTE_COUNT // 2:
        raise ValueError(f"quantity out of range: {quantity}")

    pdu = bytes((
        unit_id,
        FUNC_READ_HOLDING_REGISTERS,
        (start_address >> 8) & 0xFF,
        start_address & 0xFF,
        (quantity >> 8) & 0xFF,
        quantity & 0xFF,
    ))
    return append_crc(pdu)


# 01 03 00 00 00 06 C5 C8
READ_SENSOR_REQUEST = build_read_request(
    SENSOR_UNIT_ID, SENSOR_START_ADDRESS, SENSOR_REGISTER_COUNT
)


class AssemblyState(str, Enum):
    INCOMPLETE = "incomplete"
    COMPLETE = "complete"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class AssemblyResult:
    state: AssemblyState
    frame: bytes | None = None
    reason: str | None = None


_INCOMPLETE = AssemblyResult(AssemblyState.INCOMPLETE)


def expected_frame_length(header: bytes | bytearray) -> int | None:
    """
    Total frame length implied by the first bytes of a response.

    Returns None while the header is too short to tell.

    Raises:
        ValueError: byte_count cannot belong to a holding-register response
    """
    if len(header) >= 2 and header[1] & EXCEPTION_FLAG:
        return EXCEPTION_FRAME_LENGTH
    if len(header) < HEADER_LENGTH:
        return None

    byte_count = header[2]
    if byte_count == 0 or byte_count % 2 or byte_count > MAX_BYTE_COUNT:
        raise ValueError(f"impossible byte count {byte_count}")
    return byte_count + FRAME_OVERHEAD


class FrameAssembler:
    """
    Accumulates response bytes until one frame is complete.

    One assembler serves one transaction. Once COMPLETE or MALFORMED the
    result is sticky; bytes past the frame end are ignored. CRC is not
    checked here.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._result: AssemblyResult = _INCOMPLETE

    @property
    def buffered(self) -> bytes:
        return bytes(self._buffer)

    @property
    def result(self) -> AssemblyResult:
        return self._result

    def push(self, chunk: bytes | bytearray) -> AssemblyResult:
        if self._result.state != AssemblyState.INCOMPLETE:
            return self._result

        self._buffer.extend(chunk)

        try:
            expected = expected_frame_length(self._buffer)
        except ValueError as e:
            self._result = AssemblyResult(AssemblyState.MALFORMED, reason=str(e))
            return self._result

        if expected is None or len(self._buffer) < expected:
            return self._result

        self._result = AssemblyResult(
            AssemblyState.COMPLETE,
            frame=bytes(self._buffer[:expected]),
        )
        return self._result

    def reset(self) -> None:
        self._buffer.clear()
        self._result = _INCOMPLETE
