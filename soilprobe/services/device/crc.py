"""
Modbus CRC16

Seed 0xFFFF, reflected polynomial 0xA001. Appended to frames low byte first.
"""

MODBUS_CRC_SEED = 0xFFFF
MODBUS_CRC_POLY = 0xA001


def crc16(data: bytes | bytearray) -> int:
    """Compute the Modbus CRC16 of `data`"""
    crc = MODBUS_CRC_SEED
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ MODBUS_CRC_POLY
            else:
                crc >>= 1
    return crc & 0xFFFF


def crc16_bytes(data: bytes | bytearray) -> bytes:
    """CRC of `data` as wire bytes (low, high)"""
    crc = crc16(data)
    return bytes((crc & 0xFF, (crc >> 8) & 0xFF))


def append_crc(data: bytes | bytearray) -> bytes:
    return bytes(data) + crc16_bytes(data)


def validate_frame(frame: bytes | bytearray) -> bool:
    """True if the trailing two bytes match the CRC of everything before them"""
    if len(frame) < 3:
        return False
    received = frame[-2] | (frame[-1] << 8)
    return crc16(frame[:-2]) == received
