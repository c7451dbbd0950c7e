"""
Virtual Soil Probe

Simulates the 6-channel soil probe (temperature, humidity, pH, N, P, K) as a
Modbus RTU slave. Used to run the engine and its tests without hardware.

Register Map (holding registers, unit 1):
- 0: Temperature (degC x10)
- 1: Humidity (%RH x10)
- 2: pH (x100)
- 3: Nitrogen (mg/kg)
- 4: Phosphorus (mg/kg)
- 5: Potassium (mg/kg)
"""

import struct
from dataclasses import dataclass
from enum import Enum

from soilprobe.common.logging_setup import get_service_logger
from soilprobe.services.device.crc import append_crc, validate_frame
from soilprobe.services.device.frame import EXCEPTION_FLAG, FUNC_READ_HOLDING_REGISTERS

logger = get_service_logger("simulator.probe")

# Modbus exception codes
ILLEGAL_FUNCTION = 0x01
ILLEGAL_DATA_ADDRESS = 0x02


@dataclass
class ProbeReadings:
    """Current probe readings in engineering units"""
    temperature_c: float = 25.0
    humidity_pct: float = 50.0
    ph: float = 6.52
    nitrogen_ppm: int = 50
    phosphorus_ppm: int = 25
    potassium_ppm: int = 40


class ProbeFault(str, Enum):
    """How the virtual probe misbehaves on the next responses"""
    NONE = "none"
    SILENT = "silent"            # never answers
    BAD_CRC = "bad_crc"          # flips a CRC bit
    TRUNCATED = "truncated"      # drops the last bytes
    EXCEPTION = "exception"      # answers with a Modbus exception
    GARBAGE = "garbage"          # impossible byte count


class VirtualProbe:
    """
    Register memory plus a minimal function-3 request handler.
    """

    REG_TEMPERATURE = 0
    REG_HUMIDITY = 1
    REG_PH = 2
    REG_NITROGEN = 3
    REG_PHOSPHORUS = 4
    REG_POTASSIUM = 5

    REGISTER_COUNT = 6

    def __init__(self, unit_id: int = 1, readings: ProbeReadings | None = None):
        self.unit_id = unit_id
        self.readings = readings or ProbeReadings()
        self.fault = ProbeFault.NONE
        self.requests_seen = 0

        self._registers: list[int] = [0] * self.REGISTER_COUNT
        self._update_registers()

    @staticmethod
    def _to_register(value: float) -> int:
        return max(0, min(0xFFFF, int(round(value))))

    def _update_registers(self) -> None:
        r = self.readings
        self._registers[self.REG_TEMPERATURE] = self._to_register(r.temperature_c * 10)
        self._registers[self.REG_HUMIDITY] = self._to_register(r.humidity_pct * 10)
        self._registers[self.REG_PH] = self._to_register(r.ph * 100)
        self._registers[self.REG_NITROGEN] = self._to_register(r.nitrogen_ppm)
        self._registers[self.REG_PHOSPHORUS] = self._to_register(r.phosphorus_ppm)
        self._registers[self.REG_POTASSIUM] = self._to_register(r.potassium_ppm)

    def set_readings(self, **values) -> None:
        """Update one or more channels, e.g. set_readings(ph=7.1)"""
        for name, value in values.items():
            if not hasattr(self.readings, name):
                raise AttributeError(f"Unknown probe channel: {name}")
            setattr(self.readings, name, value)
        self._update_registers()

    def set_registers(self, registers: list[int]) -> None:
        """Load raw register values directly"""
        if len(registers) != self.REGISTER_COUNT:
            raise ValueError(f"Expected {self.REGISTER_COUNT} registers")
        self._registers = [self._to_register(v) for v in registers]

    def read_registers(self, start_address: int, count: int) -> list[int]:
        return self._registers[start_address:start_address + count]

    def build_response(self, registers: list[int]) -> bytes:
        data = struct.pack(f">{len(registers)}H", *registers)
        return append_crc(
            bytes((self.unit_id, FUNC_READ_HOLDING_REGISTERS, len(data))) + data
        )

    def build_exception(self, function_code: int, code: int) -> bytes:
        return append_crc(bytes((self.unit_id, function_code | EXCEPTION_FLAG, code)))

    def handle_request(self, request: bytes) -> bytes | None:
        """
        Answer a request frame the way the probe would.

        Returns None when the probe stays silent (bad CRC, other unit, SILENT fault).
        """
        self.requests_seen += 1

        if len(request) != 8 or not validate_frame(request):
            return None
        if request[0] != self.unit_id:
            return None
        if self.fault == ProbeFault.SILENT:
            return None

        function_code = request[1]
        if function_code != FUNC_READ_HOLDING_REGISTERS or self.fault == ProbeFault.EXCEPTION:
            return self.build_exception(function_code, ILLEGAL_FUNCTION)

        start, count = struct.unpack(">HH", request[2:6])
        if count == 0 or start + count > self.REGISTER_COUNT:
            return self.build_exception(function_code, ILLEGAL_DATA_ADDRESS)

        response = self.build_response(self.read_registers(start, count))

        if self.fault == ProbeFault.BAD_CRC:
            response = response[:-1] + bytes((response[-1] ^ 0x01,))
        elif self.fault == ProbeFault.TRUNCATED:
            response = response[:-3]
        elif self.fault == ProbeFault.GARBAGE:
            response = bytes((self.unit_id, FUNC_READ_HOLDING_REGISTERS, 0xFF)) + response[3:]

        return response
