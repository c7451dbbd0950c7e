"""
Simulator

Virtual soil probe and an in-memory serial transport for running the
engine without hardware.
"""

from .transport import SIMULATED_DEVICE, SimulatedTransport
from .virtual_probe import ProbeFault, ProbeReadings, VirtualProbe

__all__ = [
    "SIMULATED_DEVICE",
    "SimulatedTransport",
    "ProbeFault",
    "ProbeReadings",
    "VirtualProbe",
]
