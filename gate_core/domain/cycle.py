"""
Timing cycle and fault codes shared by both node state machines.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FaultCode(Enum):
    """Why a node entered its Fault state."""
    SENSOR_FAULT = "sensor_fault"               # consecutive invalid readings
    CALIBRATION_FAILURE = "calibration_failure"
    TIMING_TIMEOUT = "timing_timeout"           # no STOP_TIMER in time
    NO_PEER_FOR_START = "no_peer_for_start"     # departure with no Timer linked


@dataclass
class TimingCycle:
    """
    The span from arrival at the first gate to the reported result.
    
    At most one cycle is open system-wide. It is opened by the Controller
    on arrival and closed on STOP_TIMER, Fault or link loss.
    
    Attributes:
        object_detected_at_ms: Arrival detection time (Controller clock)
        start_sent_at_ms: When START_TIMER was sent, once departure is seen
        elapsed_ms: Reported result, once STOP_TIMER arrives
    """
    
    object_detected_at_ms: int
    start_sent_at_ms: Optional[int] = None
    elapsed_ms: Optional[int] = None
    
    @property
    def started(self) -> bool:
        return self.start_sent_at_ms is not None
