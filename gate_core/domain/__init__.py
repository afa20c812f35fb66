"""
Domain Module: Gate node state machines.

Implements:
- Controller: signal sequencing, arrival/departure detection, cycle start
- Timer: second-gate detection and elapsed-time reporting
- Timing cycle and fault taxonomy
"""

from .cycle import FaultCode, TimingCycle
from .controller_fsm import (
    ControllerState,
    ControllerConfig,
    ControllerContext,
    GateController,
)
from .timer_fsm import (
    TimerState,
    TimerConfig,
    TimerContext,
    GateTimer,
)

__all__ = [
    'FaultCode',
    'TimingCycle',
    'ControllerState',
    'ControllerConfig',
    'ControllerContext',
    'GateController',
    'TimerState',
    'TimerConfig',
    'TimerContext',
    'GateTimer',
]
