"""
I/O Module: Gate link transport and session, devices, measurement log.

- Disconnect/reconnect tolerance with heartbeat liveness
- Bounded line framing (no unbounded RAM growth)
- Device interfaces injected into the state machines
"""

from .transport import (
    Connection,
    SocketConnection,
    SocketAcceptor,
)
from .session_link import (
    SessionState,
    LinkEvent,
    LinkConfig,
    HeartbeatMonitor,
    SessionLink,
    ControllerLink,
    TimerLink,
    monotonic_ms,
)
from .devices import (
    SignalPattern,
    DARK,
    GO,
    CAUTION,
    STOP,
    ALL_ON,
    CALIBRATING,
    DistanceSource,
    SignalIndicator,
    DisplayOutput,
    LoggingSignalIndicator,
    ConsoleDisplay,
    SimulatedDistanceSource,
)
from .measurement_log import (
    MeasurementRecord,
    MeasurementLog,
    MeasurementRecorder,
    LINK_OK,
    LINK_NO_CLIENT,
)

__all__ = [
    'Connection',
    'SocketConnection',
    'SocketAcceptor',
    'SessionState',
    'LinkEvent',
    'LinkConfig',
    'HeartbeatMonitor',
    'SessionLink',
    'ControllerLink',
    'TimerLink',
    'monotonic_ms',
    'SignalPattern',
    'DARK',
    'GO',
    'CAUTION',
    'STOP',
    'ALL_ON',
    'CALIBRATING',
    'DistanceSource',
    'SignalIndicator',
    'DisplayOutput',
    'LoggingSignalIndicator',
    'ConsoleDisplay',
    'SimulatedDistanceSource',
    'MeasurementRecord',
    'MeasurementLog',
    'MeasurementRecorder',
    'LINK_OK',
    'LINK_NO_CLIENT',
]
