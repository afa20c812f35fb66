"""
Pytest configuration and shared fixtures for the light gate tests.

Provides deterministic stand-ins for everything the nodes touch at their
edges: a manual millisecond clock, scripted distance sources, recording
signal/display outputs and in-memory gate link connections.
"""

import sys
from collections import deque
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from gate_core.errors import LinkError
from gate_core.io.devices import DARK, DisplayOutput, SignalIndicator, SignalPattern
from gate_core.metrics import reset_metrics
from gate_core.sensing import GateCalibrator, SensorConfig


# =============================================================================
# Clock and Metrics
# =============================================================================


class FakeClock:
    """Manually advanced millisecond clock; sleep() advances it."""

    def __init__(self, start_ms: int = 0):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def seconds(self) -> float:
        return self.now_ms / 1000.0

    def advance(self, ms: int):
        self.now_ms += ms

    def sleep(self, seconds: float):
        self.now_ms += int(round(seconds * 1000))


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Every test starts from zeroed global metrics."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Sensing Fixtures
# =============================================================================


class ScriptedDistanceSource:
    """Returns scripted raw readings in order, then a default."""

    def __init__(self, readings: Iterable[Optional[float]] = (), default: Optional[float] = None):
        self.readings = deque(readings)
        self.default = default
        self.calls = 0

    def measure(self) -> Optional[float]:
        self.calls += 1
        if self.readings:
            return self.readings.popleft()
        return self.default


class TimedDistanceSource:
    """
    Reference distance, except inside (start_ms, end_ms, distance) windows.

    Windows are evaluated against a FakeClock.
    """

    def __init__(self, clock: FakeClock, reference_cm: float,
                 windows: Sequence[Tuple[int, int, float]] = ()):
        self.clock = clock
        self.reference_cm = reference_cm
        self.windows = list(windows)

    def measure(self) -> Optional[float]:
        for start_ms, end_ms, distance in self.windows:
            if start_ms <= self.clock.now_ms < end_ms:
                return distance
        return self.reference_cm


@pytest.fixture
def sensor_config() -> SensorConfig:
    """Default limits with all blocking delays removed."""
    return SensorConfig(inter_sample_delay_s=0.0, calibration_delay_s=0.0)


@pytest.fixture
def steady_calibrator(sensor_config: SensorConfig) -> GateCalibrator:
    """Calibrates to a 100 cm reference (trigger 50 cm, departure above 57.5 cm)."""
    return GateCalibrator(lambda: 100.0, sensor_config)


@pytest.fixture
def failing_calibrator(sensor_config: SensorConfig) -> GateCalibrator:
    """Never sees an echo."""
    return GateCalibrator(lambda: None, sensor_config)


# =============================================================================
# Output Fixtures
# =============================================================================


class RecordingSignal(SignalIndicator):
    """Keeps every pattern written."""

    def __init__(self):
        self.patterns: List[SignalPattern] = []

    def set_signal(self, pattern: SignalPattern):
        self.patterns.append(pattern)

    @property
    def current(self) -> SignalPattern:
        return self.patterns[-1] if self.patterns else DARK


class RecordingDisplay(DisplayOutput):
    """Keeps every screen shown."""

    def __init__(self):
        self.screens: List[List[str]] = []

    def show(self, lines: Sequence[str]):
        self.screens.append(list(lines))

    @property
    def current(self) -> List[str]:
        return self.screens[-1] if self.screens else []


@pytest.fixture
def signal() -> RecordingSignal:
    return RecordingSignal()


@pytest.fixture
def display() -> RecordingDisplay:
    return RecordingDisplay()


# =============================================================================
# Link Fixtures
# =============================================================================


class FakeConnection:
    """
    In-memory Connection.

    Lines sent on a connection with a remote land in the remote's inbound
    queue; lines can also be pushed directly with push().
    """

    def __init__(self, peer: str = "fake:0"):
        self.peer = peer
        self.remote: Optional["FakeConnection"] = None
        self.inbound: List[str] = []
        self.sent: List[str] = []
        self.fail_sends = False
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def push(self, *lines: str):
        self.inbound.extend(lines)

    def send_line(self, line: str):
        if not self._open:
            raise LinkError(f"Send on closed connection to {self.peer}")
        if self.fail_sends:
            self.close()
            raise LinkError(f"Send to {self.peer} failed")
        self.sent.append(line)
        if self.remote is not None and self.remote.is_open:
            self.remote.inbound.append(line.strip())

    def receive_lines(self) -> List[str]:
        lines, self.inbound = self.inbound, []
        return lines

    def close(self):
        self._open = False

    def peer_close(self):
        """Simulate the remote end going away."""
        self._open = False


def connection_pair() -> Tuple[FakeConnection, FakeConnection]:
    """Two connected ends: (controller side, timer side)."""
    controller_end = FakeConnection("timer:1")
    timer_end = FakeConnection("controller:8080")
    controller_end.remote = timer_end
    timer_end.remote = controller_end
    return controller_end, timer_end


class FakeAcceptor:
    """Hands out queued connections, one per accept()."""

    def __init__(self):
        self.pending: List[FakeConnection] = []
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def accept(self) -> Optional[FakeConnection]:
        if self.pending:
            return self.pending.pop(0)
        return None

    def close(self):
        self.closed = True


@pytest.fixture
def acceptor() -> FakeAcceptor:
    return FakeAcceptor()
