"""
Device interfaces for the gate nodes, with software implementations.

Hardware drivers (ultrasonic pulse timing, LED GPIO, I2C LCD) live outside
the core; they implement these interfaces and are injected at
construction. The implementations here run without hardware: a simulated
distance source and log-backed signal/display outputs.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DISPLAY_LINES = 4


@dataclass(frozen=True)
class SignalPattern:
    """Independent stop / caution / go lamp outputs."""
    
    stop: bool
    caution: bool
    go: bool
    
    def describe(self) -> str:
        lamps = ("R", self.stop), ("Y", self.caution), ("G", self.go)
        return " ".join(f"{name}:{'ON' if lit else 'OFF'}" for name, lit in lamps)


DARK = SignalPattern(stop=False, caution=False, go=False)
GO = SignalPattern(stop=False, caution=False, go=True)
CAUTION = SignalPattern(stop=False, caution=True, go=False)
STOP = SignalPattern(stop=True, caution=False, go=False)
ALL_ON = SignalPattern(stop=True, caution=True, go=True)    # timing in progress
CALIBRATING = SignalPattern(stop=True, caution=True, go=False)


# =============================================================================
# Interfaces
# =============================================================================


class DistanceSource:
    """Blocking distance read, bounded by the sensor's echo timeout."""
    
    def measure(self) -> Optional[float]:
        """Return distance in cm; None or a non-positive value means no echo."""
        raise NotImplementedError


class SignalIndicator:
    def set_signal(self, pattern: SignalPattern):
        raise NotImplementedError


class DisplayOutput:
    """Up to four lines of status text."""
    
    def show(self, lines: Sequence[str]):
        raise NotImplementedError


# =============================================================================
# Software implementations
# =============================================================================


class LoggingSignalIndicator(SignalIndicator):
    """Signal output rendered to the log, at most once per log_interval_s."""
    
    def __init__(self, clock: Callable[[], float], log_interval_s: float = 1.0):
        self.clock = clock
        self.log_interval_s = log_interval_s
        self.current = DARK
        self._last_log: Optional[float] = None
    
    def set_signal(self, pattern: SignalPattern):
        changed = pattern != self.current
        self.current = pattern
        now = self.clock()
        if changed and (self._last_log is None or now - self._last_log > self.log_interval_s):
            logger.info(f"Signal - {pattern.describe()}")
            self._last_log = now


class ConsoleDisplay(DisplayOutput):
    """Fallback display: writes changed screens to the log."""
    
    def __init__(self, name: str = "display"):
        self.name = name
        self.lines: List[str] = []
    
    def show(self, lines: Sequence[str]):
        lines = list(lines)[:DISPLAY_LINES]
        if lines == self.lines:
            return
        self.lines = lines
        logger.info(f"[{self.name}] " + " | ".join(line for line in lines if line))


class SimulatedDistanceSource(DistanceSource):
    """
    Ultrasonic sensor stand-in for running nodes without hardware.
    
    Reports the reference distance with Gaussian noise and occasional
    dropouts; object passes are scheduled as (start_s, end_s, distance_cm)
    windows relative to the first reading.
    
    Usage:
        source = SimulatedDistanceSource(time.monotonic, reference_cm=120.0)
        source.schedule_pass(start_s=10.0, duration_s=3.0, distance_cm=40.0)
    """
    
    def __init__(
        self,
        clock: Callable[[], float],
        reference_cm: float = 120.0,
        noise_std_cm: float = 0.5,
        dropout_rate: float = 0.02,
        seed: Optional[int] = None,
    ):
        self.clock = clock
        self.reference_cm = reference_cm
        self.noise_std_cm = noise_std_cm
        self.dropout_rate = dropout_rate
        self.rng = np.random.default_rng(seed)
        self.passes: List[Tuple[float, float, float]] = []
        self._t0: Optional[float] = None
    
    def schedule_pass(self, start_s: float, duration_s: float, distance_cm: float):
        self.passes.append((start_s, start_s + duration_s, distance_cm))
    
    def schedule_periodic_passes(self, first_s: float, period_s: float, count: int,
                                 duration_s: float = 3.0, distance_cm: float = 40.0):
        for i in range(count):
            self.schedule_pass(first_s + i * period_s, duration_s, distance_cm)
    
    def measure(self) -> Optional[float]:
        now = self.clock()
        if self._t0 is None:
            self._t0 = now
        t = now - self._t0
        
        if self.rng.random() < self.dropout_rate:
            return None
        
        distance = self.reference_cm
        for start_s, end_s, pass_distance in self.passes:
            if start_s <= t < end_s:
                distance = pass_distance
                break
        
        return float(max(0.0, distance + self.rng.normal(0.0, self.noise_std_cm)))
