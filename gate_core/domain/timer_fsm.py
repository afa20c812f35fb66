"""
Gate Timer State Machine (second gate, elapsed-time measurement).

    AWAITING_LINK -> READY -> TIMING -> REPORTING -> COOLDOWN -> READY

Link loss returns to AWAITING_LINK from any state, discarding a timing
cycle in progress without reporting it. The sensor is read only while
TIMING, so a degraded gate with no echo at rest can still sit in READY.
FAULT (sensor failure while timing) recovers through recalibration after
a fixed backoff. REPORTING hands over to COOLDOWN in the same tick that
sends the result.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from gate_core.errors import CalibrationError
from gate_core.io.devices import ConsoleDisplay, DisplayOutput
from gate_core.metrics import get_metrics
from gate_core.proto import CLIENT_READY, Message, MessageType, stop_timer
from gate_core.sensing import CalibratedGate, GateCalibrator, SensorConfig, is_valid_distance
from .cycle import FaultCode

logger = logging.getLogger(__name__)


class TimerState(Enum):
    AWAITING_LINK = "awaiting_link"
    READY = "ready"
    TIMING = "timing"
    REPORTING = "reporting"
    COOLDOWN = "cooldown"
    FAULT = "fault"


@dataclass
class TimerConfig:
    """
    Configuration for the Timer state machine.
    
    Attributes:
        display_duration_ms: How long a result stays on screen before READY
        display_refresh_ms: Running-time refresh period while timing
        max_invalid_readings: Consecutive invalid readings while timing that raise a sensor fault
        fault_backoff_ms: Wait in FAULT before recalibrating
        fallback_reference_cm: Degraded-mode reference if calibration fails (None = FAULT)
        recalibrate_on_connect: Recalibrate on every new session instead of reusing the gate
    """
    
    display_duration_ms: int = 5000
    display_refresh_ms: int = 100
    max_invalid_readings: int = 10
    fault_backoff_ms: int = 5000
    fallback_reference_cm: Optional[float] = 50.0
    recalibrate_on_connect: bool = True
    
    def __post_init__(self):
        """Validate configuration."""
        assert self.display_duration_ms >= 0, "display duration must be non-negative"
        assert self.max_invalid_readings >= 1, "need at least one invalid reading for a fault"
        assert self.fallback_reference_cm is None or self.fallback_reference_cm > 0, \
            "fallback reference must be positive"


@dataclass
class TimerContext:
    """Complete mutable state of the Timer node."""
    
    state: TimerState = TimerState.AWAITING_LINK
    gate: Optional[CalibratedGate] = None
    linked: bool = False
    needs_calibration: bool = True
    started_at_ms: Optional[int] = None
    reported_at_ms: Optional[int] = None
    cooldown_started_ms: Optional[int] = None
    last_elapsed_ms: Optional[int] = None
    consecutive_invalid: int = 0
    fault_entered_ms: Optional[int] = None
    fault_code: Optional[FaultCode] = None
    last_display_update_ms: Optional[int] = None
    last_status_log_ms: Optional[int] = None


class GateTimer:
    """
    Timer node state machine.
    
    Usage:
        timer = GateTimer(calibrator, display)
        
        for event in link.poll(now_ms):
            if event is LinkEvent.CONNECTED:
                outgoing += timer.on_link_connected(now_ms)
            else:
                outgoing += timer.on_link_lost(now_ms)
        outgoing += timer.step(now_ms, distance)
        for message in link.receive(now_ms):
            outgoing += timer.on_message(message, now_ms)
    
    The elapsed time is measured on the Timer's own clock, from receipt of
    START_TIMER to arrival at the second gate.
    """
    
    status_interval_ms = 5000
    
    def __init__(
        self,
        calibrator: GateCalibrator,
        display: Optional[DisplayOutput] = None,
        config: Optional[TimerConfig] = None,
        sensor_config: Optional[SensorConfig] = None,
    ):
        """
        Initialize timer.
        
        Args:
            calibrator: Gate calibrator for the second gate
            display: Status display (falls back to the log if None)
            config: Timer configuration (uses defaults if None)
            sensor_config: Sensor limits (uses calibrator's if None)
        """
        self.calibrator = calibrator
        self.display = display or ConsoleDisplay("timer")
        self.config = config or TimerConfig()
        self.sensor_config = sensor_config or calibrator.config
        self.metrics = get_metrics()
        self.ctx = TimerContext()
        
        self._handlers = {
            TimerState.AWAITING_LINK: self._step_awaiting_link,
            TimerState.READY: self._step_ready,
            TimerState.TIMING: self._step_timing,
            TimerState.REPORTING: self._step_reporting,
            TimerState.COOLDOWN: self._step_cooldown,
            TimerState.FAULT: self._step_fault,
        }
        assert set(self._handlers) == set(TimerState), "every state needs a handler"
    
    @property
    def state(self) -> TimerState:
        return self.ctx.state
    
    @property
    def measuring(self) -> bool:
        """Whether this state evaluates distance readings (only while timing)."""
        return self.ctx.state == TimerState.TIMING
    
    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    
    def on_link_connected(self, now_ms: int) -> List[Message]:
        """Calibrate (or reuse the gate) and announce readiness."""
        self.ctx.linked = True
        self._discard_timing("new connection")
        
        if self.ctx.needs_calibration or self.config.recalibrate_on_connect or self.ctx.gate is None:
            if not self._calibrate():
                self._enter_fault(FaultCode.CALIBRATION_FAILURE, now_ms)
                return []
        
        return self._enter_ready(now_ms, announce=True)
    
    def on_link_lost(self, now_ms: int) -> List[Message]:
        self.ctx.linked = False
        self._discard_timing("link lost")
        if self.ctx.state == TimerState.FAULT:
            self.ctx.needs_calibration = True
        self.ctx.fault_entered_ms = None
        self.ctx.fault_code = None
        self._show("Link lost!", "Reconnecting...")
        self._transition(TimerState.AWAITING_LINK)
        return []
    
    def on_message(self, message: Message, now_ms: int) -> List[Message]:
        """Apply one received protocol message."""
        if message.type == MessageType.START_TIMER:
            if self.ctx.state != TimerState.READY:
                logger.warning(f"START_TIMER ignored, not ready (state={self.ctx.state.value})")
                self.metrics.increment_drop('out_of_sync')
                return []
            logger.info("Timing started")
            self.ctx.started_at_ms = now_ms
            self.ctx.consecutive_invalid = 0
            self.ctx.last_display_update_ms = now_ms
            self._show("TIMING!", "Time: 0.000s", "Waiting for object...",
                       f"Ref: {self.ctx.gate.reference_distance:.1f}cm")
            self._transition(TimerState.TIMING)
        elif message.type != MessageType.UNKNOWN:
            logger.warning(f"Unexpected {message.type.value} from Controller, ignored")
            self.metrics.increment_drop('out_of_sync')
        return []
    
    def step(self, now_ms: int, distance: float) -> List[Message]:
        """
        Evaluate one transition for the current reading.
        
        Args:
            now_ms: Current time (ms)
            distance: Filtered distance in cm (NO_READING if none or not measured)
            
        Returns:
            Messages to send in this tick's protocol I/O phase
        """
        if self.measuring:
            if is_valid_distance(distance, self.sensor_config):
                self.ctx.consecutive_invalid = 0
            else:
                self.ctx.consecutive_invalid += 1
                if self.ctx.consecutive_invalid >= self.config.max_invalid_readings:
                    logger.error(f"Sensor failed - {self.ctx.consecutive_invalid} invalid readings")
                    self._enter_fault(FaultCode.SENSOR_FAULT, now_ms)
                    return []
        
        return self._handlers[self.ctx.state](now_ms, distance) or []
    
    def log_status(self, now_ms: int):
        last = self.ctx.last_status_log_ms
        if last is not None and now_ms - last < self.status_interval_ms:
            return
        self.ctx.last_status_log_ms = now_ms
        reference = self.ctx.gate.reference_distance if self.ctx.gate else -1.0
        logger.info(f"State={self.ctx.state.value}, Link={'OK' if self.ctx.linked else 'NO'}, "
                    f"Ref={reference:.1f}cm")
    
    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------
    
    def _step_awaiting_link(self, now_ms: int, distance: float):
        pass
    
    def _step_ready(self, now_ms: int, distance: float):
        pass
    
    def _step_timing(self, now_ms: int, distance: float) -> Optional[List[Message]]:
        elapsed_ms = now_ms - self.ctx.started_at_ms
        
        if self.ctx.gate.is_arrival(distance, self.sensor_config):
            logger.info(f"Object detected! Time: {elapsed_ms}ms")
            self.ctx.last_elapsed_ms = elapsed_ms
            self.ctx.reported_at_ms = now_ms
            self.ctx.started_at_ms = None
            self._show("RESULT:", f"Time: {elapsed_ms / 1000.0:.3f}s", f"= {elapsed_ms}ms", "")
            self._transition(TimerState.REPORTING)
            self._step_reporting(now_ms, distance)
            return [stop_timer(elapsed_ms)]
        
        if now_ms - self.ctx.last_display_update_ms >= self.config.display_refresh_ms:
            self.ctx.last_display_update_ms = now_ms
            dist_text = f"{distance:.1f}cm" if is_valid_distance(distance, self.sensor_config) else "--"
            self._show("TIMING!", f"Time: {elapsed_ms / 1000.0:.3f}s",
                       "Waiting for object...", f"Dist: {dist_text}")
        return None
    
    def _step_reporting(self, now_ms: int, distance: float):
        self.ctx.cooldown_started_ms = self.ctx.reported_at_ms
        self._transition(TimerState.COOLDOWN)
    
    def _step_cooldown(self, now_ms: int, distance: float):
        if now_ms - self.ctx.cooldown_started_ms >= self.config.display_duration_ms:
            return self._enter_ready(now_ms, announce=False)
        return None
    
    def _step_fault(self, now_ms: int, distance: float) -> Optional[List[Message]]:
        if now_ms - self.ctx.fault_entered_ms < self.config.fault_backoff_ms:
            return None
        
        logger.info(f"Attempting recovery from {self.ctx.fault_code.value}")
        if not self._calibrate():
            self.ctx.fault_entered_ms = now_ms
            return None
        if self.ctx.linked:
            return self._enter_ready(now_ms, announce=True)
        self._transition(TimerState.AWAITING_LINK)
        return None
    
    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    
    def _calibrate(self) -> bool:
        self._show("Calibrating...", "Measuring reference", "Keep gate clear!", "")
        try:
            gate = self.calibrator.calibrate_or_fallback(self.config.fallback_reference_cm)
        except CalibrationError as e:
            logger.error(f"Sensor calibration failed: {e}")
            self._show("Sensor error!", "Calibration failed", "", "")
            return False
        
        self.ctx.gate = gate
        self.ctx.needs_calibration = False
        if gate.degraded:
            self._show("Sensor warning!", f"Fallback: {gate.reference_distance:.0f}cm",
                       "Check sensor", "")
        logger.info(f"Reference: {gate.reference_distance:.1f}cm, trigger: {gate.trigger_threshold:.1f}cm"
                    f"{' (degraded)' if gate.degraded else ''}")
        return True
    
    def _enter_ready(self, now_ms: int, announce: bool) -> List[Message]:
        self.ctx.started_at_ms = None
        self.ctx.reported_at_ms = None
        self.ctx.cooldown_started_ms = None
        self.ctx.fault_entered_ms = None
        self.ctx.fault_code = None
        self.ctx.consecutive_invalid = 0
        
        third = (f"Last time: {self.ctx.last_elapsed_ms / 1000.0:.3f}s"
                 if self.ctx.last_elapsed_ms is not None
                 else f"Reference: {self.ctx.gate.reference_distance:.1f}cm")
        self._show("Ready!", "Waiting for start...", third,
                   f"Trigger: {self.ctx.gate.trigger_threshold:.1f}cm")
        self._transition(TimerState.READY)
        return [CLIENT_READY] if announce else []
    
    def _enter_fault(self, code: FaultCode, now_ms: int):
        self._discard_timing("fault")
        self.ctx.fault_code = code
        self.ctx.fault_entered_ms = now_ms
        self.ctx.consecutive_invalid = 0
        self.ctx.needs_calibration = True
        self.metrics.increment('faults')
        self.metrics.increment(f'fault_{code.value}')
        logger.error(f"TIMER FAULT - {code.value}")
        self._show("Sensor fault!", code.value, "Recovering...", "")
        self._transition(TimerState.FAULT)
    
    def _discard_timing(self, reason: str):
        if self.ctx.state == TimerState.TIMING:
            logger.warning(f"{reason} - discarding timing in progress")
        self.ctx.started_at_ms = None
    
    def _show(self, *lines: str):
        self.display.show(lines)
    
    def _transition(self, new_state: TimerState):
        if new_state != self.ctx.state:
            logger.info(f"State: {self.ctx.state.value} -> {new_state.value}")
        self.ctx.state = new_state
