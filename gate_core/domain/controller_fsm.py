"""
Gate Controller State Machine (first gate, signal sequencing).

    IDLE -> ARRIVAL_PENDING_CAUTION -> CAUTION_ACTIVE -> STOP_PENDING_DEPARTURE
         -> TIMING_ACTIVE -> COOLDOWN -> IDLE

FAULT is reachable from every state and recovers to IDLE through
recalibration after a fixed backoff. Arrival uses the trigger threshold;
departure uses the higher hysteresis bound so that a reading hovering at
the threshold cannot retrigger.

All mutable state lives in one ControllerContext, changed only by the
GateController methods driven from the node tick loop.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from gate_core.errors import CalibrationError
from gate_core.io.devices import (
    ALL_ON,
    CALIBRATING,
    CAUTION,
    DARK,
    GO,
    STOP,
    SignalIndicator,
)
from gate_core.io.measurement_log import (
    LINK_NO_CLIENT,
    LINK_OK,
    MeasurementRecord,
    MeasurementRecorder,
)
from gate_core.metrics import get_metrics
from gate_core.proto import START_TIMER, Message, MessageType
from gate_core.sensing import CalibratedGate, GateCalibrator, SensorConfig, is_valid_distance
from .cycle import FaultCode, TimingCycle

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    IDLE = "idle"
    ARRIVAL_PENDING_CAUTION = "arrival_pending_caution"
    CAUTION_ACTIVE = "caution_active"
    STOP_PENDING_DEPARTURE = "stop_pending_departure"
    TIMING_ACTIVE = "timing_active"
    COOLDOWN = "cooldown"
    FAULT = "fault"


@dataclass
class ControllerConfig:
    """
    Configuration for the Controller state machine.
    
    Attributes:
        yellow_pending_delay_ms: Dark phase between arrival and caution
        caution_duration_ms: Caution phase before stop
        hysteresis_factor: Departure bound = trigger threshold * factor
        max_timing_duration_ms: Safety abort while waiting for STOP_TIMER
        min_time_between_measurements_ms: Cooldown after a result
        max_invalid_readings: Consecutive invalid readings that raise a sensor fault
        fault_backoff_ms: Wait in FAULT before each recalibration attempt
        fallback_reference_cm: Degraded-mode reference if calibration fails (None = stay in FAULT)
        busy_warning_interval_ms: Rate limit for "timing still in progress" warnings
        status_interval_ms: Period of the status summary log
        fault_blink_count: Stop-lamp blinks on fault entry
        fault_blink_period_ms: Half period of a fault blink
    """
    
    yellow_pending_delay_ms: int = 500
    caution_duration_ms: int = 2000
    hysteresis_factor: float = 1.15
    max_timing_duration_ms: int = 30000
    min_time_between_measurements_ms: int = 2000
    max_invalid_readings: int = 10
    fault_backoff_ms: int = 5000
    fallback_reference_cm: Optional[float] = None
    busy_warning_interval_ms: int = 5000
    status_interval_ms: int = 5000
    fault_blink_count: int = 5
    fault_blink_period_ms: int = 200
    
    def __post_init__(self):
        """Validate configuration."""
        assert self.hysteresis_factor > 1.0, "hysteresis factor must exceed 1"
        assert self.max_invalid_readings >= 1, "need at least one invalid reading for a fault"
        assert self.max_timing_duration_ms > 0, "max timing duration must be positive"
        assert self.fallback_reference_cm is None or self.fallback_reference_cm > 0, \
            "fallback reference must be positive"


@dataclass
class ControllerContext:
    """Complete mutable state of the Controller node."""
    
    state: ControllerState = ControllerState.IDLE
    gate: Optional[CalibratedGate] = None
    cycle: Optional[TimingCycle] = None
    caution_started_ms: Optional[int] = None
    cooldown_started_ms: Optional[int] = None
    fault_entered_ms: Optional[int] = None
    fault_code: Optional[FaultCode] = None
    consecutive_invalid: int = 0
    peer_connected: bool = False
    peer_ready: bool = False
    last_elapsed_ms: Optional[int] = None
    last_busy_warning_ms: Optional[int] = None
    last_status_log_ms: Optional[int] = None
    
    @property
    def timing_in_progress(self) -> bool:
        """Single-active-timing flag."""
        return self.cycle is not None


class GateController:
    """
    Controller node state machine.
    
    Usage:
        controller = GateController(calibrator, signal, recorder)
        controller.start(now_ms)
        
        # once per tick, after link bookkeeping and one filtered reading
        outgoing = controller.step(now_ms, distance, link.is_connected)
        for message in link.receive(now_ms):
            controller.on_message(message, now_ms)
    
    Features:
    - Signal sequencing (dark, caution, stop, all-on while timing, go)
    - Arrival/departure detection with asymmetric thresholds
    - Single-active-timing invariant
    - Sensor, timeout and no-peer faults with recalibration recovery
    """
    
    def __init__(
        self,
        calibrator: GateCalibrator,
        signal: SignalIndicator,
        recorder: Optional[MeasurementRecorder] = None,
        config: Optional[ControllerConfig] = None,
        sensor_config: Optional[SensorConfig] = None,
    ):
        """
        Initialize controller.
        
        Args:
            calibrator: Gate calibrator (re-run after faults)
            signal: Traffic light output
            recorder: Sink for completed cycles
            config: Controller configuration (uses defaults if None)
            sensor_config: Sensor limits (uses calibrator's if None)
        """
        self.calibrator = calibrator
        self.signal = signal
        self.recorder = recorder or MeasurementRecorder()
        self.config = config or ControllerConfig()
        self.sensor_config = sensor_config or calibrator.config
        self.metrics = get_metrics()
        self.ctx = ControllerContext()
        
        self._handlers = {
            ControllerState.IDLE: self._step_idle,
            ControllerState.ARRIVAL_PENDING_CAUTION: self._step_arrival_pending,
            ControllerState.CAUTION_ACTIVE: self._step_caution,
            ControllerState.STOP_PENDING_DEPARTURE: self._step_stop_pending,
            ControllerState.TIMING_ACTIVE: self._step_timing,
            ControllerState.COOLDOWN: self._step_cooldown,
            ControllerState.FAULT: self._step_fault,
        }
        assert set(self._handlers) == set(ControllerState), "every state needs a handler"
    
    @property
    def state(self) -> ControllerState:
        return self.ctx.state
    
    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    
    def start(self, now_ms: int):
        """Initial calibration; enters IDLE on success, FAULT otherwise."""
        if self._calibrate():
            self._enter_idle(now_ms)
        else:
            self._enter_fault(FaultCode.CALIBRATION_FAILURE, now_ms)
    
    def step(self, now_ms: int, distance: float, peer_connected: bool) -> List[Message]:
        """
        Evaluate one transition for the current reading.
        
        Args:
            now_ms: Current time (ms)
            distance: Filtered distance in cm (NO_READING if none)
            peer_connected: Whether a Timer session is connected
            
        Returns:
            Messages to send in this tick's protocol I/O phase
        """
        self.ctx.peer_connected = peer_connected
        if self.ctx.gate is None and self.ctx.state != ControllerState.FAULT:
            self.start(now_ms)
        
        if self.ctx.state != ControllerState.FAULT:
            if is_valid_distance(distance, self.sensor_config):
                self.ctx.consecutive_invalid = 0
            else:
                self.ctx.consecutive_invalid += 1
                if self.ctx.consecutive_invalid >= self.config.max_invalid_readings:
                    logger.error(f"Sensor failed - {self.ctx.consecutive_invalid} invalid readings")
                    self._enter_fault(FaultCode.SENSOR_FAULT, now_ms)
                    return []
        
        return self._handlers[self.ctx.state](now_ms, distance) or []
    
    def on_message(self, message: Message, now_ms: int):
        """Apply one received protocol message."""
        if message.type == MessageType.STOP_TIMER:
            self._on_stop_timer(message.elapsed_ms, now_ms)
        elif message.type == MessageType.CLIENT_READY:
            logger.info("Timer ready")
            self.ctx.peer_ready = True
        elif message.type == MessageType.UNKNOWN:
            pass
        else:
            logger.warning(f"Unexpected {message.type.value} from Timer, ignored")
            self.metrics.increment_drop('out_of_sync')
    
    def on_link_connected(self, now_ms: int):
        """A fresh session must never inherit timing state."""
        self.ctx.peer_ready = False
        self._abort_cycle("new Timer connection", now_ms)
    
    def on_link_lost(self, now_ms: int):
        self.ctx.peer_ready = False
        self._abort_cycle("Timer link lost", now_ms)
    
    def log_status(self, now_ms: int):
        """Periodic status summary."""
        last = self.ctx.last_status_log_ms
        if last is not None and now_ms - last < self.config.status_interval_ms:
            return
        self.ctx.last_status_log_ms = now_ms
        reference = self.ctx.gate.reference_distance if self.ctx.gate else -1.0
        logger.info(
            f"State={self.ctx.state.value}, Client={'OK' if self.ctx.peer_connected else 'NO'}, "
            f"Timing={'YES' if self.ctx.timing_in_progress else 'NO'}, Ref={reference:.1f}cm"
        )
    
    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------
    
    def _step_idle(self, now_ms: int, distance: float):
        if not self.ctx.gate.is_arrival(distance, self.sensor_config):
            return

        logger.info(f"Object detected: {distance:.1f}cm <= {self.ctx.gate.trigger_threshold:.1f}cm")
        self.ctx.cycle = TimingCycle(object_detected_at_ms=now_ms)
        self.signal.set_signal(DARK)
        self._transition(ControllerState.ARRIVAL_PENDING_CAUTION)
    
    def _step_arrival_pending(self, now_ms: int, distance: float):
        if now_ms - self.ctx.cycle.object_detected_at_ms >= self.config.yellow_pending_delay_ms:
            self.signal.set_signal(CAUTION)
            self.ctx.caution_started_ms = now_ms
            self._transition(ControllerState.CAUTION_ACTIVE)
    
    def _step_caution(self, now_ms: int, distance: float):
        if now_ms - self.ctx.caution_started_ms >= self.config.caution_duration_ms:
            self.signal.set_signal(STOP)
            self._transition(ControllerState.STOP_PENDING_DEPARTURE)
    
    def _step_stop_pending(self, now_ms: int, distance: float) -> Optional[List[Message]]:
        factor = self.config.hysteresis_factor
        if not self.ctx.gate.is_departure(distance, self.sensor_config, factor):
            return None
        
        logger.info(f"Object left: {distance:.1f}cm > {self.ctx.gate.hysteresis_bound(factor):.1f}cm")
        self.signal.set_signal(ALL_ON)
        
        if not self.ctx.peer_connected:
            logger.error("No Timer connected - cannot start timing")
            self._enter_fault(FaultCode.NO_PEER_FOR_START, now_ms)
            return None
        
        self.ctx.cycle.start_sent_at_ms = now_ms
        self._transition(ControllerState.TIMING_ACTIVE)
        return [START_TIMER]
    
    def _step_timing(self, now_ms: int, distance: float):
        if now_ms - self.ctx.cycle.start_sent_at_ms > self.config.max_timing_duration_ms:
            logger.error(f"Timing timeout - no result after {self.config.max_timing_duration_ms}ms")
            self._enter_fault(FaultCode.TIMING_TIMEOUT, now_ms)
            return

        # The cycle's own object has already left; anything at the gate now is a second arrival
        if self.ctx.gate.is_arrival(distance, self.sensor_config):
            self._ignore_arrival(now_ms)

    def _ignore_arrival(self, now_ms: int):
        self.metrics.increment_drop('arrival_while_timing')
        last = self.ctx.last_busy_warning_ms
        if last is None or now_ms - last > self.config.busy_warning_interval_ms:
            logger.warning("Arrival ignored - timing still in progress")
            self.ctx.last_busy_warning_ms = now_ms
    
    def _step_cooldown(self, now_ms: int, distance: float):
        if now_ms - self.ctx.cooldown_started_ms >= self.config.min_time_between_measurements_ms:
            self._enter_idle(now_ms)
            logger.info("Ready for next measurement")
    
    def _step_fault(self, now_ms: int, distance: float):
        elapsed = now_ms - self.ctx.fault_entered_ms
        blink_window = 2 * self.config.fault_blink_count * self.config.fault_blink_period_ms
        if elapsed < blink_window:
            lit = (elapsed // self.config.fault_blink_period_ms) % 2 == 0
            self.signal.set_signal(STOP if lit else DARK)
            return
        
        self.signal.set_signal(STOP)
        if elapsed < self.config.fault_backoff_ms:
            return
        
        logger.info(f"Attempting recovery from {self.ctx.fault_code.value}")
        if self._calibrate():
            self._enter_idle(now_ms)
        else:
            # Retry after another backoff
            self.ctx.fault_entered_ms = now_ms
    
    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    
    def _on_stop_timer(self, elapsed_ms: int, now_ms: int):
        if self.ctx.state != ControllerState.TIMING_ACTIVE:
            logger.warning(f"STOP_TIMER:{elapsed_ms} ignored in state {self.ctx.state.value}")
            self.metrics.increment_drop('out_of_sync')
            return
        
        logger.info(f"STOP_TIMER received: {elapsed_ms}ms")
        self.ctx.cycle.elapsed_ms = elapsed_ms
        self.ctx.last_elapsed_ms = elapsed_ms
        self.recorder.record(MeasurementRecord(
            timestamp_ms=now_ms,
            elapsed_ms=elapsed_ms,
            link_status=LINK_OK if self.ctx.peer_connected else LINK_NO_CLIENT,
            reference_distance=self.ctx.gate.reference_distance,
        ))
        
        self.ctx.cycle = None
        self.ctx.cooldown_started_ms = now_ms
        self.signal.set_signal(CAUTION)
        self._transition(ControllerState.COOLDOWN)
    
    def _abort_cycle(self, reason: str, now_ms: int):
        if self.ctx.timing_in_progress:
            logger.warning(f"{reason} - discarding open timing cycle")
        self.ctx.cycle = None
        if self.ctx.state not in (ControllerState.IDLE, ControllerState.FAULT):
            self._enter_idle(now_ms)
    
    def _calibrate(self) -> bool:
        self.signal.set_signal(CALIBRATING)
        try:
            gate = self.calibrator.calibrate_or_fallback(self.config.fallback_reference_cm)
        except CalibrationError as e:
            logger.error(f"Sensor calibration failed: {e}")
            return False
        
        self.ctx.gate = gate
        logger.info(f"System ready - reference: {gate.reference_distance:.1f}cm, "
                    f"trigger: {gate.trigger_threshold:.1f}cm"
                    f"{' (degraded)' if gate.degraded else ''}")
        return True
    
    def _enter_idle(self, now_ms: int):
        self.ctx.cycle = None
        self.ctx.caution_started_ms = None
        self.ctx.cooldown_started_ms = None
        self.ctx.fault_entered_ms = None
        self.ctx.fault_code = None
        self.ctx.consecutive_invalid = 0
        self.signal.set_signal(GO)
        self._transition(ControllerState.IDLE)
    
    def _enter_fault(self, code: FaultCode, now_ms: int):
        if self.ctx.timing_in_progress:
            logger.warning("Fault - discarding open timing cycle")
        self.ctx.cycle = None
        self.ctx.fault_code = code
        self.ctx.fault_entered_ms = now_ms
        self.ctx.consecutive_invalid = 0
        self.metrics.increment('faults')
        self.metrics.increment(f'fault_{code.value}')
        self.signal.set_signal(STOP)
        logger.error(f"SYSTEM FAULT - {code.value}")
        self._transition(ControllerState.FAULT)
    
    def _transition(self, new_state: ControllerState):
        if new_state != self.ctx.state:
            logger.info(f"State: {self.ctx.state.value} -> {new_state.value}")
        self.ctx.state = new_state
