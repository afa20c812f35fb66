"""
Unit tests for the Timer state machine.

Tests cover:
- Handshake and START_TIMER acceptance
- Elapsed time measurement and result reporting
- Result display period and return to READY
- Sensor fault and recovery, calibration fallback
- Link loss discarding a timing in progress
"""

import pytest

from conftest import ScriptedDistanceSource
from gate_core.domain import FaultCode, GateTimer, TimerConfig, TimerState
from gate_core.metrics import get_metrics
from gate_core.proto import CLIENT_READY, START_TIMER, stop_timer
from gate_core.sensing import NO_READING, GateCalibrator

EMPTY = 100.0
PRESENT = 30.0


@pytest.fixture
def timer(steady_calibrator, display) -> GateTimer:
    return GateTimer(steady_calibrator, display)


@pytest.fixture
def ready_timer(timer) -> GateTimer:
    assert timer.on_link_connected(0) == [CLIENT_READY]
    return timer


def start_timing(timer: GateTimer, t: int = 1000) -> int:
    assert timer.on_message(START_TIMER, t) == []
    assert timer.state == TimerState.TIMING
    return t


def fault_timer(timer: GateTimer, t: int = 1000):
    """Sensor fault on the last allowed invalid reading while timing."""
    start_timing(timer, t - 100)
    timer.ctx.consecutive_invalid = 9
    timer.step(t, NO_READING)
    assert timer.state == TimerState.FAULT


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:
    """Tests for link establishment."""

    def test_initial_state(self, timer):
        """Test that a new timer waits for the link and measures nothing."""
        assert timer.state == TimerState.AWAITING_LINK
        assert not timer.measuring

    def test_connect_calibrates_and_announces(self, timer, display):
        """Test that connecting calibrates and returns CLIENT_READY."""
        assert timer.on_link_connected(0) == [CLIENT_READY]
        assert timer.state == TimerState.READY
        assert not timer.measuring
        assert timer.ctx.gate.reference_distance == pytest.approx(100.0)
        assert display.current[0] == "Ready!"

    def test_calibration_fallback(self, failing_calibrator, display):
        """Test that a failed calibration falls back to 50 cm by default."""
        timer = GateTimer(failing_calibrator, display)
        assert timer.on_link_connected(0) == [CLIENT_READY]
        assert timer.ctx.gate.degraded
        assert timer.ctx.gate.reference_distance == 50.0
        assert any(screen[0] == "Sensor warning!" for screen in display.screens)

    def test_calibration_failure_without_fallback(self, failing_calibrator, display):
        """Test that without a fallback a failed calibration faults silently."""
        timer = GateTimer(failing_calibrator, display, TimerConfig(fallback_reference_cm=None))
        assert timer.on_link_connected(0) == []
        assert timer.state == TimerState.FAULT
        assert timer.ctx.fault_code == FaultCode.CALIBRATION_FAILURE

    def test_gate_reused_when_configured(self, sensor_config, display):
        """Test that recalibrate_on_connect=False keeps the existing gate."""
        source = ScriptedDistanceSource([100.0] * 15, default=None)
        timer = GateTimer(GateCalibrator(source.measure, sensor_config), display,
                          TimerConfig(recalibrate_on_connect=False))
        timer.on_link_connected(0)
        timer.on_link_lost(100)
        assert timer.on_link_connected(200) == [CLIENT_READY]
        assert not timer.ctx.gate.degraded
        assert source.calls == 15


# =============================================================================
# Timing
# =============================================================================


class TestTiming:
    """Tests for elapsed time measurement."""

    def test_start_timer_begins_timing(self, ready_timer):
        """Test that START_TIMER in READY starts the local clock."""
        start_timing(ready_timer, 1000)
        assert ready_timer.ctx.started_at_ms == 1000

    def test_arrival_reports_elapsed(self, ready_timer, display):
        """Test that arrival reports the elapsed time since START_TIMER."""
        start_timing(ready_timer, 1000)
        assert ready_timer.step(1500, EMPTY) == []
        assert ready_timer.step(1733, PRESENT) == [stop_timer(733)]
        assert ready_timer.state == TimerState.COOLDOWN
        assert ready_timer.ctx.last_elapsed_ms == 733
        assert display.current[:3] == ["RESULT:", "Time: 0.733s", "= 733ms"]

    def test_running_time_refresh(self, ready_timer, display):
        """Test that the running time is redrawn at most every 100 ms."""
        start_timing(ready_timer, 1000)
        shown = len(display.screens)
        ready_timer.step(1050, EMPTY)
        assert len(display.screens) == shown
        ready_timer.step(1100, EMPTY)
        assert len(display.screens) == shown + 1
        assert display.current[1] == "Time: 0.100s"

    def test_start_ignored_when_not_ready(self, ready_timer):
        """Test that a second START_TIMER while timing is out of sync."""
        start_timing(ready_timer, 1000)
        ready_timer.on_message(START_TIMER, 1200)
        assert ready_timer.ctx.started_at_ms == 1000
        assert get_metrics().snapshot().drop_reasons['out_of_sync'] == 1

    def test_start_ignored_before_link(self, timer):
        """Test that START_TIMER without a session is ignored."""
        timer.on_message(START_TIMER, 0)
        assert timer.state == TimerState.AWAITING_LINK

    def test_unexpected_command(self, ready_timer):
        """Test that a command the Controller never sends is counted."""
        ready_timer.on_message(CLIENT_READY, 0)
        assert ready_timer.state == TimerState.READY
        assert get_metrics().snapshot().drop_reasons['out_of_sync'] == 1


# =============================================================================
# Result Display
# =============================================================================


class TestResultDisplay:
    """Tests for REPORTING and COOLDOWN."""

    def test_reporting_moves_to_cooldown(self, ready_timer, caplog):
        """Test that the result send and the move to COOLDOWN share one tick."""
        start_timing(ready_timer, 1000)
        with caplog.at_level("INFO"):
            assert ready_timer.step(1733, PRESENT) == [stop_timer(733)]
        assert ready_timer.state == TimerState.COOLDOWN
        assert ready_timer.ctx.cooldown_started_ms == 1733
        assert not ready_timer.measuring
        assert "timing -> reporting" in caplog.text
        assert "reporting -> cooldown" in caplog.text

    def test_ready_after_display_duration(self, ready_timer, display):
        """Test that READY resumes 5 s after the result, without re-announcing."""
        start_timing(ready_timer, 1000)
        ready_timer.step(1733, PRESENT)
        ready_timer.step(1753, PRESENT)
        assert ready_timer.step(6732, EMPTY) == []
        assert ready_timer.state == TimerState.COOLDOWN
        assert ready_timer.step(6733, EMPTY) == []
        assert ready_timer.state == TimerState.READY
        assert display.current[2] == "Last time: 0.733s"

    def test_start_ignored_during_cooldown(self, ready_timer):
        """Test that START_TIMER during the display period is ignored."""
        start_timing(ready_timer, 1000)
        ready_timer.step(1733, PRESENT)
        ready_timer.step(1753, PRESENT)
        ready_timer.on_message(START_TIMER, 2000)
        assert ready_timer.state == TimerState.COOLDOWN


# =============================================================================
# Faults and Link Loss
# =============================================================================


class TestFaults:
    """Tests for sensor fault and recovery."""

    def test_sensor_fault_while_timing(self, ready_timer):
        """Test that the 10th consecutive invalid reading while timing faults the timer."""
        start_timing(ready_timer, 1000)
        for i in range(9):
            ready_timer.step(1020 + i * 20, NO_READING)
        assert ready_timer.state == TimerState.TIMING
        ready_timer.step(1200, NO_READING)
        assert ready_timer.state == TimerState.FAULT
        assert ready_timer.ctx.fault_code == FaultCode.SENSOR_FAULT

    def test_invalid_not_counted_while_ready(self, ready_timer):
        """Test that no echo at rest does not fault a READY timer."""
        for i in range(50):
            assert ready_timer.step(100 + i * 20, NO_READING) == []
        assert ready_timer.state == TimerState.READY
        assert ready_timer.ctx.consecutive_invalid == 0

    def test_degraded_timer_stays_ready(self, failing_calibrator, display):
        """Test that a fallback gate with no echo stays READY and accepts START_TIMER."""
        timer = GateTimer(failing_calibrator, display)
        assert timer.on_link_connected(0) == [CLIENT_READY]
        assert timer.ctx.gate.degraded
        for i in range(1, 300):
            assert timer.step(i * 20, NO_READING) == []
        assert timer.state == TimerState.READY
        assert get_metrics().get_counter('faults') == 0

        start_timing(timer, 6000)
        assert timer.ctx.consecutive_invalid == 0

    def test_invalid_count_restarts_with_timing(self, ready_timer):
        """Test that each timing run starts with a clean invalid-reading count."""
        ready_timer.ctx.consecutive_invalid = 9
        start_timing(ready_timer, 1000)
        ready_timer.step(1020, NO_READING)
        assert ready_timer.state == TimerState.TIMING

    def test_sensor_fault_discards_timing(self, ready_timer):
        """Test that a fault while timing discards the measurement."""
        start_timing(ready_timer, 1000)
        for i in range(10):
            assert ready_timer.step(1020 + i * 20, NO_READING) == []
        assert ready_timer.state == TimerState.FAULT
        assert ready_timer.ctx.started_at_ms is None

    def test_invalid_not_counted_when_idle(self, timer):
        """Test that readings are not judged while awaiting the link."""
        for i in range(20):
            timer.step(i * 20, NO_READING)
        assert timer.state == TimerState.AWAITING_LINK

    def test_recovery_announces_ready(self, ready_timer):
        """Test that recovery while linked returns CLIENT_READY."""
        fault_timer(ready_timer, 1000)
        assert ready_timer.step(5999, NO_READING) == []
        assert ready_timer.step(6000, NO_READING) == [CLIENT_READY]
        assert ready_timer.state == TimerState.READY

    def test_recovery_unlinked_awaits_link(self, ready_timer):
        """Test that recovery without a link waits for one."""
        fault_timer(ready_timer, 1000)
        ready_timer.ctx.linked = False
        assert ready_timer.step(6000, NO_READING) == []
        assert ready_timer.state == TimerState.AWAITING_LINK


class TestLinkLoss:
    """Tests for link loss handling."""

    def test_link_lost_discards_timing(self, ready_timer, display):
        """Test that link loss while timing reports nothing."""
        start_timing(ready_timer, 1000)
        assert ready_timer.on_link_lost(1500) == []
        assert ready_timer.state == TimerState.AWAITING_LINK
        assert ready_timer.ctx.started_at_ms is None
        assert display.current[0] == "Link lost!"

    def test_link_lost_then_arrival_reports_nothing(self, ready_timer):
        """Test that an arrival after link loss sends no result."""
        start_timing(ready_timer, 1000)
        ready_timer.on_link_lost(1500)
        assert ready_timer.step(1600, PRESENT) == []

    def test_link_lost_in_fault_requires_calibration(self, ready_timer):
        """Test that leaving FAULT through link loss forces recalibration."""
        fault_timer(ready_timer, 1000)
        ready_timer.on_link_lost(1100)
        assert ready_timer.state == TimerState.AWAITING_LINK
        assert ready_timer.ctx.needs_calibration

    def test_reconnect_resets_to_ready(self, ready_timer):
        """Test that reconnecting mid-timing starts from READY."""
        start_timing(ready_timer, 1000)
        ready_timer.on_link_lost(1500)
        assert ready_timer.on_link_connected(2000) == [CLIENT_READY]
        assert ready_timer.state == TimerState.READY
        assert ready_timer.ctx.started_at_ms is None
