"""
Unit tests for distance sensing.

Tests cover:
- Raw sample classification against the sensor limits
- Median filter robustness to a minority of invalid readings
- Calibration: mean of valid readings, validity quorum, fallback
- Arrival threshold and departure hysteresis
"""

import pytest

from conftest import ScriptedDistanceSource
from gate_core.errors import CalibrationError
from gate_core.metrics import get_metrics
from gate_core.sensing import (
    NO_READING,
    CalibratedGate,
    GateCalibrator,
    Sample,
    SampleFilter,
    SensorConfig,
    is_valid_distance,
)


# =============================================================================
# Samples
# =============================================================================


class TestSample:
    """Tests for raw sample classification."""

    def test_valid_reading(self, sensor_config):
        """Test that an in-range reading is valid."""
        sample = Sample.from_raw(120.0, sensor_config)
        assert sample.valid
        assert sample.distance == 120.0

    @pytest.mark.parametrize("raw", [None, 0.0, -3.0])
    def test_no_echo(self, raw, sensor_config):
        """Test that a missing echo maps to the no-reading sentinel."""
        sample = Sample.from_raw(raw, sensor_config)
        assert not sample.valid
        assert sample.distance == NO_READING

    @pytest.mark.parametrize("raw", [1.5, 2.0, 400.0, 450.0])
    def test_out_of_range(self, raw, sensor_config):
        """Test that the valid interval is open at both ends."""
        assert not Sample.from_raw(raw, sensor_config).valid

    def test_sentinel_is_never_valid(self, sensor_config):
        """Test that NO_READING fails the validity check."""
        assert not is_valid_distance(NO_READING, sensor_config)

    def test_config_validation(self):
        """Test that inverted limits are rejected."""
        with pytest.raises(AssertionError):
            SensorConfig(min_valid_distance_cm=50.0, max_valid_distance_cm=10.0)


# =============================================================================
# Median Filter
# =============================================================================


class TestSampleFilter:
    """Tests for SampleFilter.filter."""

    def test_median_ignores_minority_invalid(self, sensor_config):
        """Test that two invalid readings out of five do not corrupt the median."""
        source = ScriptedDistanceSource([10.0, 12.0, 11.0, None, None])
        assert SampleFilter(source.measure, sensor_config).filter() == 12.0

    def test_majority_invalid_is_no_reading(self, sensor_config):
        """Test that a majority of invalid readings yields the sentinel."""
        source = ScriptedDistanceSource([None, None, None, 10.0, 11.0])
        assert SampleFilter(source.measure, sensor_config).filter() == NO_READING
        assert get_metrics().get_counter('no_reading') == 1

    def test_out_of_range_counts_as_invalid(self, sensor_config):
        """Test that readings beyond the sensor maximum are treated as invalid."""
        source = ScriptedDistanceSource([500.0, 1.0, 600.0, 30.0, 31.0])
        assert SampleFilter(source.measure, sensor_config).filter() == NO_READING

    def test_takes_configured_burst(self, sensor_config):
        """Test that one filtered reading consumes filter_samples raw readings."""
        source = ScriptedDistanceSource(default=80.0)
        sample_filter = SampleFilter(source.measure, sensor_config)
        assert sample_filter.filter() == 80.0
        assert source.calls == sensor_config.filter_samples

    def test_explicit_burst_size(self, sensor_config):
        """Test that n overrides the configured burst size."""
        source = ScriptedDistanceSource([30.0, 10.0, 20.0])
        assert SampleFilter(source.measure, sensor_config).filter(n=3) == 20.0

    def test_sleeps_between_samples(self):
        """Test that the inter-sample delay is applied per reading."""
        delays = []
        config = SensorConfig(inter_sample_delay_s=0.0005)
        source = ScriptedDistanceSource(default=80.0)
        SampleFilter(source.measure, config, sleep=delays.append).filter()
        assert delays == [0.0005] * config.filter_samples

    def test_records_metrics(self, sensor_config):
        """Test that valid results land in the distance histogram."""
        source = ScriptedDistanceSource(default=80.0)
        SampleFilter(source.measure, sensor_config).filter()
        metrics = get_metrics()
        assert metrics.get_counter('readings') == 1
        assert metrics.get_histogram_stats('filtered_distance_cm')['count'] == 1


# =============================================================================
# Calibration
# =============================================================================


class TestGateCalibrator:
    """Tests for GateCalibrator."""

    def test_reference_is_mean_of_valid(self, sensor_config):
        """Test that invalid readings are excluded from the mean."""
        readings = [100.0, None, 110.0, 0.0, 90.0] + [100.0] * 10
        calibrator = GateCalibrator(ScriptedDistanceSource(readings).measure, sensor_config)
        gate = calibrator.calibrate()
        assert gate.reference_distance == pytest.approx(100.0)
        assert gate.trigger_threshold == pytest.approx(50.0)
        assert gate.valid_samples == 13
        assert gate.sample_count == 15
        assert not gate.degraded

    def test_quorum_met(self, sensor_config):
        """Test that 7 of 15 valid readings are enough."""
        readings = [80.0] * 7 + [None] * 8
        gate = GateCalibrator(ScriptedDistanceSource(readings).measure, sensor_config).calibrate()
        assert gate.reference_distance == pytest.approx(80.0)

    def test_quorum_missed(self, sensor_config):
        """Test that 6 of 15 valid readings fail calibration."""
        readings = [80.0] * 6 + [None] * 9
        calibrator = GateCalibrator(ScriptedDistanceSource(readings).measure, sensor_config)
        with pytest.raises(CalibrationError) as excinfo:
            calibrator.calibrate()
        assert excinfo.value.valid_samples == 6
        assert excinfo.value.required_samples == 7
        assert get_metrics().get_counter('calibration_failures') == 1

    def test_single_sample_calibration(self, sensor_config):
        """Test that a one-reading calibration needs that reading valid."""
        gate = GateCalibrator(lambda: 60.0, sensor_config).calibrate(sample_count=1)
        assert gate.reference_distance == pytest.approx(60.0)
        with pytest.raises(CalibrationError):
            GateCalibrator(lambda: None, sensor_config).calibrate(sample_count=1)

    def test_delay_between_readings_only(self):
        """Test that no delay follows the last calibration reading."""
        delays = []
        config = SensorConfig(calibration_delay_s=0.1)
        GateCalibrator(lambda: 100.0, config, sleep=delays.append).calibrate(sample_count=4)
        assert delays == [0.1, 0.1, 0.1]

    def test_fallback_reference(self, failing_calibrator):
        """Test that a configured fallback yields a degraded gate."""
        gate = failing_calibrator.calibrate_or_fallback(50.0)
        assert gate.degraded
        assert gate.reference_distance == 50.0
        assert gate.trigger_threshold == 25.0

    def test_no_fallback_raises(self, failing_calibrator):
        """Test that calibration failure propagates without a fallback."""
        with pytest.raises(CalibrationError):
            failing_calibrator.calibrate_or_fallback(None)


# =============================================================================
# Thresholds
# =============================================================================


class TestCalibratedGate:
    """Tests for arrival/departure thresholds."""

    def test_threshold_invariant(self):
        """Test that a threshold other than half the reference is rejected."""
        with pytest.raises(ValueError):
            CalibratedGate(reference_distance=100.0, trigger_threshold=40.0)

    def test_arrival_at_threshold(self, sensor_config):
        """Test that arrival includes the threshold itself."""
        gate = CalibratedGate.from_reference(100.0)
        assert gate.is_arrival(50.0, sensor_config)
        assert gate.is_arrival(30.0, sensor_config)
        assert not gate.is_arrival(50.1, sensor_config)

    def test_arrival_needs_valid_reading(self, sensor_config):
        """Test that the no-reading sentinel is never an arrival."""
        gate = CalibratedGate.from_reference(100.0)
        assert not gate.is_arrival(NO_READING, sensor_config)
        assert not gate.is_arrival(1.0, sensor_config)

    def test_departure_hysteresis(self, sensor_config):
        """Test that departure needs a reading above threshold * 1.15."""
        gate = CalibratedGate.from_reference(100.0)
        assert gate.hysteresis_bound(1.15) == pytest.approx(57.5)
        assert not gate.is_departure(55.0, sensor_config, 1.15)
        assert gate.is_departure(58.0, sensor_config, 1.15)

    def test_departure_needs_valid_reading(self, sensor_config):
        """Test that an out-of-range reading is not a departure."""
        gate = CalibratedGate.from_reference(100.0)
        assert not gate.is_departure(NO_READING, sensor_config, 1.15)
        assert not gate.is_departure(450.0, sensor_config, 1.15)
