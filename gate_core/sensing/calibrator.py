"""
Gate Calibration.

Measures the empty gate at rest to establish a reference distance, from
which the arrival trigger threshold (half the reference) and the
departure hysteresis bound are derived.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from gate_core.errors import CalibrationError
from gate_core.metrics import get_metrics
from .sample_filter import SensorConfig, is_valid_distance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibratedGate:
    """
    Calibration result for one gate.
    
    Attributes:
        reference_distance: Mean distance to the nearest obstruction, gate empty (cm)
        trigger_threshold: Arrival threshold, always reference_distance / 2 (cm)
        valid_samples: Readings that contributed to the mean
        sample_count: Readings attempted
        degraded: True if the reference is a configured fallback, not a measurement
    """
    
    reference_distance: float
    trigger_threshold: float
    valid_samples: int = 0
    sample_count: int = 0
    degraded: bool = False
    
    def __post_init__(self):
        """Validate the threshold invariant."""
        if self.reference_distance < 0:
            raise ValueError(f"Reference distance cannot be negative: {self.reference_distance}")
        if not np.isclose(self.trigger_threshold, self.reference_distance / 2.0):
            raise ValueError(
                f"Trigger threshold {self.trigger_threshold} must be half of "
                f"reference {self.reference_distance}"
            )
    
    @classmethod
    def from_reference(cls, reference_distance: float, valid_samples: int = 0,
                       sample_count: int = 0, degraded: bool = False) -> "CalibratedGate":
        """Build a gate from its reference distance."""
        reference_distance = float(reference_distance)
        return cls(
            reference_distance=reference_distance,
            trigger_threshold=reference_distance / 2.0,
            valid_samples=valid_samples,
            sample_count=sample_count,
            degraded=degraded,
        )
    
    def hysteresis_bound(self, factor: float) -> float:
        """
        Departure threshold: trigger threshold inflated by factor (> 1).
        
        Used only to confirm departure, never arrival.
        """
        return self.trigger_threshold * factor
    
    def is_arrival(self, distance: float, config: SensorConfig) -> bool:
        """Valid reading at or inside the trigger threshold."""
        return is_valid_distance(distance, config) and distance <= self.trigger_threshold
    
    def is_departure(self, distance: float, config: SensorConfig, factor: float) -> bool:
        """Valid reading strictly beyond the hysteresis bound."""
        return is_valid_distance(distance, config) and distance > self.hysteresis_bound(factor)


class GateCalibrator:
    """
    Establish a CalibratedGate from readings taken at rest.
    
    The reading function may be a raw DistanceSource.measure or a
    SampleFilter.filter; both are used in practice.
    
    Usage:
        calibrator = GateCalibrator(sample_filter.filter, SensorConfig())
        
        try:
            gate = calibrator.calibrate()
        except CalibrationError as e:
            gate = None  # caller decides: fallback or Fault
    """
    
    def __init__(
        self,
        read_distance: Callable[[], Optional[float]],
        config: Optional[SensorConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize calibrator.
        
        Args:
            read_distance: Source of distance readings in cm
            config: Sensor configuration (uses defaults if None)
            sleep: Delay function, injectable for tests
        """
        self.read_distance = read_distance
        self.config = config or SensorConfig()
        self.sleep = sleep
        self.metrics = get_metrics()
    
    def calibrate(self, sample_count: Optional[int] = None) -> CalibratedGate:
        """
        Take sample_count readings and average the valid ones.
        
        Args:
            sample_count: Readings to take (defaults to config.reference_samples)
            
        Returns:
            CalibratedGate with reference = mean of the valid subset
            
        Raises:
            CalibrationError: Fewer than sample_count // 2 valid readings
        """
        sample_count = sample_count or self.config.reference_samples
        required = max(1, sample_count // 2)
        
        valid = []
        for i in range(sample_count):
            distance = self.read_distance()
            if distance is not None and is_valid_distance(distance, self.config):
                valid.append(distance)
            if self.config.calibration_delay_s > 0 and i < sample_count - 1:
                self.sleep(self.config.calibration_delay_s)
        
        self.metrics.increment('calibrations')
        
        if len(valid) < required:
            self.metrics.increment('calibration_failures')
            error = CalibrationError(len(valid), required, sample_count)
            logger.warning(str(error))
            raise error
        
        reference = float(np.mean(valid))
        gate = CalibratedGate.from_reference(
            reference, valid_samples=len(valid), sample_count=sample_count
        )
        logger.info(
            f"Reference distance: {gate.reference_distance:.1f}cm "
            f"({len(valid)}/{sample_count} samples), trigger: {gate.trigger_threshold:.1f}cm"
        )
        return gate
    
    def calibrate_or_fallback(self, fallback_reference: Optional[float]) -> CalibratedGate:
        """
        Calibrate, substituting a fixed reference on failure.
        
        Args:
            fallback_reference: Degraded-mode reference in cm; None means no fallback
            
        Returns:
            Measured gate, or a gate flagged degraded built from the fallback
            
        Raises:
            CalibrationError: Calibration failed and no fallback is configured
        """
        try:
            return self.calibrate()
        except CalibrationError:
            if fallback_reference is None:
                raise
            logger.warning(
                f"Calibration failed, using fallback reference {fallback_reference:.1f}cm (degraded)"
            )
            return CalibratedGate.from_reference(
                fallback_reference,
                sample_count=self.config.reference_samples,
                degraded=True,
            )
