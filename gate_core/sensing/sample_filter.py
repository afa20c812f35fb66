"""
Median Sample Filter for Ultrasonic Distance Readings.

Turns a short burst of raw echo readings into one robust distance
estimate. Invalid readings are pushed to the high end of the ordering so
that a minority of missing or spurious echoes cannot corrupt the median.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from gate_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Filter result meaning "no reliable reading"
NO_READING = -1.0


@dataclass
class SensorConfig:
    """
    Configuration for distance sensing.
    
    Attributes:
        min_valid_distance_cm: Sensor physical minimum (exclusive)
        max_valid_distance_cm: Sensor physical maximum (exclusive)
        filter_samples: Raw readings per filtered estimate (small, odd)
        inter_sample_delay_s: Pause between raw readings (echo cross-talk)
        echo_timeout_s: Maximum blocking time of one raw reading
        reference_samples: Readings taken per calibration run
        calibration_delay_s: Pause between calibration readings
    """
    
    min_valid_distance_cm: float = 2.0     # HC-SR04 minimum
    max_valid_distance_cm: float = 400.0   # HC-SR04 maximum
    filter_samples: int = 5
    inter_sample_delay_s: float = 0.0005
    echo_timeout_s: float = 0.030          # ~5m round trip
    reference_samples: int = 15
    calibration_delay_s: float = 0.100
    
    def __post_init__(self):
        """Validate configuration."""
        assert self.min_valid_distance_cm >= 0, "min distance must be non-negative"
        assert self.max_valid_distance_cm > self.min_valid_distance_cm, \
            "max distance must be greater than min distance"
        assert self.filter_samples >= 1, "filter needs at least one sample"
        assert self.reference_samples >= 1, "calibration needs at least one sample"
        assert self.inter_sample_delay_s >= 0, "delay must be non-negative"
        assert self.calibration_delay_s >= 0, "delay must be non-negative"


def is_valid_distance(distance_cm: float, config: SensorConfig) -> bool:
    """Check a distance against the sensor's open valid interval."""
    return config.min_valid_distance_cm < distance_cm < config.max_valid_distance_cm


@dataclass(frozen=True)
class Sample:
    """One raw distance measurement."""
    
    distance: float
    valid: bool
    
    @classmethod
    def from_raw(cls, distance_cm: Optional[float], config: SensorConfig) -> "Sample":
        """
        Classify a raw reading.
        
        Args:
            distance_cm: Reading in cm; None or non-positive means no echo
            config: Sensor limits
        """
        if distance_cm is None or distance_cm <= 0:
            return cls(distance=NO_READING, valid=False)
        return cls(distance=float(distance_cm), valid=is_valid_distance(distance_cm, config))


class SampleFilter:
    """
    Median filter over a burst of raw readings.
    
    Usage:
        sample_filter = SampleFilter(sensor.measure, SensorConfig())
        
        distance = sample_filter.filter()
        if distance == NO_READING:
            # Majority of the burst had no usable echo
            ...
    
    Each call blocks for at most
    filter_samples * (echo_timeout_s + inter_sample_delay_s).
    """
    
    def __init__(
        self,
        measure: Callable[[], Optional[float]],
        config: Optional[SensorConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize sample filter.
        
        Args:
            measure: Raw distance read (DistanceSource.measure)
            config: Sensor configuration (uses defaults if None)
            sleep: Delay function, injectable for tests
        """
        self.measure = measure
        self.config = config or SensorConfig()
        self.sleep = sleep
        self.metrics = get_metrics()
    
    def read_sample(self) -> Sample:
        """Take and classify one raw reading."""
        return Sample.from_raw(self.measure(), self.config)
    
    def filter(self, n: Optional[int] = None) -> float:
        """
        Take n raw readings and return their median.
        
        Args:
            n: Burst size (defaults to config.filter_samples)
            
        Returns:
            Median distance in cm, or NO_READING if the median itself is
            one of the invalid readings
        """
        n = n or self.config.filter_samples
        invalid_value = self.config.max_valid_distance_cm + 1.0
        
        readings = np.empty(n, dtype=float)
        for i in range(n):
            sample = self.read_sample()
            readings[i] = sample.distance if sample.valid else invalid_value
            if self.config.inter_sample_delay_s > 0:
                self.sleep(self.config.inter_sample_delay_s)
        
        median = float(np.sort(readings)[n // 2])
        
        self.metrics.increment('readings')
        if median > self.config.max_valid_distance_cm:
            self.metrics.increment('no_reading')
            return NO_READING
        
        self.metrics.record_histogram('filtered_distance_cm', median, max_samples=2000)
        return median
