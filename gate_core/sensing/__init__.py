"""
Sensing Module: Distance sample filtering and gate calibration.

Key classes:
- SampleFilter: Median of a burst of raw echo readings
- GateCalibrator: Reference distance and trigger threshold at rest
- CalibratedGate: Immutable calibration result with hysteresis helpers
"""

from .sample_filter import (
    NO_READING,
    SensorConfig,
    Sample,
    SampleFilter,
    is_valid_distance,
)
from .calibrator import (
    CalibratedGate,
    GateCalibrator,
)

__all__ = [
    'NO_READING',
    'SensorConfig',
    'Sample',
    'SampleFilter',
    'is_valid_distance',
    'CalibratedGate',
    'GateCalibrator',
]
