"""
Timing statistics sink.

Aggregates completed timing cycles on the Controller node: total count,
successful count and min/max/running-average elapsed time in seconds.
"""

import math
from dataclasses import dataclass


@dataclass
class TimingStatistics:
    """
    Running statistics over reported elapsed times.
    
    Attributes:
        total_measurements: Every reported result, including zero durations
        successful_measurements: Results with a positive elapsed time
        min_time_s: Fastest successful time (inf until the first success)
        max_time_s: Slowest successful time
        avg_time_s: Running mean of successful times
    """
    
    total_measurements: int = 0
    successful_measurements: int = 0
    min_time_s: float = math.inf
    max_time_s: float = 0.0
    avg_time_s: float = 0.0
    
    def add_measurement(self, elapsed_ms: int):
        """Fold one reported result into the aggregates."""
        self.total_measurements += 1
        if elapsed_ms <= 0:
            return
        
        time_s = elapsed_ms / 1000.0
        self.successful_measurements += 1
        self.min_time_s = min(self.min_time_s, time_s)
        self.max_time_s = max(self.max_time_s, time_s)
        n = self.successful_measurements
        self.avg_time_s = (self.avg_time_s * (n - 1) + time_s) / n
    
    @property
    def success_rate(self) -> float:
        """Fraction of reported results with a positive duration."""
        if self.total_measurements == 0:
            return 0.0
        return self.successful_measurements / self.total_measurements
    
    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            'total': self.total_measurements,
            'success': self.successful_measurements,
            'min': self.min_time_s if self.successful_measurements else None,
            'max': self.max_time_s,
            'avg': self.avg_time_s,
        }
