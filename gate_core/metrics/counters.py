"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Sensor readings (filtered, no reading, sensor faults)
- Protocol traffic (messages in/out, parse errors)
- Link liveness (connects, losses, heartbeat timeouts)
- Drop reasons (every discarded input carries a reason code)
- Histograms (elapsed time, filtered distance)
"""

import logging
import threading
import time
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)


@dataclass
class CounterSnapshot:
    """Snapshot of counter state at a point in time."""
    
    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]
    
    def total_dropped(self) -> int:
        """Total inputs dropped across all reasons."""
        return sum(self.drop_reasons.values())
    
    def drop_rate(self, total_inputs: int) -> float:
        """Calculate drop rate as percentage."""
        if total_inputs == 0:
            return 0.0
        return (self.total_dropped() / total_inputs) * 100.0


class MetricsCollector:
    """
    Thread-safe metrics collection.
    
    Usage:
        collector = MetricsCollector()
        collector.increment('messages_in')
        collector.increment_drop('unknown_command')
        collector.record_histogram('elapsed_ms', 733)
        
        snapshot = collector.snapshot()
        print(f"Total dropped: {snapshot.total_dropped()}")
    """
    
    # Standard drop reason codes
    DROP_REASONS = {
        'parse_error': 'Malformed command payload',
        'unknown_command': 'Line matches no known command',
        'line_too_long': 'Line exceeded buffer limit without newline',
        'out_of_sync': 'Command not valid in current state',
        'arrival_while_timing': 'Arrival ignored, timing cycle already open',
        'send_failed': 'Outgoing message could not be written',
    }
    
    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()
        
        self._init_standard_counters()
    
    def _init_standard_counters(self):
        """Initialize standard counter keys."""
        standard_counters = [
            'readings',
            'no_reading',
            'messages_in',
            'messages_out',
            'parse_errors',
            'link_connects',
            'link_losses',
            'heartbeat_timeouts',
            'calibrations',
            'calibration_failures',
            'faults',
            'timing_cycles_completed',
        ]
        
        with self._lock:
            for counter in standard_counters:
                if counter not in self._counters:
                    self._counters[counter] = 0
            
            for reason in self.DROP_REASONS:
                if reason not in self._drop_reasons:
                    self._drop_reasons[reason] = 0
    
    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.
        
        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value
    
    def increment_drop(self, reason: str, value: int = 1):
        """
        Increment drop counter for specific reason.
        
        Args:
            reason: Drop reason code (should be in DROP_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.DROP_REASONS:
            # Unknown reasons are still counted
            logger.warning(f"Unknown drop reason '{reason}'")
        
        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['inputs_dropped'] += value
    
    def get_counter(self, counter_name: str) -> int:
        """
        Get current value of a counter.
        
        Args:
            counter_name: Name of counter
            
        Returns:
            Current counter value
        """
        with self._lock:
            return self._counters.get(counter_name, 0)
    
    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.
        
        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Maximum samples to keep (prevents unbounded growth)
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)
            
            if len(samples) > max_samples:
                # Keep most recent half
                self._histograms[histogram_name] = samples[-max_samples//2:]
    
    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Get statistics for a histogram.
        
        Args:
            histogram_name: Name of histogram
            
        Returns:
            Dict with min, max, mean, median, p95, count
            None if histogram is empty
        """
        with self._lock:
            samples = self._histograms.get(histogram_name, [])
            
            if not samples:
                return None
            
            sorted_samples = sorted(samples)
            count = len(sorted_samples)
            
            return {
                'count': count,
                'min': sorted_samples[0],
                'max': sorted_samples[-1],
                'mean': statistics.mean(sorted_samples),
                'median': statistics.median(sorted_samples),
                'p95': sorted_samples[int(count * 0.95)] if count > 1 else sorted_samples[0],
            }
    
    def snapshot(self) -> CounterSnapshot:
        """Get a snapshot of current metrics state."""
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )
    
    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.time()
        self._init_standard_counters()
    
    def get_uptime(self) -> float:
        """Get uptime in seconds since initialization."""
        return time.time() - self._start_time
    
    def log_summary(self):
        """Log a human-readable metrics summary."""
        snapshot = self.snapshot()
        lines = [f"METRICS SUMMARY (uptime: {self.get_uptime():.1f}s)"]
        
        for name, value in sorted(snapshot.counters.items()):
            lines.append(f"  {name:28s}: {value:8d}")
        
        total_dropped = snapshot.total_dropped()
        if total_dropped > 0:
            lines.append("DROP REASONS:")
            for reason, count in sorted(snapshot.drop_reasons.items()):
                if count > 0:
                    pct = (count / total_dropped) * 100
                    lines.append(f"  {reason:28s}: {count:8d} ({pct:5.1f}%)")
        
        for name in sorted(snapshot.histograms.keys()):
            stats = self.get_histogram_stats(name)
            if stats:
                lines.append(f"  {name}: count={stats['count']}, mean={stats['mean']:.1f}, "
                             f"min={stats['min']:.1f}, max={stats['max']:.1f}")
        
        logger.info("\n".join(lines))
