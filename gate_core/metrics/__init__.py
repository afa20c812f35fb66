"""
Metrics Module: Diagnostics, counters, histograms, timing statistics.

Every dropped input logs a reason code; there are no silent failures.

Usage:
    from gate_core.metrics import get_metrics
    
    metrics = get_metrics()
    metrics.increment('messages_in')
    metrics.increment_drop('unknown_command')
    metrics.record_histogram('elapsed_ms', 733)
"""

from .counters import MetricsCollector, CounterSnapshot
from .timing_stats import TimingStatistics

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.
    
    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    get_metrics().reset()


__all__ = [
    'MetricsCollector',
    'CounterSnapshot',
    'TimingStatistics',
    'get_metrics',
    'reset_metrics',
]
