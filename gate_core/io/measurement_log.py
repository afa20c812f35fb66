"""
Measurement recording for completed timing cycles.

MeasurementRecorder feeds the timing statistics, the metrics histogram
and an append-only CSV log:

    timestamp_ms,elapsed_ms,link_status,reference_distance

Log rotation is left to external storage management.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from gate_core.metrics import TimingStatistics, get_metrics

logger = logging.getLogger(__name__)

LINK_OK = "OK"
LINK_NO_CLIENT = "NO_CLIENT"


@dataclass(frozen=True)
class MeasurementRecord:
    """One completed timing cycle as seen by the Controller."""
    
    timestamp_ms: int
    elapsed_ms: int
    link_status: str
    reference_distance: float
    
    def to_csv_line(self) -> str:
        return (f"{self.timestamp_ms},{self.elapsed_ms},"
                f"{self.link_status},{self.reference_distance:.2f}\n")


class MeasurementLog:
    """Append-only CSV file of measurement records."""
    
    def __init__(self, filepath: Union[str, Path]):
        self.path = Path(filepath)
        if self.path.parent:
            self.path.parent.mkdir(parents=True, exist_ok=True)
    
    def append(self, record: MeasurementRecord) -> bool:
        """Write one record; storage errors are logged, never raised."""
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(record.to_csv_line())
        except OSError as e:
            logger.error(f"Could not write measurement log {self.path}: {e}")
            return False
        logger.debug(f"Measurement logged to {self.path}")
        return True


class MeasurementRecorder:
    """Statistics and log sink for completed cycles."""
    
    def __init__(self, statistics: Optional[TimingStatistics] = None,
                 log: Optional[MeasurementLog] = None):
        self.statistics = statistics or TimingStatistics()
        self.log = log
        self.metrics = get_metrics()
    
    def record(self, record: MeasurementRecord):
        self.statistics.add_measurement(record.elapsed_ms)
        self.metrics.increment('timing_cycles_completed')
        self.metrics.record_histogram('elapsed_ms', record.elapsed_ms)
        if self.log is not None:
            self.log.append(record)
        logger.info(f"Measured {record.elapsed_ms}ms - statistics {self.statistics.to_dict()}")
