"""
Memory Monitor for Chronos
Tracks process memory across the stages of a timeline build so that large
images can be seen not to be loaded wholesale.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

import psutil


@dataclass
class MemorySnapshot:
    """Snapshot of memory usage at a point in time."""
    stage: str
    timestamp: datetime
    available_mb: float
    percent_used: float
    process_mb: float


class MemoryMonitor:
    """
    Records process memory after each pipeline stage.
    """

    # Memory thresholds
    WARNING_THRESHOLD = 80.0  # Warn at 80% memory usage
    CRITICAL_THRESHOLD = 90.0  # Critical at 90% memory usage

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.process = psutil.Process()
        self.snapshots: List[MemorySnapshot] = []

    def snapshot(self, stage: str) -> MemorySnapshot:
        """
        Take and log a memory snapshot labelled with the finished stage.

        Args:
            stage: Short label such as 'volume opened' or 'mft parsed'

        Returns:
            MemorySnapshot with current memory statistics
        """
        mem = psutil.virtual_memory()
        process_mem = self.process.memory_info()

        snap = MemorySnapshot(
            stage=stage,
            timestamp=datetime.now(),
            available_mb=mem.available / (1024 * 1024),
            percent_used=mem.percent,
            process_mb=process_mem.rss / (1024 * 1024)
        )
        self.snapshots.append(snap)

        self.logger.debug(f"Memory after {stage}: process {snap.process_mb:.1f} MB, "
                          f"system {snap.percent_used:.1f}% used")
        self._check_thresholds(snap)
        return snap

    def _check_thresholds(self, snap: MemorySnapshot) -> None:
        if snap.percent_used >= self.CRITICAL_THRESHOLD:
            self.logger.critical(
                f"CRITICAL: Memory usage at {snap.percent_used:.1f}% "
                f"({snap.available_mb:.0f} MB available) after {snap.stage}"
            )
        elif snap.percent_used >= self.WARNING_THRESHOLD:
            self.logger.warning(
                f"WARNING: Memory usage at {snap.percent_used:.1f}% after {snap.stage}. "
                f"Performance may be affected."
            )

    def peak_process_mb(self) -> float:
        if not self.snapshots:
            return 0.0
        return max(s.process_mb for s in self.snapshots)

    def get_memory_stats(self) -> Dict[str, Any]:
        """
        Summarise the snapshots taken so far.

        Returns:
            Dictionary with per-stage process memory and the peak
        """
        return {
            'stages': [(s.stage, round(s.process_mb, 1)) for s in self.snapshots],
            'peak_process_mb': round(self.peak_process_mb(), 1),
        }
