"""
Run Report - per-parser counters for one timeline build.

Every parser owns one ``ParserStats``; the orchestrator collects them into a
``RunReport`` which is logged at the end of the run and rendered into the
HTML report.
"""

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ParserStats:
    """Counters for one parser job (one MFT, one event log, one prefetch file)"""
    name: str
    records_seen: int = 0
    events_emitted: int = 0
    skipped: Counter = field(default_factory=Counter)
    failure: Optional[str] = None
    capped: bool = False

    def skip(self, reason: str, count: int = 1):
        self.skipped[reason] += count

    @property
    def records_skipped(self) -> int:
        return sum(self.skipped.values())

    @property
    def failed(self) -> bool:
        return self.failure is not None

    def summary(self) -> str:
        """One-line summary used in the log"""
        parts = [f"{self.records_seen} seen", f"{self.events_emitted} events"]
        if self.skipped:
            reasons = ", ".join(f"{reason}={count}" for reason, count in sorted(self.skipped.items()))
            parts.append(f"skipped {self.records_skipped} ({reasons})")
        if self.capped:
            parts.append("stopped at processing cap")
        if self.failure:
            parts.append(f"FAILED: {self.failure}")
        return f"{self.name}: " + "; ".join(parts)


class RunReport:
    """Thread-safe collection of ParserStats plus run-level notes"""

    def __init__(self, image_path: str = ""):
        self.image_path = image_path
        self.container_kind = ""
        self.parsers: List[ParserStats] = []
        self.notes: List[str] = []
        self.total_events = 0
        self.elapsed_seconds = 0.0
        self._lock = threading.Lock()

    def register(self, stats: ParserStats) -> ParserStats:
        with self._lock:
            self.parsers.append(stats)
        return stats

    def note(self, message: str):
        with self._lock:
            self.notes.append(message)

    @property
    def failures(self) -> List[ParserStats]:
        return [p for p in self.parsers if p.failed]

    def events_by_parser(self) -> Dict[str, int]:
        return {p.name: p.events_emitted for p in self.parsers}

    def lines(self) -> List[str]:
        return [p.summary() for p in self.parsers] + list(self.notes)
