"""
Database Manager for the timeline SQLite export.

Persists a finalized timeline and its run report into a SQLite database so
that it can be queried outside the HTML report. Each export replaces the
tables it owns; row ids follow timeline order.
"""

import json
import logging
import os
import sqlite3
from typing import Dict, Iterable, List, Optional

from chronos.timeline.data.run_report import RunReport
from chronos.timeline.data.timeline_event import TimelineEvent
from chronos.utils.error_handler import IoError

logger = logging.getLogger(__name__)

EVENTS_TABLE = 'timeline_events'
REPORT_TABLE = 'run_report'

SCHEMA = f"""
    DROP TABLE IF EXISTS {EVENTS_TABLE};
    DROP TABLE IF EXISTS {REPORT_TABLE};

    CREATE TABLE {EVENTS_TABLE} (
        id INTEGER PRIMARY KEY,
        timestamp TEXT NOT NULL,
        filetime INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        description TEXT NOT NULL,
        source TEXT NOT NULL,
        source_ref TEXT
    );
    CREATE INDEX idx_{EVENTS_TABLE}_filetime ON {EVENTS_TABLE} (filetime);
    CREATE INDEX idx_{EVENTS_TABLE}_source ON {EVENTS_TABLE} (source);

    CREATE TABLE {REPORT_TABLE} (
        parser TEXT PRIMARY KEY,
        records_seen INTEGER,
        events_emitted INTEGER,
        records_skipped INTEGER,
        skipped_reasons JSON,
        capped INTEGER,
        failure TEXT
    );
"""


class TimelineDatabase:
    """
    SQLite export of one timeline.

    Use as a context manager; the connection is committed on success and
    closed on every exit path.
    """

    BATCH_SIZE = 5000

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        if self.conn is None:
            directory = os.path.dirname(os.path.abspath(self.db_path))
            try:
                os.makedirs(directory, exist_ok=True)
                self.conn = sqlite3.connect(self.db_path)
                self.conn.execute("PRAGMA journal_mode=WAL")
                self.conn.executescript(SCHEMA)
            except (OSError, sqlite3.DatabaseError) as e:
                self.close()
                raise IoError(f"Cannot open database {self.db_path}: {e}")
        return self.conn

    def write_events(self, events: Iterable[TimelineEvent]) -> int:
        """
        Insert events in the order given.

        Returns:
            int: Number of rows written
        """
        conn = self.connect()
        written = 0
        batch: List[Dict] = []
        try:
            for event in events:
                batch.append(event.to_dict())
                if len(batch) >= self.BATCH_SIZE:
                    written += self._insert_events(conn, batch)
                    batch = []
            if batch:
                written += self._insert_events(conn, batch)
        except sqlite3.DatabaseError as e:
            raise IoError(f"Cannot write events to {self.db_path}: {e}")

        logger.debug(f"Wrote {written:,} events to {self.db_path}")
        return written

    @staticmethod
    def _insert_events(conn: sqlite3.Connection, batch: List[Dict]) -> int:
        conn.executemany(f"""
            INSERT INTO {EVENTS_TABLE} (timestamp, filetime, event_type, description, source, source_ref)
            VALUES (:timestamp, :filetime, :event_type, :description, :source, :source_ref)
        """, batch)
        return len(batch)

    def write_report(self, report: RunReport):
        conn = self.connect()
        rows = [
            (p.name, p.records_seen, p.events_emitted, p.records_skipped,
             json.dumps(dict(sorted(p.skipped.items()))), int(p.capped), p.failure)
            for p in report.parsers
        ]
        try:
            conn.executemany(f"""
                INSERT OR REPLACE INTO {REPORT_TABLE} (
                    parser, records_seen, events_emitted, records_skipped,
                    skipped_reasons, capped, failure
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, rows)
        except sqlite3.DatabaseError as e:
            raise IoError(f"Cannot write run report to {self.db_path}: {e}")

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> 'TimelineDatabase':
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None and self.conn is not None:
                self.conn.commit()
        finally:
            self.close()
        return False


def export_timeline(events: Iterable[TimelineEvent], report: RunReport, db_path: str) -> int:
    """
    Write a timeline and its run report to ``db_path``.

    Returns:
        int: Number of events written

    Raises:
        IoError: If the database cannot be created or written
    """
    with TimelineDatabase(db_path) as db:
        written = db.write_events(events)
        db.write_report(report)
    logger.info(f"Timeline exported to {db_path} ({written:,} events)")
    return written
