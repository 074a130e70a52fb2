"""
Timeline Aggregator - Merges events from every parser into one ordered timeline.

Parsers run concurrently and each pushes its events through ``add``. Once all
of them have finished, ``finalize`` sorts the collected events once and
returns an immutable tuple that renderers consume as-is.

The aggregator also groups finalized events into time buckets (counts per
source artifact) for the activity summary of the report.

Author: Chronos Development
Version: 1.0
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from chronos.timeline.data.timeline_event import TimelineEvent

# Configure logger
logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Time bucket sizes in seconds
BUCKET_SIZES = {
    'minute': 60,
    'hour': 3600,
    'day': 86400,
    'week': 604800,
}


class TimelineAggregator:
    """
    Thread-safe collector and sorter of timeline events.

    Ordering is total and deterministic: timestamp, then source label, then
    description, then event type. Events are never deduplicated; the same
    instant reported by two artifacts stays two entries.
    """

    def __init__(self):
        """Initialize an empty aggregator."""
        self._events: List[TimelineEvent] = []
        self._lock = threading.Lock()
        self._finalized: Optional[Tuple[TimelineEvent, ...]] = None

    def add(self, event: TimelineEvent):
        """
        Add one event. Safe to call from any thread.

        Raises:
            TypeError: If ``event`` is not a TimelineEvent
        """
        if not isinstance(event, TimelineEvent):
            raise TypeError(f"Expected TimelineEvent, got {type(event).__name__}")
        with self._lock:
            self._events.append(event)
            self._finalized = None

    def extend(self, events: Iterable[TimelineEvent]):
        for event in events:
            self.add(event)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def finalize(self) -> Tuple[TimelineEvent, ...]:
        """
        Return all events in timeline order.

        The sorted tuple is cached and returned unchanged by later calls until
        another event is added.
        """
        with self._lock:
            if self._finalized is None:
                self._finalized = tuple(sorted(self._events, key=TimelineEvent.sort_key))
                logger.debug(f"Finalized timeline with {len(self._finalized)} events")
            return self._finalized

    def aggregate_events(self, bucket_size: str = 'day') -> List[Dict]:
        """Bucket the finalized timeline; see ``bucket_events``"""
        return bucket_events(self.finalize(), bucket_size)


def bucket_events(events: Sequence[TimelineEvent], bucket_size: str = 'day') -> List[Dict]:
    """
    Group time-ordered events into time buckets with counts by source.

    Args:
        events: Finalized timeline
        bucket_size: One of BUCKET_SIZES ('minute', 'hour', 'day', 'week')

    Returns:
        List[Dict]: One dictionary per non-empty bucket, in time order:
            {
                'time_bucket': datetime,  # Start of time bucket (UTC)
                'bucket_size': str,       # Bucket size name
                'counts_by_source': dict, # {source label: count}
                'total_count': int        # Total events in bucket
            }
    """
    if not events:
        return []

    if bucket_size not in BUCKET_SIZES:
        logger.warning(f"Invalid bucket size '{bucket_size}', defaulting to 'day'")
        bucket_size = 'day'
    bucket_seconds = BUCKET_SIZES[bucket_size]

    buckets = defaultdict(lambda: defaultdict(int))
    for event in events:
        bucket_time = _round_to_bucket(event.timestamp.datetime, bucket_seconds)
        buckets[bucket_time][event.source.value] += 1

    aggregated = []
    for bucket_time in sorted(buckets):
        counts = dict(buckets[bucket_time])
        aggregated.append({
            'time_bucket': bucket_time,
            'bucket_size': bucket_size,
            'counts_by_source': counts,
            'total_count': sum(counts.values()),
        })

    logger.debug(f"Aggregated {len(events)} events into {len(aggregated)} buckets (size: {bucket_size})")
    return aggregated


def _round_to_bucket(timestamp: datetime, bucket_seconds: int) -> datetime:
    """Round a UTC timestamp down to its bucket boundary"""
    elapsed = (timestamp - _EPOCH) // timedelta(seconds=1)
    bucket_start = (elapsed // bucket_seconds) * bucket_seconds
    return _EPOCH + timedelta(seconds=bucket_start)
