"""
Timeline Event Model

The single event shape every parser maps its records into. Event types and
source labels are closed enumerations; a parser cannot invent a new kind of
event without adding it here.

Author: Chronos Development
Version: 1.0
"""

from dataclasses import dataclass
from enum import Enum

from chronos.utils.time_utils import UtcTimestamp


class EventType(Enum):
    """What happened"""
    FILE_CREATED = "FileCreated"
    FILE_MODIFIED = "FileModified"
    FILE_ACCESSED = "FileAccessed"
    MFT_ENTRY_CHANGED = "MftEntryChanged"
    USER_LOGON = "UserLogon"
    SERVICE_INSTALLED = "ServiceInstalled"
    PROGRAM_EXECUTED = "ProgramExecuted"

    @property
    def label(self) -> str:
        """Human-readable label, e.g. 'File Created'"""
        return _EVENT_LABELS[self]


_EVENT_LABELS = {
    EventType.FILE_CREATED: "File Created",
    EventType.FILE_MODIFIED: "File Modified",
    EventType.FILE_ACCESSED: "File Accessed",
    EventType.MFT_ENTRY_CHANGED: "MFT Entry Changed",
    EventType.USER_LOGON: "User Logon",
    EventType.SERVICE_INSTALLED: "Service Installed",
    EventType.PROGRAM_EXECUTED: "Program Executed",
}


class SourceArtifact(Enum):
    """Where the event was read from"""
    MFT = "MFT"
    SECURITY_LOG = "Security log"
    SYSTEM_LOG = "System log"
    PREFETCH = "Prefetch"


@dataclass(frozen=True)
class TimelineEvent:
    """
    One immutable timeline entry.

    Attributes:
        timestamp: When it happened, in UTC with FILETIME precision
        event_type: What happened
        description: Human-readable sentence naming the file, user, service or program
        source: Artifact the event was read from
        source_ref: Pointer back to the originating record (e.g. 'MFT record 42')
    """
    timestamp: UtcTimestamp
    event_type: EventType
    description: str
    source: SourceArtifact
    source_ref: str = ""

    def __post_init__(self):
        if not isinstance(self.timestamp, UtcTimestamp):
            raise TypeError(f"timestamp must be a UtcTimestamp, got {type(self.timestamp).__name__}")
        if not isinstance(self.event_type, EventType):
            raise TypeError(f"event_type must be an EventType, got {type(self.event_type).__name__}")
        if not isinstance(self.source, SourceArtifact):
            raise TypeError(f"source must be a SourceArtifact, got {type(self.source).__name__}")
        if not isinstance(self.description, str):
            raise TypeError("description must be a string")

    def sort_key(self):
        """Timestamp, then source label, then description, then event type"""
        return (self.timestamp, self.source.value, self.description,
                self.event_type.value, self.source_ref)

    def to_dict(self) -> dict:
        """Column values of this event's row in the SQLite export"""
        return {
            'timestamp': self.timestamp.isoformat(),
            'filetime': self.timestamp.to_filetime(),
            'event_type': self.event_type.value,
            'description': self.description,
            'source': self.source.value,
            'source_ref': self.source_ref,
        }
