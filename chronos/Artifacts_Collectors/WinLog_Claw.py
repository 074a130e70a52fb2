"""
WinLog Claw - EVTX event log parser for Chronos

Reads Windows XML event log files (.evtx) directly from their bytes, without
the Windows event log API, and maps the records the timeline cares about to
timeline events:

- 4624 (Security): an account successfully logged on
- 7045 (System): a service was installed

File layout: a 4096-byte file header block followed by 64 KiB chunks, each
holding event records from offset 512 up to the chunk's free space offset.
Chunks and record framing are walked here so damaged records can be skipped
and resynchronised; each intact record's binary XML is rendered by
python-evtx.

Author: Chronos Development
Version: 1.0
"""

import logging
import struct
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from Evtx.BinaryParser import ParseException
from Evtx.Evtx import ChunkHeader, Record
from Evtx.Views import UnexpectedElementException
from tqdm import tqdm

from chronos.data.volume_reader import ByteRange
from chronos.timeline.data.run_report import ParserStats
from chronos.timeline.data.timeline_event import EventType, SourceArtifact, TimelineEvent
from chronos.utils.error_handler import FormatError, RecordError
from chronos.utils.time_utils import UtcTimestamp, filetime_to_utc

# Configure module-level logger
logger = logging.getLogger(__name__)

FILE_SIGNATURE = b'ElfFile\x00'
CHUNK_SIGNATURE = b'ElfChnk\x00'
RECORD_SIGNATURE = b'**\x00\x00'

FILE_HEADER_SIZE = 128
CHUNK_SIZE = 65536
CHUNK_HEADER_SIZE = 512
RECORD_HEADER_SIZE = 24
MIN_RECORD_SIZE = RECORD_HEADER_SIZE + 4

EVENT_LOGON = 4624
EVENT_SERVICE_INSTALLED = 7045
RECOGNISED_EVENT_IDS = (EVENT_LOGON, EVENT_SERVICE_INSTALLED)

LOGON_FIELDS = ('TargetUserName', 'TargetDomainName', 'LogonType', 'IpAddress', 'WorkstationName')
SERVICE_FIELDS = ('ServiceName', 'ImagePath', 'ServiceType', 'StartType', 'AccountName')

# Logon type descriptions, for the description text
LOGON_TYPES = {
    '2': 'Interactive',
    '3': 'Network',
    '4': 'Batch',
    '5': 'Service',
    '7': 'Unlock',
    '8': 'NetworkCleartext',
    '9': 'NewCredentials',
    '10': 'RemoteInteractive',
    '11': 'CachedInteractive',
}


@dataclass
class EvtxFileHeader:
    """The 'ElfFile' header at the start of an .evtx file"""
    first_chunk_number: int
    last_chunk_number: int
    next_record_id: int
    header_size: int
    minor_version: int
    major_version: int
    header_block_size: int
    chunk_count: int
    flags: int

    @property
    def is_dirty(self) -> bool:
        return bool(self.flags & 0x1)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'EvtxFileHeader':
        if len(data) < FILE_HEADER_SIZE:
            raise FormatError(f"EVTX file too short for header: {len(data)} bytes")
        if data[0:8] != FILE_SIGNATURE:
            raise FormatError(f"Invalid EVTX signature {bytes(data[0:8])!r}")

        first_chunk, last_chunk, next_record = struct.unpack_from('<QQQ', data, 8)
        header_size, minor, major, block_size, chunk_count = struct.unpack_from('<IHHHH', data, 32)
        flags, = struct.unpack_from('<I', data, 120)

        if block_size < FILE_HEADER_SIZE:
            raise FormatError(f"Invalid EVTX header block size {block_size}")

        return cls(first_chunk, last_chunk, next_record, header_size, minor, major,
                   block_size, chunk_count, flags)


@dataclass
class LogRecord:
    """One recognised event record"""
    record_id: int
    event_id: int
    timestamp: UtcTimestamp
    fields: Dict[str, str] = field(default_factory=dict)

    def value(self, name: str, default: str = '-') -> str:
        value = self.fields.get(name, '')
        return value if value else default


def describe_logon(record: LogRecord) -> str:
    user = record.value('TargetUserName')
    domain = record.fields.get('TargetDomainName', '')
    account = f"{domain}\\{user}" if domain and domain != '-' else user
    logon_type = record.value('LogonType')
    type_name = LOGON_TYPES.get(logon_type)
    type_text = f"{logon_type}, {type_name}" if type_name else logon_type

    description = f"User '{account}' logged on (type {type_text}) from source IP {record.value('IpAddress')}"
    workstation = record.fields.get('WorkstationName', '')
    if workstation and workstation != '-':
        description += f" (workstation {workstation})"
    return description + "."


def describe_service(record: LogRecord) -> str:
    description = f"Service '{record.value('ServiceName')}' was installed ({record.value('ImagePath')})"
    extras = [f"{label} {record.fields[name]}"
              for name, label in (('StartType', 'start'), ('AccountName', 'account'))
              if record.fields.get(name)]
    if extras:
        description += " [" + ", ".join(extras) + "]"
    return description + "."


# What python-evtx and the XML parser raise for a damaged record payload
RECORD_DECODE_ERRORS = (ParseException, UnexpectedElementException, ET.ParseError,
                        KeyError, IndexError, ValueError, struct.error)


def local_name(tag: str) -> str:
    """Element name without its '{namespace}' prefix"""
    return tag.rsplit('}', 1)[-1]


def render_event(chunk: bytes, header: ChunkHeader, offset: int) -> ET.Element:
    """
    Render the record at chunk ``offset`` to its <Event> element.

    ``header`` is shared by every record of the chunk, so templates defined
    by earlier records are reused.

    Raises:
        RecordError: If python-evtx cannot render the record's binary XML
    """
    try:
        return ET.fromstring(Record(chunk, offset, header).xml())
    except RECORD_DECODE_ERRORS as e:
        raise RecordError(f"cannot render record: {e!r}")


def read_event_id(event: ET.Element) -> int:
    for element in event.iter():
        if local_name(element.tag) == 'EventID':
            text = (element.text or '').strip()
            if not text.isdigit():
                raise RecordError(f"EventID is not a number: {text!r}")
            return int(text)
    raise RecordError("record has no EventID")


def read_event_data(event: ET.Element) -> Dict[str, str]:
    """Name -> text of every <EventData><Data Name=...> element"""
    data = {}
    for container in event.iter():
        if local_name(container.tag) != 'EventData':
            continue
        for item in container:
            name = item.get('Name')
            if local_name(item.tag) == 'Data' and name:
                data[name] = item.text or ''
    return data


class EventLogParser:
    """Parses one .evtx file into timeline events"""

    def __init__(self, source: ByteRange, source_label: SourceArtifact, name: str = "",
                 max_records: int = 100000, show_progress: bool = False,
                 stats: Optional[ParserStats] = None):
        self.source = source
        self.source_label = source_label
        self.name = name or getattr(source, 'name', '') or source_label.value
        self.max_records = max_records
        self.show_progress = show_progress
        self.stats = stats or ParserStats(name=source_label.value)
        self.header: Optional[EvtxFileHeader] = None

    def _chunk_offsets(self) -> Iterator[int]:
        """Every chunk start the file can hold, whatever the header's chunk count says"""
        offset = self.header.header_block_size
        while offset + CHUNK_HEADER_SIZE <= self.source.size:
            yield offset
            offset += CHUNK_SIZE

    def iter_log_records(self) -> Iterator[LogRecord]:
        """
        Yield every recognised record of the file.

        Raises:
            FormatError: If the file header is missing or invalid
        """
        if self.source.size < FILE_HEADER_SIZE:
            raise FormatError(f"{self.name}: file too short ({self.source.size} bytes)")
        self.header = EvtxFileHeader.from_bytes(self.source.read(0, FILE_HEADER_SIZE))
        if self.header.header_block_size > self.source.size:
            raise FormatError(f"{self.name}: header block extends past end of file")

        logger.debug(f"{self.name}: EVTX v{self.header.major_version}.{self.header.minor_version}, "
                     f"{self.header.chunk_count} chunk(s) in header"
                     f"{' (dirty)' if self.header.is_dirty else ''}")

        chunk_total = max(0, (self.source.size - self.header.header_block_size + CHUNK_SIZE - 1) // CHUNK_SIZE)
        with tqdm(total=chunk_total, unit='chunk', desc=self.name,
                  disable=not self.show_progress, leave=False) as progress:
            for chunk_offset in self._chunk_offsets():
                progress.update(1)
                length = min(CHUNK_SIZE, self.source.size - chunk_offset)
                chunk = self.source.read(chunk_offset, length)

                if not any(chunk[:CHUNK_HEADER_SIZE]):
                    continue

                try:
                    yield from self._iter_chunk(chunk, chunk_offset)
                except RecordError as e:
                    logger.warning(f"{self.name}: chunk at {chunk_offset} skipped: {e}")
                    self.stats.skip('corrupt_chunk')

                if self.stats.capped:
                    return

    def _iter_chunk(self, chunk: bytes, chunk_offset: int) -> Iterator[LogRecord]:
        if chunk[0:8] != CHUNK_SIGNATURE:
            raise RecordError(f"invalid chunk signature {bytes(chunk[0:8])!r}")
        free_space_offset, = struct.unpack_from('<I', chunk, 48)
        if free_space_offset < CHUNK_HEADER_SIZE or free_space_offset > CHUNK_SIZE:
            raise RecordError(f"invalid free space offset {free_space_offset}")

        end = min(free_space_offset, len(chunk))
        header = ChunkHeader(chunk, 0)
        pos = CHUNK_HEADER_SIZE

        while pos + MIN_RECORD_SIZE <= end:
            if chunk[pos:pos + 4] != RECORD_SIGNATURE:
                resync = chunk.find(RECORD_SIGNATURE, pos + 1, end)
                if resync < 0:
                    break
                pos = resync
                continue

            if self.stats.records_seen >= self.max_records:
                self.stats.capped = True
                logger.info(f"{self.name}: processing cap of {self.max_records:,} records reached")
                return
            self.stats.records_seen += 1

            size, = struct.unpack_from('<I', chunk, pos + 4)
            if (size < MIN_RECORD_SIZE or pos + size > end
                    or struct.unpack_from('<I', chunk, pos + size - 4)[0] != size):
                logger.warning(f"{self.name}: record at chunk offset {chunk_offset}+{pos} "
                               f"has invalid length {size}; resynchronising")
                self.stats.skip('bad_length')
                resync = chunk.find(RECORD_SIGNATURE, pos + 4, end)
                if resync < 0:
                    break
                pos = resync
                continue

            record_id, filetime = struct.unpack_from('<QQ', chunk, pos + 8)
            try:
                record = self._decode_record(render_event(chunk, header, pos), record_id, filetime)
            except RecordError as e:
                logger.debug(f"{self.name}: record {record_id} skipped: {e}")
                self.stats.skip('corrupt')
            else:
                if record is not None:
                    yield record
            pos += size

    def _decode_record(self, event: ET.Element, record_id: int, filetime: int) -> Optional[LogRecord]:
        event_id = read_event_id(event)
        if event_id not in RECOGNISED_EVENT_IDS:
            self.stats.skip('other_event_id')
            return None

        try:
            timestamp = filetime_to_utc(filetime)
        except ValueError:
            self.stats.skip('bad_timestamp')
            return None

        wanted = LOGON_FIELDS if event_id == EVENT_LOGON else SERVICE_FIELDS
        data = read_event_data(event)
        fields = {name: data[name] for name in wanted if name in data}
        return LogRecord(record_id, event_id, timestamp, fields)

    def iter_events(self) -> Iterator[TimelineEvent]:
        """Yield UserLogon / ServiceInstalled events for the recognised records"""
        for record in self.iter_log_records():
            if record.event_id == EVENT_LOGON:
                event_type, description = EventType.USER_LOGON, describe_logon(record)
            else:
                event_type, description = EventType.SERVICE_INSTALLED, describe_service(record)
            self.stats.events_emitted += 1
            yield TimelineEvent(record.timestamp, event_type, description, self.source_label,
                                f"{self.name} record {record.record_id}")
