#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
MFT Claw - NTFS Master File Table parser for Chronos

Reads FILE records from the $MFT of an NTFS volume inside a disk image and
turns their $STANDARD_INFORMATION and $FILE_NAME timestamps into timeline
events.

Features:
- Boot sector parsing (cluster geometry, MFT location, record size)
- $MFT located through its own $DATA runlist, so fragmented MFTs are walked
  in order; contiguous iteration when record 0 is unusable
- Update sequence array fixups applied exactly once on a private copy
- $STANDARD_INFORMATION, $FILE_NAME, $DATA, $INDEX_ROOT and $INDEX_ALLOCATION
- Full path reconstruction through parent references
- $FILE_NAME timestamps reported when they disagree with
  $STANDARD_INFORMATION (timestomping indicator)

Author: Chronos Development
Version: 1.0
"""

import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from tqdm import tqdm

from chronos.data.volume_reader import ByteRange, FileRange, VolumeView
from chronos.timeline.data.run_report import ParserStats
from chronos.timeline.data.timeline_event import EventType, SourceArtifact, TimelineEvent
from chronos.utils.error_handler import BoundsError, FormatError, OutOfBoundsError, RecordError
from chronos.utils.time_utils import UtcTimestamp, parse_filetime_bytes

# Configure module-level logger
logger = logging.getLogger(__name__)


class SignatureError(RecordError):
    """Raised when a multi-sector record does not start with its signature"""
    pass


class FixupMismatchError(RecordError):
    """Raised when a sector-end value disagrees with the update sequence number"""
    pass


# NTFS Constants
class NTFSConstants:
    """NTFS-related constants and signatures"""
    SIGNATURE = b'NTFS    '
    MFT_RECORD_SIGNATURE = b'FILE'
    INDEX_RECORD_SIGNATURE = b'INDX'
    END_OF_ATTRIBUTES = 0xFFFFFFFF

    # Update sequence stride is 512 regardless of the physical sector size
    FIXUP_STRIDE = 512

    # MFT Attribute Types
    ATTR_STANDARD_INFORMATION = 0x10
    ATTR_ATTRIBUTE_LIST = 0x20
    ATTR_FILE_NAME = 0x30
    ATTR_DATA = 0x80
    ATTR_INDEX_ROOT = 0x90
    ATTR_INDEX_ALLOCATION = 0xA0

    # MFT Record Flags
    RECORD_IN_USE = 0x0001
    RECORD_IS_DIRECTORY = 0x0002

    # $FILE_NAME namespaces
    NAMESPACE_POSIX = 0
    NAMESPACE_WIN32 = 1
    NAMESPACE_DOS = 2
    NAMESPACE_WIN32_AND_DOS = 3

    # Well-known records
    MFT_RECORD = 0
    ROOT_DIRECTORY_RECORD = 5

    DIRECTORY_INDEX_NAME = '$I30'

    # Lower 48 bits of a file reference are the record number
    REFERENCE_MASK = 0xFFFFFFFFFFFF


# Win32 names first, then POSIX, DOS 8.3 names last
NAMESPACE_PREFERENCE = {
    NTFSConstants.NAMESPACE_WIN32: 0,
    NTFSConstants.NAMESPACE_WIN32_AND_DOS: 0,
    NTFSConstants.NAMESPACE_POSIX: 1,
    NTFSConstants.NAMESPACE_DOS: 2,
}


def split_reference(reference: int) -> Tuple[int, int]:
    """Split a 64-bit file reference into (record_number, sequence_number)"""
    return reference & NTFSConstants.REFERENCE_MASK, (reference >> 48) & 0xFFFF


@dataclass
class NTFSBootSector:
    """Geometry read from the NTFS boot sector"""
    bytes_per_sector: int
    sectors_per_cluster: int
    total_sectors: int
    mft_cluster: int
    mft_mirror_cluster: int
    record_size: int
    index_block_size: int
    serial_number: int

    @property
    def cluster_size(self) -> int:
        return self.bytes_per_sector * self.sectors_per_cluster

    @property
    def mft_offset(self) -> int:
        """Byte offset of the $MFT inside the volume"""
        return self.mft_cluster * self.sectors_per_cluster * self.bytes_per_sector

    @staticmethod
    def _decode_size(raw: int, cluster_size: int) -> int:
        # Positive: count of clusters. Negative: 2**-n bytes
        if raw > 0:
            return raw * cluster_size
        return 1 << (-raw)

    @classmethod
    def from_bytes(cls, sector: bytes) -> 'NTFSBootSector':
        """
        Parse the first sector of an NTFS volume.

        Raises:
            FormatError: If the OEM id, end marker or geometry is invalid
        """
        if len(sector) < 512:
            raise FormatError("Boot sector truncated")
        if sector[3:11] != NTFSConstants.SIGNATURE:
            raise FormatError("Not an NTFS volume (OEM id mismatch)")
        if sector[510:512] != b'\x55\xaa':
            raise FormatError("Boot sector end marker 0x55AA missing")

        bytes_per_sector, = struct.unpack_from('<H', sector, 11)
        sectors_per_cluster = sector[13]
        # Values above 0x80 encode 2**(256 - n) sectors (clusters of 128K and up)
        if sectors_per_cluster > 0x80:
            sectors_per_cluster = 1 << (256 - sectors_per_cluster)
        total_sectors, mft_cluster, mft_mirror_cluster = struct.unpack_from('<QQQ', sector, 40)
        clusters_per_record, = struct.unpack_from('<b', sector, 64)
        clusters_per_index, = struct.unpack_from('<b', sector, 68)
        serial_number, = struct.unpack_from('<Q', sector, 72)

        if bytes_per_sector < 256 or bytes_per_sector > 4096 or bytes_per_sector & (bytes_per_sector - 1):
            raise FormatError(f"Invalid bytes per sector: {bytes_per_sector}")
        if sectors_per_cluster == 0:
            raise FormatError("Invalid sectors per cluster: 0")

        cluster_size = bytes_per_sector * sectors_per_cluster
        record_size = cls._decode_size(clusters_per_record, cluster_size)
        index_block_size = cls._decode_size(clusters_per_index, cluster_size)
        if not 256 <= record_size <= 65536:
            raise FormatError(f"Invalid MFT record size: {record_size}")
        if mft_cluster == 0:
            raise FormatError("MFT start cluster is zero")

        return cls(
            bytes_per_sector=bytes_per_sector,
            sectors_per_cluster=sectors_per_cluster,
            total_sectors=total_sectors,
            mft_cluster=mft_cluster,
            mft_mirror_cluster=mft_mirror_cluster,
            record_size=record_size,
            index_block_size=index_block_size,
            serial_number=serial_number,
        )


class RecordBuffer:
    """
    Private, mutable copy of one multi-sector structure (FILE or INDX record).

    The update sequence array fixup rewrites the last two bytes of every
    512-byte stride in place, so it may run exactly once per copy.
    """

    def __init__(self, raw: bytes, signature: bytes):
        self.data = bytearray(raw)
        self.signature = signature
        self.fixed = False

    def check_signature(self):
        if bytes(self.data[0:4]) != self.signature:
            raise SignatureError(
                f"Expected {self.signature!r} signature, found {bytes(self.data[0:4])!r}"
            )

    def apply_fixup(self):
        """
        Restore the original sector-end bytes from the update sequence array.

        Raises:
            RecordError: If the fixup was already applied
            BoundsError: If the array lies outside the record
            FixupMismatchError: If a sector-end value differs from the sequence number
        """
        if self.fixed:
            raise RecordError("Update sequence fixup already applied")

        data = self.data
        if len(data) < 8:
            raise BoundsError("Record too short for an update sequence header")
        usa_offset, usa_count = struct.unpack_from('<HH', data, 4)
        if usa_count == 0:
            raise BoundsError("Update sequence array is empty")
        if usa_offset < 8 or usa_offset + usa_count * 2 > len(data):
            raise BoundsError(f"Update sequence array at {usa_offset} (x{usa_count}) outside record")
        if (usa_count - 1) * NTFSConstants.FIXUP_STRIDE > len(data):
            raise BoundsError(f"Update sequence covers {usa_count - 1} sectors, record holds fewer")

        usn = bytes(data[usa_offset:usa_offset + 2])

        # Verify every sector before touching any of them
        for index in range(1, usa_count):
            end = index * NTFSConstants.FIXUP_STRIDE
            if bytes(data[end - 2:end]) != usn:
                raise FixupMismatchError(
                    f"Sector {index - 1} end marker {bytes(data[end - 2:end]).hex()} "
                    f"does not match update sequence number {usn.hex()}"
                )

        for index in range(1, usa_count):
            end = index * NTFSConstants.FIXUP_STRIDE
            source = usa_offset + index * 2
            data[end - 2:end] = data[source:source + 2]

        self.fixed = True


def parse_runlist(data: bytes) -> List[Tuple[Optional[int], int]]:
    """
    Decode a non-resident attribute's mapping pairs.

    Each run header byte holds the size of the length field in its low nibble
    and the size of the (signed, relative) cluster offset in its high nibble.
    An offset size of zero marks a sparse run.

    Args:
        data: Bytes from the runlist offset to the end of the attribute

    Returns:
        List of (lcn or None for sparse, cluster_count)

    Raises:
        BoundsError: If a run extends past the data or resolves to a negative cluster
    """
    runs = []
    lcn = 0
    pos = 0
    while pos < len(data):
        header = data[pos]
        if header == 0:
            break
        length_size = header & 0x0F
        offset_size = header >> 4
        if length_size == 0 or length_size > 8 or offset_size > 8:
            raise BoundsError(f"Invalid run header 0x{header:02X}")
        end = pos + 1 + length_size + offset_size
        if end > len(data):
            raise BoundsError("Runlist entry extends past attribute")

        count = int.from_bytes(data[pos + 1:pos + 1 + length_size], 'little')
        if offset_size == 0:
            runs.append((None, count))
        else:
            delta = int.from_bytes(data[pos + 1 + length_size:end], 'little', signed=True)
            lcn += delta
            if lcn < 0:
                raise BoundsError(f"Run resolves to negative cluster {lcn}")
            runs.append((lcn, count))
        pos = end
    return runs


@dataclass
class MFTAttribute:
    """One attribute as found in a FILE record"""
    attr_type: int
    name: str
    resident: bool
    content: Optional[bytes] = None
    runs: List[Tuple[Optional[int], int]] = field(default_factory=list)
    starting_vcn: int = 0
    allocated_size: int = 0
    real_size: int = 0

    def __str__(self) -> str:
        return f"MFTAttribute(type=0x{self.attr_type:02X}, name={self.name!r}, resident={self.resident})"


@dataclass
class StandardInformation:
    """$STANDARD_INFORMATION timestamps (C, M, MFT changed, A on disk)"""
    created: Optional[UtcTimestamp]
    modified: Optional[UtcTimestamp]
    mft_changed: Optional[UtcTimestamp]
    accessed: Optional[UtcTimestamp]
    file_attributes: int = 0


@dataclass
class FileName:
    """One $FILE_NAME attribute"""
    parent_record: int
    parent_sequence: int
    namespace: int
    name: str
    created: Optional[UtcTimestamp]
    modified: Optional[UtcTimestamp]
    mft_changed: Optional[UtcTimestamp]
    accessed: Optional[UtcTimestamp]
    real_size: int = 0
    flags: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> 'FileName':
        """
        Parse $FILE_NAME content (also used as the key of directory index entries).

        Raises:
            BoundsError: If the content is shorter than its declared name
        """
        if len(data) < 66:
            raise BoundsError(f"$FILE_NAME too short: {len(data)} bytes")
        parent_ref, = struct.unpack_from('<Q', data, 0)
        parent_record, parent_sequence = split_reference(parent_ref)
        real_size, flags = struct.unpack_from('<QI', data, 48)
        name_length = data[64]
        namespace = data[65]
        if 66 + name_length * 2 > len(data):
            raise BoundsError("$FILE_NAME name extends past attribute")
        name = bytes(data[66:66 + name_length * 2]).decode('utf-16le', errors='replace')

        return cls(
            parent_record=parent_record,
            parent_sequence=parent_sequence,
            namespace=namespace,
            name=name,
            created=parse_filetime_bytes(data, 8),
            modified=parse_filetime_bytes(data, 16),
            mft_changed=parse_filetime_bytes(data, 24),
            accessed=parse_filetime_bytes(data, 32),
            real_size=real_size,
            flags=flags,
        )


@dataclass
class MFTRecord:
    """Represents one parsed FILE record"""
    record_number: int
    sequence_number: int = 0
    flags: int = 0
    in_use: bool = False
    is_directory: bool = False
    base_reference: int = 0

    standard_info: Optional[StandardInformation] = None
    file_names: List[FileName] = field(default_factory=list)
    data: Optional[MFTAttribute] = None
    index_root: Optional[MFTAttribute] = None
    index_allocation: Optional[MFTAttribute] = None

    @property
    def is_extension(self) -> bool:
        """True for records holding overflow attributes of another (base) record"""
        return split_reference(self.base_reference)[0] != 0

    def preferred_file_name(self) -> Optional[FileName]:
        """Win32 name if present, else POSIX, else the DOS 8.3 name"""
        if not self.file_names:
            return None
        return min(self.file_names, key=lambda fn: NAMESPACE_PREFERENCE.get(fn.namespace, 3))

    def get_primary_filename(self) -> str:
        fn = self.preferred_file_name()
        return fn.name if fn else ""


class MFTAttributeParser(ABC):
    """Abstract base class for MFT attribute parsers"""

    @abstractmethod
    def can_parse(self, attr_type: int) -> bool:
        """Check if this parser can handle the given attribute type"""
        pass

    @abstractmethod
    def parse(self, record: MFTRecord, attr: MFTAttribute):
        """Decode the attribute and store the result on the record"""
        pass


class StandardInformationParser(MFTAttributeParser):
    """Parser for $STANDARD_INFORMATION attributes"""

    def can_parse(self, attr_type: int) -> bool:
        return attr_type == NTFSConstants.ATTR_STANDARD_INFORMATION

    def parse(self, record: MFTRecord, attr: MFTAttribute):
        content = attr.content
        if not attr.resident or content is None or len(content) < 36:
            raise BoundsError(f"$STANDARD_INFORMATION too short in record {record.record_number}")

        # On-disk order: created, modified, MFT entry changed, accessed
        record.standard_info = StandardInformation(
            created=parse_filetime_bytes(content, 0),
            modified=parse_filetime_bytes(content, 8),
            mft_changed=parse_filetime_bytes(content, 16),
            accessed=parse_filetime_bytes(content, 24),
            file_attributes=struct.unpack_from('<I', content, 32)[0],
        )


class FileNameParser(MFTAttributeParser):
    """Parser for $FILE_NAME attributes"""

    def can_parse(self, attr_type: int) -> bool:
        return attr_type == NTFSConstants.ATTR_FILE_NAME

    def parse(self, record: MFTRecord, attr: MFTAttribute):
        if not attr.resident or attr.content is None:
            raise BoundsError(f"Non-resident $FILE_NAME in record {record.record_number}")
        record.file_names.append(FileName.from_bytes(attr.content))


class DataAttributeParser(MFTAttributeParser):
    """Keeps the unnamed $DATA stream; named streams (ADS) are not timeline sources"""

    def can_parse(self, attr_type: int) -> bool:
        return attr_type == NTFSConstants.ATTR_DATA

    def parse(self, record: MFTRecord, attr: MFTAttribute):
        if attr.name == "" and attr.starting_vcn == 0 and record.data is None:
            record.data = attr


class IndexParser(MFTAttributeParser):
    """Keeps the $I30 directory index attributes for path lookups"""

    def can_parse(self, attr_type: int) -> bool:
        return attr_type in (NTFSConstants.ATTR_INDEX_ROOT, NTFSConstants.ATTR_INDEX_ALLOCATION)

    def parse(self, record: MFTRecord, attr: MFTAttribute):
        if attr.name != NTFSConstants.DIRECTORY_INDEX_NAME:
            return
        if attr.attr_type == NTFSConstants.ATTR_INDEX_ROOT:
            record.index_root = attr
        elif attr.starting_vcn == 0:
            record.index_allocation = attr


class AttributeParserRegistry:
    """Registry of attribute parsers"""

    def __init__(self):
        self.parsers: List[MFTAttributeParser] = []
        self._register_default_parsers()

    def _register_default_parsers(self):
        self.register(StandardInformationParser())
        self.register(FileNameParser())
        self.register(DataAttributeParser())
        self.register(IndexParser())

    def register(self, parser: MFTAttributeParser):
        self.parsers.append(parser)

    def get_parser(self, attr_type: int) -> Optional[MFTAttributeParser]:
        for parser in self.parsers:
            if parser.can_parse(attr_type):
                return parser
        return None


_REGISTRY = AttributeParserRegistry()


def iter_attributes(data: bytearray, first_offset: int, used_size: int) -> Iterator[MFTAttribute]:
    """
    Walk the attribute headers of a fixed-up FILE record.

    Raises:
        BoundsError: If a header, name, resident value or runlist lies outside
            the record, or the list is not terminated
    """
    limit = min(len(data), used_size) if used_size else len(data)
    pos = first_offset
    while True:
        if pos + 4 > limit:
            raise BoundsError("Attribute list runs past end of record")
        attr_type, = struct.unpack_from('<I', data, pos)
        if attr_type == NTFSConstants.END_OF_ATTRIBUTES:
            return
        if pos + 16 > limit:
            raise BoundsError(f"Attribute header at {pos} truncated")

        length, = struct.unpack_from('<I', data, pos + 4)
        if length < 16 or pos + length > limit:
            raise BoundsError(f"Attribute 0x{attr_type:X} at {pos} has invalid length {length}")

        non_resident = data[pos + 8]
        name_length = data[pos + 9]
        name_offset, = struct.unpack_from('<H', data, pos + 10)
        name = ""
        if name_length:
            if name_offset + name_length * 2 > length:
                raise BoundsError(f"Attribute name at {pos} extends past attribute")
            start = pos + name_offset
            name = bytes(data[start:start + name_length * 2]).decode('utf-16le', errors='replace')

        if not non_resident:
            if length < 24:
                raise BoundsError(f"Resident attribute header at {pos} truncated")
            value_length, value_offset = struct.unpack_from('<IH', data, pos + 16)
            if value_offset + value_length > length:
                raise BoundsError(f"Resident value of attribute 0x{attr_type:X} extends past attribute")
            start = pos + value_offset
            yield MFTAttribute(
                attr_type=attr_type,
                name=name,
                resident=True,
                content=bytes(data[start:start + value_length]),
                real_size=value_length,
                allocated_size=value_length,
            )
        else:
            if length < 64:
                raise BoundsError(f"Non-resident attribute header at {pos} truncated")
            starting_vcn, = struct.unpack_from('<Q', data, pos + 16)
            runlist_offset, = struct.unpack_from('<H', data, pos + 32)
            allocated_size, real_size = struct.unpack_from('<QQ', data, pos + 40)
            if runlist_offset >= length:
                raise BoundsError(f"Runlist of attribute 0x{attr_type:X} outside attribute")
            yield MFTAttribute(
                attr_type=attr_type,
                name=name,
                resident=False,
                runs=parse_runlist(bytes(data[pos + runlist_offset:pos + length])),
                starting_vcn=starting_vcn,
                allocated_size=allocated_size,
                real_size=real_size,
            )

        pos += length


def parse_file_record(record_number: int, raw: bytes) -> MFTRecord:
    """
    Parse one FILE record.

    The raw bytes are copied before the fixup is applied; ``raw`` is never
    modified. Attributes are only decoded for in-use base records.

    Raises:
        SignatureError: If the record does not start with 'FILE'
        FixupMismatchError: If a sector-end marker is wrong
        BoundsError: If any header field points outside the record
    """
    buffer = RecordBuffer(raw, NTFSConstants.MFT_RECORD_SIGNATURE)
    if len(buffer.data) < 48:
        raise BoundsError(f"Record {record_number} shorter than a FILE header")
    buffer.check_signature()

    data = buffer.data
    sequence_number, = struct.unpack_from('<H', data, 16)
    first_attribute, flags = struct.unpack_from('<HH', data, 20)
    used_size, = struct.unpack_from('<I', data, 24)
    base_reference, = struct.unpack_from('<Q', data, 32)

    record = MFTRecord(
        record_number=record_number,
        sequence_number=sequence_number,
        flags=flags,
        in_use=bool(flags & NTFSConstants.RECORD_IN_USE),
        is_directory=bool(flags & NTFSConstants.RECORD_IS_DIRECTORY),
        base_reference=base_reference,
    )
    if not record.in_use or record.is_extension:
        return record

    buffer.apply_fixup()

    if used_size > len(data) or first_attribute < 24 or first_attribute >= (used_size or len(data)):
        raise BoundsError(
            f"Record {record_number}: first attribute at {first_attribute}, used size {used_size}"
        )

    for attr in iter_attributes(data, first_attribute, used_size):
        parser = _REGISTRY.get_parser(attr.attr_type)
        if parser:
            parser.parse(record, attr)

    return record


class MFTReader:
    """
    Random access to the FILE records of one NTFS volume.

    Shared by the timeline parser (sequential walk) and the artifact locator
    (directory lookups).
    """

    def __init__(self, view: ByteRange):
        self.view = view
        try:
            sector = view.read(0, 512)
        except OutOfBoundsError as e:
            raise FormatError(f"Cannot read boot sector: {e}")

        self.boot = NTFSBootSector.from_bytes(sector)
        self.record_size = self.boot.record_size
        self.cluster_size = self.boot.cluster_size
        self.mft_offset = self.boot.mft_offset

        if self.mft_offset + self.record_size > view.size:
            raise FormatError(
                f"MFT at offset {self.mft_offset} lies outside the volume ({view.size} bytes)"
            )

        logger.debug(f"MFT located at cluster {self.boot.mft_cluster} (offset {self.mft_offset}), "
                     f"record size {self.record_size}, cluster size {self.cluster_size}")

        self.mft_data = self._locate_mft()
        self.record_count = self.mft_data.size // self.record_size

    def _locate_mft(self) -> ByteRange:
        """Follow record 0's $DATA runlist, or fall back to the contiguous region"""
        contiguous = VolumeView(self.view, self.mft_offset, self.view.size - self.mft_offset)
        try:
            record = parse_file_record(NTFSConstants.MFT_RECORD,
                                       self.view.read(self.mft_offset, self.record_size))
        except RecordError as e:
            logger.warning(f"$MFT record 0 unusable ({e}); iterating MFT contiguously")
            return contiguous

        data = record.data
        if not record.in_use or data is None or data.resident or not data.runs:
            logger.warning("$MFT record 0 has no runlist; iterating MFT contiguously")
            return contiguous

        mft_range = FileRange(self.view, data.runs, self.cluster_size, data.real_size, name='$MFT')
        last_byte = max(((lcn + count) * self.cluster_size
                         for lcn, count in data.runs if lcn is not None), default=0)
        if mft_range.size < self.record_size or last_byte > self.view.size:
            logger.warning("$MFT runlist points outside the volume; iterating MFT contiguously")
            return contiguous

        logger.debug(f"$MFT spans {len(data.runs)} run(s), {mft_range.size:,} bytes")
        return mft_range

    def read_record_bytes(self, record_number: int) -> bytes:
        try:
            return self.mft_data.read(record_number * self.record_size, self.record_size)
        except OutOfBoundsError as e:
            raise BoundsError(f"Record {record_number} outside MFT: {e}")

    def read_record(self, record_number: int) -> MFTRecord:
        return parse_file_record(record_number, self.read_record_bytes(record_number))

    def open_attribute(self, attr: MFTAttribute, name: str = "") -> FileRange:
        """Expose an attribute's content (resident or non-resident) as a FileRange"""
        if attr.resident:
            return FileRange(self.view, resident=attr.content or b'', name=name)
        return FileRange(self.view, attr.runs, self.cluster_size, attr.real_size, name=name)


class PathResolver:
    """
    Rebuilds full paths by walking $FILE_NAME parent references up to the root.

    Directory paths are cached together with the sequence number they were
    resolved under. A reference chain that loops, runs deeper than MAX_DEPTH
    or reaches a deleted/reused parent ends in ORPHAN_PREFIX.
    """

    MAX_DEPTH = 64
    ORPHAN_PREFIX = '\\[orphan]'

    def __init__(self, reader: MFTReader):
        self.reader = reader
        # record number -> (sequence number, path); 0 matches any sequence
        self._cache: Dict[int, Tuple[int, str]] = {NTFSConstants.ROOT_DIRECTORY_RECORD: (0, '')}

    def resolve(self, record: MFTRecord) -> str:
        fn = record.preferred_file_name()
        if fn is None:
            return f"[record {record.record_number}]"
        if record.record_number == NTFSConstants.ROOT_DIRECTORY_RECORD:
            return '\\'
        return self.directory_path(fn.parent_record, fn.parent_sequence) + '\\' + fn.name

    def directory_path(self, record_number: int, sequence_number: int = 0) -> str:
        chain = []
        seen = set()
        number, sequence = record_number, sequence_number

        while True:
            cached = self._cache.get(number)
            if cached is not None and (not sequence or not cached[0] or cached[0] == sequence):
                prefix = cached[1]
                break
            if number in seen or len(chain) >= self.MAX_DEPTH:
                prefix = self.ORPHAN_PREFIX
                break
            seen.add(number)

            try:
                parent = self.reader.read_record(number)
            except RecordError as e:
                logger.debug(f"Parent record {number} unreadable: {e}")
                prefix = self.ORPHAN_PREFIX
                break

            fn = parent.preferred_file_name()
            if (not parent.in_use or fn is None
                    or (sequence and parent.sequence_number != sequence)):
                prefix = self.ORPHAN_PREFIX
                break

            chain.append((number, parent.sequence_number, fn.name))
            number, sequence = fn.parent_record, fn.parent_sequence

        for number, sequence, name in reversed(chain):
            prefix = prefix + '\\' + name
            self._cache[number] = (sequence, prefix)
        return prefix


# (event type, description template, attribute holding the timestamp)
MACB_EVENTS = (
    (EventType.FILE_CREATED, "File '{}' was created.", 'created'),
    (EventType.FILE_MODIFIED, "File '{}' was modified.", 'modified'),
    (EventType.FILE_ACCESSED, "File '{}' was accessed.", 'accessed'),
    (EventType.MFT_ENTRY_CHANGED, "MFT entry for '{}' was changed.", 'mft_changed'),
)


class MFTParser:
    """Walks the $MFT of one NTFS volume and yields timeline events"""

    def __init__(self, view: ByteRange, max_records: int = 1000,
                 show_progress: bool = False, stats: Optional[ParserStats] = None):
        self.view = view
        self.max_records = max_records
        self.show_progress = show_progress
        self.stats = stats or ParserStats(name='MFT')

    def iter_events(self) -> Iterator[TimelineEvent]:
        """
        Yield one event per non-zero MACB timestamp of every in-use base record.

        Raises:
            FormatError: If the boot sector or MFT region is unusable
        """
        reader = MFTReader(self.view)
        resolver = PathResolver(reader)
        total = reader.record_count
        logger.info(f"MFT holds {total:,} record slot(s); processing up to {self.max_records:,}")

        with tqdm(total=min(total, self.max_records), unit='rec', desc='MFT',
                  disable=not self.show_progress, leave=False) as progress:
            for record_number in range(total):
                if record_number >= self.max_records:
                    self.stats.capped = True
                    logger.info(f"MFT processing cap of {self.max_records:,} records reached")
                    break

                self.stats.records_seen += 1
                progress.update(1)

                try:
                    record = reader.read_record(record_number)
                except SignatureError:
                    self.stats.skip('bad_signature')
                    continue
                except FixupMismatchError as e:
                    logger.warning(f"MFT record {record_number} skipped: {e}")
                    self.stats.skip('fixup_mismatch')
                    continue
                except RecordError as e:
                    logger.debug(f"MFT record {record_number} skipped: {e}")
                    self.stats.skip('corrupt')
                    continue

                if not record.in_use:
                    self.stats.skip('not_in_use')
                    continue
                if record.is_extension:
                    self.stats.skip('extension')
                    continue
                if not record.file_names:
                    self.stats.skip('unnamed')
                    continue

                for event in self._record_events(record, resolver):
                    self.stats.events_emitted += 1
                    yield event

    def _record_events(self, record: MFTRecord, resolver: PathResolver) -> Iterator[TimelineEvent]:
        path = resolver.resolve(record)
        si = record.standard_info
        fn = record.preferred_file_name()
        source_ref = f"MFT record {record.record_number}"

        for event_type, template, attribute in MACB_EVENTS:
            si_time = getattr(si, attribute) if si else None
            if si_time is not None:
                yield TimelineEvent(si_time, event_type, template.format(path),
                                    SourceArtifact.MFT, source_ref)

            fn_time = getattr(fn, attribute)
            if fn_time is not None and fn_time != si_time:
                yield TimelineEvent(fn_time, event_type, template.format(path) + " ($FILE_NAME)",
                                    SourceArtifact.MFT, source_ref)
