"""
Prefetch File Parser for Windows Forensic Analysis

This module parses Windows Prefetch files (.pf), which track program execution
history, and maps each file to one "program executed" timeline event.

Key Features:
- Supports Windows XP/2003 (v17), Vista/7 (v23), 8/8.1 (v26) and 10/11 (v30, v31)
- Decompresses Windows 10/11 prefetch files (MAM\\x04, XPRESS Huffman) on any platform
- Extracts last execution timestamps, run count and the full executable path

Author: Chronos Development
Version: 1.0
"""

import enum
import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional

from chronos.Artifacts_Collectors import xpress_huffman
from chronos.data.volume_reader import ByteRange
from chronos.timeline.data.run_report import ParserStats
from chronos.timeline.data.timeline_event import EventType, SourceArtifact, TimelineEvent
from chronos.utils.error_handler import DecompressionError, FormatError
from chronos.utils.time_utils import UtcTimestamp, parse_filetime_bytes

logger = logging.getLogger(__name__)


class Version(enum.IntEnum):
    """Enum representing Windows Prefetch file format versions.

    Format differences that matter for the timeline:
    - Number of last execution timestamps stored (1 vs 8)
    - Offset of the run count
    - Compression (Windows 10/11)
    """
    WIN_XP_OR_2003 = 17     # Windows XP and Server 2003 (single last run time)
    VISTA_OR_WIN7 = 23      # Windows Vista and Windows 7 (single last run time)
    WIN8X_OR_WIN2012X = 26  # Windows 8, 8.1 and Server 2012/R2 (8 last run times)
    WIN10_OR_WIN11 = 30     # Windows 10 and early Windows 11 (compressed)
    WIN11 = 31              # Later Windows 11 versions (compressed)


# version -> (offset of first last-run time, number of run times, offset of run count)
RUN_INFO_LAYOUT = {
    Version.WIN_XP_OR_2003: (120, 1, 144),
    Version.VISTA_OR_WIN7: (128, 1, 152),
    Version.WIN8X_OR_WIN2012X: (128, 8, 208),
    Version.WIN10_OR_WIN11: (128, 8, 208),
    Version.WIN11: (128, 8, 208),
}

# Version 30 files whose file metrics start at 0x128 keep the run count 8 bytes earlier
V30_SHORT_INFO_METRICS_OFFSET = 0x128
V30_SHORT_INFO_RUN_COUNT_OFFSET = 200

HEADER_SIZE = 84
MAX_REASONABLE_RUN_COUNT = 1000000


@dataclass
class Header:
    """Represents the header section of a Windows Prefetch file.

    The hash is derived from the executable path and appears in the prefetch
    filename (e.g., NOTEPAD.EXE-AF43252D.pf where AF43252D is the hash).

    Attributes:
        version (Version): The prefetch format version (indicates Windows version)
        file_size (int): The size of the prefetch file in bytes
        executable_filename (str): The name of the executed program (max 29 characters)
        hash (str): The hash value derived from the executable path
    """
    version: Version
    file_size: int
    executable_filename: str
    hash: str

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Header':
        """Parse prefetch header from binary data.

        Raises:
            FormatError: If the signature is not 'SCCA' or the version is unsupported
        """
        if len(data) < HEADER_SIZE:
            raise FormatError(f"Prefetch data too short for header: {len(data)} bytes")
        if data[4:8] != PrefetchFile.SIGNATURE:
            raise FormatError(f"Invalid prefetch signature {bytes(data[4:8])!r}, expected b'SCCA'")

        raw_version, = struct.unpack_from("<I", data, 0)
        try:
            version = Version(raw_version)
        except ValueError:
            raise FormatError(f"Unsupported prefetch version: {raw_version}")

        file_size, = struct.unpack_from("<I", data, 12)

        # Executable name is stored as UTF-16LE string (60 bytes, null-terminated)
        exe_filename = bytes(data[16:76]).decode('utf-16le', errors='replace').split('\x00')[0].strip()

        hash_val = f"{struct.unpack_from('<I', data, 76)[0]:08X}"

        return cls(version, file_size, exe_filename, hash_val)


@dataclass
class PrefetchFile:
    """Parsed Windows prefetch file.

    Forensic Value:
    - Evidence of program execution (what, when, how many times)
    - Up to eight most recent execution times on Windows 8 and later

    Attributes:
        header: Parsed header
        executable_path: Full path of the executable from the filename strings,
            or the header name when no full path is recorded
        last_run_times: Stored execution timestamps, most recent first
        run_count: Number of recorded executions
        filenames: Files referenced during the program's startup
        compressed: Whether the file was stored MAM-compressed
    """
    SIGNATURE = b'SCCA'

    header: Header
    executable_path: str = ""
    last_run_times: List[UtcTimestamp] = field(default_factory=list)
    run_count: int = 0
    filenames: List[str] = field(default_factory=list)
    compressed: bool = False
    source_filename: str = ""

    @property
    def executable_name(self) -> str:
        return self.header.executable_filename

    @property
    def last_run(self) -> Optional[UtcTimestamp]:
        """Most recent execution time"""
        return max(self.last_run_times) if self.last_run_times else None

    @classmethod
    def from_bytes(cls, data: bytes, source_filename: str = "") -> 'PrefetchFile':
        """Parse a prefetch file from raw bytes.

        1. Decompressing Windows 10/11 prefetch files if needed
        2. Validating the signature ('SCCA') and version
        3. Reading the version-specific run times and run count
        4. Completing the executable name from the filename strings

        Args:
            data (bytes): Raw prefetch file data
            source_filename (str, optional): Name the file was found under

        Returns:
            PrefetchFile: Parsed prefetch file object

        Raises:
            FormatError: If the file is not a supported prefetch file
            DecompressionError: If a compressed body cannot be decompressed
        """
        compressed = xpress_huffman.is_compressed(data)
        if compressed:
            data = xpress_huffman.decompress_prefetch(data)

        header = Header.from_bytes(data)
        if compressed and header.version < Version.WIN10_OR_WIN11:
            raise FormatError(f"Compressed prefetch with pre-Windows 10 version {int(header.version)}")

        instance = cls(header=header, compressed=compressed, source_filename=source_filename)
        instance._parse_run_information(data)
        instance._parse_filenames(data)
        instance.executable_path = instance._find_executable_path()
        return instance

    def _parse_run_information(self, data: bytes):
        version = self.header.version
        times_offset, times_count, run_count_offset = RUN_INFO_LAYOUT[version]

        if version in (Version.WIN10_OR_WIN11, Version.WIN11) and len(data) >= HEADER_SIZE + 4:
            metrics_offset, = struct.unpack_from("<I", data, HEADER_SIZE)
            if metrics_offset == V30_SHORT_INFO_METRICS_OFFSET:
                run_count_offset = V30_SHORT_INFO_RUN_COUNT_OFFSET

        if run_count_offset + 4 > len(data):
            raise FormatError(f"Prefetch file information truncated ({len(data)} bytes)")

        self.last_run_times = []
        for index in range(times_count):
            timestamp = parse_filetime_bytes(data, times_offset + index * 8)
            if timestamp is not None:
                self.last_run_times.append(timestamp)
        self.last_run_times.sort(reverse=True)

        self.run_count, = struct.unpack_from("<I", data, run_count_offset)

        # Sanity check: Fix unreasonably high run counts (possible corruption)
        if self.run_count > MAX_REASONABLE_RUN_COUNT:
            logger.debug(f"Implausible run count {self.run_count} in {self.source_filename}")
            self.run_count = len(self.last_run_times)

    def _parse_filenames(self, data: bytes):
        self.filenames = []
        strings_offset, strings_size = struct.unpack_from("<II", data, HEADER_SIZE + 16)
        if strings_size == 0:
            return
        if strings_offset + strings_size > len(data):
            logger.debug(f"Filename strings extend beyond file size in {self.source_filename}")
            return

        filenames_str = bytes(data[strings_offset:strings_offset + strings_size]).decode('utf-16le', errors='replace')
        self.filenames = [name for name in filenames_str.split('\x00') if name]

    def _find_executable_path(self) -> str:
        """Full path whose base name matches (or extends the truncated) header name"""
        wanted = self.header.executable_filename.casefold()
        if not wanted:
            return ""
        candidates = []
        for path in self.filenames:
            base = path.rsplit('\\', 1)[-1].casefold()
            if base == wanted:
                return path
            if base.startswith(wanted):
                candidates.append(path)
        if candidates:
            return candidates[0]
        return self.header.executable_filename

    def __str__(self) -> str:
        return (f"PrefetchFile({self.executable_name}-{self.header.hash}, "
                f"version={int(self.header.version)}, runs={self.run_count})")


class PrefetchParser:
    """Maps one prefetch file to a ProgramExecuted event"""

    def __init__(self, source: ByteRange, name: str = "", max_bytes: Optional[int] = None,
                 stats: Optional[ParserStats] = None):
        self.source = source
        self.name = name or getattr(source, 'name', '') or 'prefetch'
        self.max_bytes = max_bytes
        self.stats = stats or ParserStats(name=f"Prefetch {self.name}")

    def parse(self) -> PrefetchFile:
        if self.max_bytes is not None and self.source.size > self.max_bytes:
            raise FormatError(f"{self.name} is {self.source.size:,} bytes, above the {self.max_bytes:,} byte limit")
        if self.source.size < xpress_huffman.MAM_HEADER_SIZE:
            raise FormatError(f"{self.name} is too small to be a prefetch file")
        return PrefetchFile.from_bytes(self.source.read_all(), self.name)

    def iter_events(self):
        """
        Yield the single execution event for this file.

        Raises:
            FormatError: If the file is not a supported prefetch file
        """
        self.stats.records_seen += 1
        try:
            prefetch = self.parse()
        except DecompressionError as e:
            raise FormatError(f"Cannot decompress {self.name}: {e}")

        if not prefetch.executable_name:
            logger.warning(f"Prefetch {self.name} has no executable name; skipped")
            self.stats.skip('no_name')
            return
        last_run = prefetch.last_run
        if last_run is None:
            logger.warning(f"Prefetch {self.name} has no last run time; skipped")
            self.stats.skip('no_run_time')
            return

        description = (f"Executable '{prefetch.executable_path}' was run "
                       f"(run count {prefetch.run_count}).")
        self.stats.events_emitted += 1
        yield TimelineEvent(last_run, EventType.PROGRAM_EXECUTED, description,
                            SourceArtifact.PREFETCH, f"{self.name} (v{int(prefetch.header.version)})")
