"""
Volume Reader
=============

Read-only, bounds-checked access to a disk image.

Two container kinds are supported:

- ``raw``: ``.dd`` / ``.raw`` / ``.img`` images, memory-mapped so that pages are
  only faulted in when a parser touches them.
- ``ewf``: Expert Witness (``.E01``) images, opened through libewf's ``pyewf``
  binding over every segment ``pyewf.glob`` finds.

Everything a parser reads goes through one interface, ``ByteRange``: a ``size``
and a ``read(offset, length)`` that refuses to cross the end. ``Volume`` is
the whole image, ``VolumeView`` is a window into it (a partition) and
``FileRange`` is a file located inside the filesystem (its data runs, or its
resident content).

Author: Chronos Development
Version: 1.0
"""

import logging
import mmap
import os
import struct
import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from chronos.utils.error_handler import FormatError, IoError, OutOfBoundsError

# Configure module-level logger
logger = logging.getLogger(__name__)

EWF_SIGNATURE = b'EVF\x09\x0d\x0a\xff\x00'
NTFS_OEM_ID = b'NTFS    '
BOOT_SIGNATURE = b'\x55\xaa'
GPT_SIGNATURE = b'EFI PART'

MBR_PARTITION_TABLE_OFFSET = 446
MBR_PARTITION_ENTRY_SIZE = 16
MBR_TYPE_GPT_PROTECTIVE = 0xEE
MBR_EXTENDED_TYPES = (0x05, 0x0F, 0x85)

DEFAULT_SECTOR_SIZE = 512


class ByteRange(ABC):
    """A sized, read-only run of bytes with bounds-checked reads"""

    @property
    @abstractmethod
    def size(self) -> int:
        """Total number of readable bytes"""

    @abstractmethod
    def _read(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes at ``offset``; bounds are already checked"""

    def read(self, offset: int, length: int) -> bytes:
        """
        Read exactly ``length`` bytes starting at ``offset``.

        Raises:
            OutOfBoundsError: If the request is negative or runs past ``size``
            IoError: If the underlying storage fails
        """
        if offset < 0 or length < 0 or offset + length > self.size:
            raise OutOfBoundsError(offset, length, self.size)
        if length == 0:
            return b''
        return self._read(offset, length)

    def read_all(self) -> bytes:
        return self.read(0, self.size)

    def slice(self, offset: int, length: int) -> 'VolumeView':
        """Return a window of this range; the window must lie inside it."""
        if offset < 0 or length < 0 or offset + length > self.size:
            raise OutOfBoundsError(offset, length, self.size)
        return VolumeView(self, offset, length)


class Volume(ByteRange):
    """
    An opened disk image.

    Use ``Volume.open(path)`` as a context manager; the backing handle is
    released on every exit path.
    """

    KIND_RAW = 'raw'
    KIND_EWF = 'ewf'

    def __init__(self, path: str, kind: str, size: int, sector_size: int = DEFAULT_SECTOR_SIZE):
        self.path = path
        self.kind = kind
        self._size = size
        self.sector_size = sector_size
        self._file = None
        self._mmap = None
        self._ewf_handle = None
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, path: str) -> 'Volume':
        """
        Open a raw or EWF image for reading.

        Args:
            path: Image path (first segment for split EWF images)

        Returns:
            Volume: Opened volume

        Raises:
            IoError: If the path is missing, a directory, unreadable, empty, or
                an EWF image that libewf refuses to open
        """
        if not os.path.exists(path):
            raise IoError(f"Image not found: {path}")
        if os.path.isdir(path):
            raise IoError(f"Image path is a directory: {path}")

        try:
            with open(path, 'rb') as f:
                signature = f.read(len(EWF_SIGNATURE))
        except OSError as e:
            raise IoError(f"Cannot read image {path}: {e}")

        if not signature:
            raise IoError(f"Image is empty: {path}")

        if signature == EWF_SIGNATURE:
            return cls._open_ewf(path)
        return cls._open_raw(path)

    @classmethod
    def _open_raw(cls, path: str) -> 'Volume':
        try:
            handle = open(path, 'rb')
        except OSError as e:
            raise IoError(f"Cannot open image {path}: {e}")

        try:
            size = os.fstat(handle.fileno()).st_size
            if size == 0:
                raise IoError(f"Image is empty: {path}")
            mapped = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)
        except (OSError, ValueError) as e:
            handle.close()
            raise IoError(f"Cannot map image {path}: {e}")
        except IoError:
            handle.close()
            raise

        volume = cls(path, cls.KIND_RAW, size)
        volume._file = handle
        volume._mmap = mapped
        logger.info(f"Opened raw image {path} ({size:,} bytes)")
        return volume

    @classmethod
    def _open_ewf(cls, path: str) -> 'Volume':
        try:
            import pyewf
        except ImportError as e:
            raise IoError(f"Cannot open EWF image {path}: libewf-python is not installed ({e})")

        try:
            # Supports multi-segment naming (E01, E02 ...) through pyewf.glob
            filenames = pyewf.glob(path)
            handle = pyewf.handle()
            handle.open(filenames)
        except (IOError, OSError, RuntimeError) as e:
            raise IoError(f"Cannot open EWF image {path}: {e}")

        try:
            size = handle.get_media_size()
            sector_size = handle.get_bytes_per_sector() or DEFAULT_SECTOR_SIZE
        except (IOError, OSError, RuntimeError) as e:
            handle.close()
            raise IoError(f"Cannot read EWF media information from {path}: {e}")

        if size <= 0:
            handle.close()
            raise IoError(f"EWF image has no media data: {path}")

        volume = cls(path, cls.KIND_EWF, size, sector_size)
        volume._ewf_handle = handle
        logger.info(f"Opened EWF image {path} ({len(filenames)} segment(s), {size:,} bytes)")
        return volume

    @property
    def size(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    def _read(self, offset: int, length: int) -> bytes:
        if self._closed:
            raise IoError(f"Read from closed image {self.path}")

        if self._mmap is not None:
            return self._mmap[offset:offset + length]

        # The EWF handle is seek+read, so reads from worker threads are serialised
        with self._lock:
            try:
                self._ewf_handle.seek(offset)
                data = self._ewf_handle.read(length)
            except (IOError, OSError, RuntimeError) as e:
                raise IoError(f"EWF read of {length} bytes at {offset} failed: {e}")

        if len(data) != length:
            raise IoError(f"Short EWF read at {offset}: wanted {length}, got {len(data)}")
        return data

    def close(self):
        """Release the backing handle. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        if self._file is not None:
            self._file.close()
            self._file = None
        if self._ewf_handle is not None:
            self._ewf_handle.close()
            self._ewf_handle = None
        logger.debug(f"Closed image {self.path}")

    def __enter__(self) -> 'Volume':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"Volume(path={self.path!r}, kind={self.kind}, size={self._size})"


class VolumeView(ByteRange):
    """A fixed window (offset, length) into another ByteRange"""

    def __init__(self, parent: ByteRange, offset: int, length: int):
        self.parent = parent
        self.offset = offset
        self._size = length

    @property
    def size(self) -> int:
        return self._size

    def _read(self, offset: int, length: int) -> bytes:
        return self.parent.read(self.offset + offset, length)

    def __repr__(self) -> str:
        return f"VolumeView(offset={self.offset}, size={self._size})"


class FileRange(ByteRange):
    """
    The content of a file located inside an NTFS volume.

    Non-resident content is described by data runs of ``(lcn, cluster_count)``
    where ``lcn`` is None for a sparse run; resident content is held directly.
    """

    def __init__(self,
                 source: ByteRange,
                 runs: Optional[List[Tuple[Optional[int], int]]] = None,
                 cluster_size: int = 0,
                 real_size: int = 0,
                 resident: Optional[bytes] = None,
                 name: str = ""):
        self.source = source
        self.runs = list(runs or [])
        self.cluster_size = cluster_size
        self.resident = resident
        self.name = name
        if resident is not None:
            self._size = len(resident)
        else:
            allocated = sum(count for _, count in self.runs) * cluster_size
            self._size = min(real_size, allocated)

    @property
    def size(self) -> int:
        return self._size

    def _read(self, offset: int, length: int) -> bytes:
        if self.resident is not None:
            return bytes(self.resident[offset:offset + length])

        chunks = []
        remaining = length
        position = offset
        run_start = 0
        for lcn, count in self.runs:
            run_bytes = count * self.cluster_size
            run_end = run_start + run_bytes
            if position < run_end:
                within = position - run_start
                take = min(remaining, run_bytes - within)
                if lcn is None:
                    chunks.append(bytes(take))
                else:
                    chunks.append(self.source.read(lcn * self.cluster_size + within, take))
                remaining -= take
                position += take
                if remaining == 0:
                    break
            run_start = run_end

        if remaining:
            raise OutOfBoundsError(offset, length, self._size)
        return b''.join(chunks)

    def __repr__(self) -> str:
        kind = 'resident' if self.resident is not None else f"{len(self.runs)} run(s)"
        return f"FileRange(name={self.name!r}, size={self._size}, {kind})"


class LocalFile(ByteRange):
    """
    A standalone artifact file outside any image (e.g. an exported .evtx).

    Memory-mapped like a raw image; opened and closed as a context manager.
    """

    def __init__(self, path: str):
        self.path = path
        self.name = os.path.basename(path)
        try:
            self._file = open(path, 'rb')
        except OSError as e:
            raise IoError(f"Cannot open {path}: {e}")
        self._size = os.fstat(self._file.fileno()).st_size
        self._mmap = None
        if self._size:
            try:
                self._mmap = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
            except (OSError, ValueError) as e:
                self._file.close()
                raise IoError(f"Cannot map {path}: {e}")

    @property
    def size(self) -> int:
        return self._size

    def _read(self, offset: int, length: int) -> bytes:
        return self._mmap[offset:offset + length]

    def close(self):
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        self._file.close()

    def __enter__(self) -> 'LocalFile':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def is_ntfs_boot_sector(sector: bytes) -> bool:
    """Check the OEM id and the 0x55AA end-of-sector marker"""
    return (len(sector) >= 512
            and sector[3:11] == NTFS_OEM_ID
            and sector[510:512] == BOOT_SIGNATURE)


def _probe_ntfs(volume: ByteRange, offset: int, length: int) -> Optional[VolumeView]:
    if offset < 0 or length < 512 or offset + 512 > volume.size:
        return None
    if not is_ntfs_boot_sector(volume.read(offset, 512)):
        return None
    # Partition tables sometimes overstate the last partition on truncated images
    length = min(length, volume.size - offset)
    return volume.slice(offset, length)


def _mbr_partitions(sector: bytes, sector_size: int) -> List[Tuple[int, int, int]]:
    """Return (partition_type, byte_offset, byte_length) for the primary MBR entries"""
    partitions = []
    for index in range(4):
        entry_offset = MBR_PARTITION_TABLE_OFFSET + index * MBR_PARTITION_ENTRY_SIZE
        entry = sector[entry_offset:entry_offset + MBR_PARTITION_ENTRY_SIZE]
        partition_type = entry[4]
        start_lba, sector_count = struct.unpack_from('<II', entry, 8)
        if partition_type == 0 or sector_count == 0:
            continue
        partitions.append((partition_type, start_lba * sector_size, sector_count * sector_size))
    return partitions


def _gpt_partitions(volume: ByteRange, sector_size: int) -> List[Tuple[int, int]]:
    """Return (byte_offset, byte_length) for every used GPT entry, or [] if no GPT header"""
    if sector_size * 2 > volume.size:
        return []
    header = volume.read(sector_size, sector_size)
    if header[0:8] != GPT_SIGNATURE:
        return []

    entries_lba, = struct.unpack_from('<Q', header, 72)
    entry_count, entry_size = struct.unpack_from('<II', header, 80)
    if entry_size < 128 or entry_count == 0:
        return []

    # Cap the table at what the image can actually hold
    table_offset = entries_lba * sector_size
    entry_count = min(entry_count, 256, max(0, (volume.size - table_offset) // entry_size))
    if entry_count == 0:
        return []
    table = volume.read(table_offset, entry_count * entry_size)

    partitions = []
    for index in range(entry_count):
        entry = table[index * entry_size:(index + 1) * entry_size]
        if entry[0:16] == bytes(16):
            continue
        first_lba, last_lba = struct.unpack_from('<QQ', entry, 32)
        if last_lba < first_lba:
            continue
        partitions.append((first_lba * sector_size, (last_lba - first_lba + 1) * sector_size))
    return partitions


def find_ntfs_volume(volume: ByteRange) -> VolumeView:
    """
    Locate the NTFS filesystem inside an image.

    Tries, in order: an NTFS boot sector at offset 0 (a volume image), the
    primary MBR partition entries, then GPT entries. The first partition whose
    boot sector carries the ``NTFS    `` OEM id wins.

    Args:
        volume: Opened image

    Returns:
        VolumeView: Window covering the NTFS partition

    Raises:
        FormatError: If no NTFS partition is found
    """
    if volume.size < 512:
        raise FormatError(f"Image too small to hold a boot sector ({volume.size} bytes)")

    view = _probe_ntfs(volume, 0, volume.size)
    if view is not None:
        logger.info("NTFS boot sector found at offset 0")
        return view

    sector_size = getattr(volume, 'sector_size', DEFAULT_SECTOR_SIZE)
    first_sector = volume.read(0, 512)
    if first_sector[510:512] == BOOT_SIGNATURE:
        partitions = _mbr_partitions(first_sector, sector_size)
        is_gpt = any(ptype == MBR_TYPE_GPT_PROTECTIVE for ptype, _, _ in partitions)

        if not is_gpt:
            for ptype, offset, length in partitions:
                if ptype in MBR_EXTENDED_TYPES:
                    logger.debug(f"Skipping extended partition at offset {offset}")
                    continue
                view = _probe_ntfs(volume, offset, length)
                if view is not None:
                    logger.info(f"NTFS partition found in MBR at offset {offset}")
                    return view

        # GPT sector size is not recorded anywhere; try the two that exist in practice
        for gpt_sector_size in dict.fromkeys((sector_size, 512, 4096)):
            for offset, length in _gpt_partitions(volume, gpt_sector_size):
                view = _probe_ntfs(volume, offset, length)
                if view is not None:
                    logger.info(f"NTFS partition found in GPT at offset {offset}")
                    return view

    raise FormatError("No NTFS volume found in image")
