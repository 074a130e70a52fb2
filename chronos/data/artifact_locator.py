"""
Artifact Locator
================

Finds well-known artifact files (event logs, prefetch files) inside an NTFS
volume by walking directory indexes from the root directory, and exposes
each located file as a ``FileRange``.

Directory indexes are B-trees of $FILE_NAME keys: the root node lives in the
resident $INDEX_ROOT attribute, deeper nodes in INDX blocks of the
$INDEX_ALLOCATION attribute, each protected by an update sequence fixup.

A path that does not exist is not an error: ``locate`` returns None and
``list_directory`` returns an empty list, so the parser for that artifact
simply contributes no events.

Author: Chronos Development
Version: 1.0
"""

import logging
import re
import struct
from typing import Iterator, List, Optional, Tuple

from chronos.Artifacts_Collectors.MFT_Claw import (
    FileName, MFTReader, MFTRecord, NTFSConstants, RecordBuffer, split_reference
)
from chronos.data.volume_reader import ByteRange, FileRange
from chronos.utils.error_handler import BoundsError, OutOfBoundsError, RecordError

logger = logging.getLogger(__name__)

# Index entry flags
ENTRY_HAS_SUBNODE = 0x01
ENTRY_LAST = 0x02

# Safety limits for corrupt indexes
MAX_INDEX_BLOCKS = 65536
MAX_PATH_COMPONENTS = 64

# INDX block: 24-byte record header followed by the 16-byte index node header
INDEX_NODE_OFFSET = 24
INDEX_BLOCK_HEADER_SIZE = INDEX_NODE_OFFSET + 16

SECURITY_LOG_PATH = 'Windows/System32/winevt/Logs/Security.evtx'
SYSTEM_LOG_PATH = 'Windows/System32/winevt/Logs/System.evtx'
PREFETCH_DIRECTORY = 'Windows/Prefetch'


def split_path(path: str) -> List[str]:
    """Split a '/' or '\\' separated path into its non-empty components"""
    return [part for part in re.split(r'[\\/]+', path) if part and part != '.']


def _parse_index_entries(data: bytes, start: int, end: int) -> Iterator[Tuple[int, Optional[FileName], int]]:
    """
    Yield (file_reference, file_name or None, subnode_vcn or -1) for each entry.

    The terminating entry carries no key but may still point to a subnode.
    """
    pos = start
    end = min(end, len(data))
    while pos + 16 <= end:
        file_reference, entry_length, key_length, flags = struct.unpack_from('<QHHH', data, pos)
        if entry_length < 16 or pos + entry_length > end:
            raise BoundsError(f"Index entry at {pos} has invalid length {entry_length}")

        subnode_vcn = -1
        if flags & ENTRY_HAS_SUBNODE:
            if entry_length < 24:
                raise BoundsError(f"Index entry at {pos} too short for a subnode pointer")
            subnode_vcn, = struct.unpack_from('<Q', data, pos + entry_length - 8)

        file_name = None
        if not flags & ENTRY_LAST and key_length:
            if 16 + key_length > entry_length:
                raise BoundsError(f"Index key at {pos} extends past its entry")
            file_name = FileName.from_bytes(data[pos + 16:pos + 16 + key_length])

        yield file_reference, file_name, subnode_vcn

        if flags & ENTRY_LAST:
            return
        pos += entry_length


class ArtifactLocator:
    """Resolves paths inside one NTFS volume"""

    def __init__(self, view: ByteRange, reader: Optional[MFTReader] = None):
        """
        Args:
            view: NTFS volume (partition window)
            reader: Existing MFTReader for the same volume, if one is at hand

        Raises:
            FormatError: If the volume's boot sector or MFT is unusable
        """
        self.view = view
        self.reader = reader or MFTReader(view)

    def _directory_entries(self, directory: MFTRecord) -> Iterator[Tuple[int, FileName]]:
        """Yield (record_number, FileName) for every key in a directory's $I30 index"""
        root = directory.index_root
        if root is None or root.content is None or len(root.content) < 32:
            raise BoundsError(f"Directory record {directory.record_number} has no usable $INDEX_ROOT")

        content = root.content
        block_size, = struct.unpack_from('<I', content, 8)
        entries_offset, index_length = struct.unpack_from('<II', content, 16)

        pending_vcns = []
        for reference, file_name, subnode in _parse_index_entries(
                content, 16 + entries_offset, 16 + index_length):
            if subnode >= 0:
                pending_vcns.append(subnode)
            if file_name is not None:
                yield split_reference(reference)[0], file_name

        if not pending_vcns:
            return
        if directory.index_allocation is None:
            raise BoundsError(f"Directory record {directory.record_number} references missing INDX blocks")
        if block_size < INDEX_BLOCK_HEADER_SIZE or block_size % NTFSConstants.FIXUP_STRIDE:
            raise BoundsError(f"Directory record {directory.record_number} has invalid "
                              f"index block size {block_size}")

        allocation = self.reader.open_attribute(directory.index_allocation, '$I30')
        cluster_size = self.reader.cluster_size
        vcn_unit = cluster_size if cluster_size <= block_size else 512

        visited = set()
        while pending_vcns:
            vcn = pending_vcns.pop(0)
            if vcn in visited:
                continue
            visited.add(vcn)
            if len(visited) > MAX_INDEX_BLOCKS:
                raise BoundsError(f"Directory record {directory.record_number} index too large")

            try:
                raw = allocation.read(vcn * vcn_unit, block_size)
            except OutOfBoundsError as e:
                raise BoundsError(f"INDX block at VCN {vcn} outside $INDEX_ALLOCATION: {e}")

            block = RecordBuffer(raw, NTFSConstants.INDEX_RECORD_SIGNATURE)
            block.check_signature()
            block.apply_fixup()

            data = bytes(block.data)
            if len(data) < INDEX_BLOCK_HEADER_SIZE:
                raise BoundsError(f"INDX block at VCN {vcn} too short for its node header: {len(data)} bytes")
            entries_offset, index_length = struct.unpack_from('<II', data, INDEX_NODE_OFFSET)
            for reference, file_name, subnode in _parse_index_entries(
                    data, INDEX_NODE_OFFSET + entries_offset, INDEX_NODE_OFFSET + index_length):
                if subnode >= 0:
                    pending_vcns.append(subnode)
                if file_name is not None:
                    yield split_reference(reference)[0], file_name

    def _resolve_record(self, path: str) -> Optional[MFTRecord]:
        components = split_path(path)
        if len(components) > MAX_PATH_COMPONENTS:
            return None

        current = self.reader.read_record(NTFSConstants.ROOT_DIRECTORY_RECORD)
        for component in components:
            if not current.is_directory:
                return None
            wanted = component.casefold()
            match = None
            for record_number, file_name in self._directory_entries(current):
                if file_name.name.casefold() == wanted:
                    match = record_number
                    break
            if match is None:
                return None
            current = self.reader.read_record(match)
            if not current.in_use:
                return None
        return current

    def locate(self, path: str) -> Optional[FileRange]:
        """
        Locate a file by path and return its unnamed data stream.

        Args:
            path: Case-insensitive path from the volume root, '/' or '\\' separated

        Returns:
            FileRange over the file's content, or None if the path does not
            exist, names a directory, or cannot be followed
        """
        try:
            record = self._resolve_record(path)
        except RecordError as e:
            logger.warning(f"Cannot follow path {path}: {e}")
            return None

        if record is None:
            logger.debug(f"Path not found in volume: {path}")
            return None
        if record.is_directory or record.data is None:
            logger.debug(f"Path {path} has no data stream")
            return None

        located = self.reader.open_attribute(record.data, split_path(path)[-1])
        logger.debug(f"Located {path}: MFT record {record.record_number}, {located.size:,} bytes")
        return located

    def list_directory(self, path: str) -> List[Tuple[str, int]]:
        """
        List a directory's entries.

        DOS 8.3 aliases are omitted; each file appears once under its long name.

        Returns:
            Sorted list of (name, record_number); empty if the directory is absent
        """
        try:
            record = self._resolve_record(path)
            if record is None or not record.is_directory:
                return []
            entries = {
                (file_name.name, record_number)
                for record_number, file_name in self._directory_entries(record)
                if file_name.namespace != NTFSConstants.NAMESPACE_DOS
            }
        except RecordError as e:
            logger.warning(f"Cannot list directory {path}: {e}")
            return []
        return sorted(entries, key=lambda entry: entry[0].casefold())

    def find_files(self, directory: str, extension: str, limit: Optional[int] = None) -> List[FileRange]:
        """
        Locate every file in ``directory`` whose name ends with ``extension``.

        Args:
            directory: Directory path from the volume root
            extension: Case-insensitive suffix, e.g. '.pf'
            limit: Maximum number of files to return

        Returns:
            List of FileRange objects named after their files
        """
        suffix = extension.casefold()
        results = []
        for name, record_number in self.list_directory(directory):
            if limit is not None and len(results) >= limit:
                logger.info(f"Stopped after {limit} file(s) in {directory}")
                break
            if not name.casefold().endswith(suffix):
                continue
            try:
                record = self.reader.read_record(record_number)
            except RecordError as e:
                logger.warning(f"Skipping {directory}/{name}: {e}")
                continue
            if not record.in_use or record.is_directory or record.data is None:
                continue
            results.append(self.reader.open_attribute(record.data, name))
        return results
