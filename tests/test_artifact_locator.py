import logging

import pytest

import image_builders as ib
from chronos.data.artifact_locator import (
    PREFETCH_DIRECTORY, SECURITY_LOG_PATH, SYSTEM_LOG_PATH, ArtifactLocator, split_path
)
from chronos.utils.error_handler import FormatError


@pytest.fixture
def locator(open_image, windows_volume):
    return ArtifactLocator(open_image(windows_volume))


def test_split_path():
    assert split_path('\\Windows//System32\\.\\winevt\\') == ['Windows', 'System32', 'winevt']
    assert split_path('') == []


def test_event_logs_located_by_path(locator, security_log, system_log):
    security = locator.locate(SECURITY_LOG_PATH)
    assert security.name == 'Security.evtx'
    assert security.size == len(security_log)
    assert security.read_all() == security_log

    system = locator.locate(SYSTEM_LOG_PATH)
    assert system.read(0, 8) == b'ElfFile\x00'
    assert system.size == len(system_log)


def test_lookup_is_case_insensitive_and_accepts_backslashes(locator, security_log):
    located = locator.locate('\\WINDOWS\\system32\\WinEvt\\LOGS\\security.EVTX')
    assert located is not None
    assert located.size == len(security_log)


def test_resident_file_content(locator):
    assert locator.locate('hello.txt').read_all() == b'hello world\n'


def test_missing_paths_and_directories_return_none(locator):
    assert locator.locate('Windows/System32/config/SAM') is None
    assert locator.locate('hello.txt/child') is None
    assert locator.locate('Windows/System32') is None
    assert locator.list_directory('Windows/Temp') == []
    assert locator.list_directory('hello.txt') == []


def test_directory_listing_reads_index_allocation_blocks(locator):
    """The Prefetch index root is empty and points at one INDX block holding every entry"""
    names = [name for name, _ in locator.list_directory(PREFETCH_DIRECTORY)]
    # DOS 8.3 aliases are not listed
    assert names == ['CMD.EXE-0BD30981.pf', 'NOTEPAD.EXE-AF43252D.pf']

    root = dict(locator.list_directory(''))
    assert root == {'hello.txt': ib.RECORD_HELLO, 'Windows': ib.RECORD_WINDOWS}


def test_find_files_by_extension(locator, prefetch_files):
    found = locator.find_files(PREFETCH_DIRECTORY, '.PF')
    assert [f.name for f in found] == ['CMD.EXE-0BD30981.pf', 'NOTEPAD.EXE-AF43252D.pf']
    assert found[1].read_all() == prefetch_files['NOTEPAD.EXE-AF43252D.pf']

    assert len(locator.find_files(PREFETCH_DIRECTORY, '.pf', limit=1)) == 1
    assert locator.find_files(PREFETCH_DIRECTORY, '.evtx') == []


def test_volume_without_artifacts(open_image):
    locator = ArtifactLocator(open_image(ib.build_windows_volume()))
    assert locator.locate(SECURITY_LOG_PATH) is None
    assert locator.find_files(PREFETCH_DIRECTORY, '.pf') == []


def test_not_an_ntfs_volume(open_image):
    with pytest.raises(FormatError):
        ArtifactLocator(open_image(bytes(8192)))


@pytest.mark.parametrize('block_size', [16, 1000])
def test_invalid_index_block_size_hides_only_that_directory(open_image, prefetch_files, block_size, caplog):
    volume = ib.build_windows_volume(prefetch_files=prefetch_files, prefetch_block_size=block_size)
    locator = ArtifactLocator(open_image(volume))

    with caplog.at_level(logging.WARNING, logger='chronos'):
        assert locator.find_files(PREFETCH_DIRECTORY, '.pf') == []
    assert f'invalid index block size {block_size}' in caplog.text
    assert locator.locate('Windows/Prefetch/NOTEPAD.EXE-AF43252D.pf') is None
    assert locator.locate('hello.txt').read_all() == b'hello world\n'
