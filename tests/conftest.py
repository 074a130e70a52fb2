"""Shared fixtures: synthetic images and artifacts written to tmp_path"""

import logging

import pytest

import image_builders as ib
from chronos.data.volume_reader import Volume


@pytest.fixture(autouse=True)
def restore_chronos_logger():
    """The CLI reconfigures the package logger; undo that after each test"""
    logger = logging.getLogger('chronos')
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture(scope='session')
def security_log():
    return ib.security_log_bytes()


@pytest.fixture(scope='session')
def system_log():
    return ib.system_log_bytes()


@pytest.fixture(scope='session')
def prefetch_files():
    return ib.standard_prefetch_files()


@pytest.fixture(scope='session')
def windows_volume(security_log, system_log, prefetch_files):
    """Volume image bytes with both event logs and two prefetch files"""
    return ib.build_windows_volume(security_log, system_log, prefetch_files)


@pytest.fixture
def write_file(tmp_path):
    """Write bytes under tmp_path and return the path as a string"""
    def _write(name, data):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return str(path)
    return _write


@pytest.fixture
def open_image(write_file):
    """Write image bytes to disk and open them as a Volume, closed at teardown"""
    opened = []

    def _open(data):
        volume = Volume.open(write_file(f'image-{len(opened)}.raw', data))
        opened.append(volume)
        return volume

    yield _open
    for volume in opened:
        volume.close()


@pytest.fixture
def windows_image(write_file, windows_volume):
    return write_file('windows.img', windows_volume)


@pytest.fixture
def bare_image(write_file):
    """NTFS volume without event logs or prefetch files"""
    return write_file('bare.img', ib.build_windows_volume())
