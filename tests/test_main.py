import json
import logging
import sqlite3

import pytest

from chronos import __version__
from chronos.main import main
from chronos.timeline.data.timeline_data_manager import TimelineDataManager
from chronos.utils.error_handler import FormatError


def run(*argv):
    return main(list(argv) + ['--no-progress'])


def test_successful_run_writes_report_and_database(tmp_path, windows_image):
    output = tmp_path / 'report' / 'timeline.html'
    database = tmp_path / 'timeline.db'
    log_file = tmp_path / 'chronos.log'

    assert run(windows_image, '-o', str(output), '--sqlite', str(database),
               '--log-file', str(log_file), '--timezone', 'Europe/Berlin') == 0

    html = output.read_text(encoding='utf-8')
    assert 'Timestamp (Europe/Berlin)' in html
    assert 'EvilSvc' in html

    conn = sqlite3.connect(str(database))
    try:
        assert conn.execute('SELECT COUNT(*) FROM timeline_events').fetchone()[0] == 58
    finally:
        conn.close()

    logging.getLogger('chronos').handlers[-1].flush()
    assert 'Timeline holds 58 events' in log_file.read_text(encoding='utf-8')


def test_summary_is_printed(tmp_path, windows_image, capsys):
    assert run(windows_image, '-o', str(tmp_path / 'timeline.html')) == 0
    out = capsys.readouterr().out
    assert '58 events written to' in out
    assert 'MFT: 32 seen; 53 events' in out


def test_config_file_and_flag_overrides(tmp_path, windows_image):
    config = tmp_path / 'chronos.json'
    config.write_text(json.dumps({'max_mft_records': 5, 'output_path': str(tmp_path / 'from-config.html')}))
    assert run(windows_image, '--config', str(config)) == 0
    assert (tmp_path / 'from-config.html').exists()

    assert run(windows_image, '--config', str(config), '-o', str(tmp_path / 'flag.html')) == 0
    assert (tmp_path / 'flag.html').exists()


def test_partial_failures_still_succeed(tmp_path, windows_image, write_file):
    broken = write_file('Security.evtx', b'not an event log' * 20)
    output = tmp_path / 'timeline.html'
    assert run(windows_image, '-o', str(output), '--security-log', broken) == 0
    assert 'failed: ' in output.read_text(encoding='utf-8')


def test_image_without_ntfs_still_gets_a_report(tmp_path, write_file):
    output = tmp_path / 'timeline.html'
    assert run(write_file('zeros.img', bytes(8192)), '-o', str(output)) == 0
    assert 'No NTFS volume found' in output.read_text(encoding='utf-8')


@pytest.mark.parametrize('image', ['missing.img', 'empty.img'])
def test_unusable_image(tmp_path, image, capsys):
    (tmp_path / 'empty.img').write_bytes(b'')
    output = tmp_path / 'timeline.html'
    assert run(str(tmp_path / image), '-o', str(output)) == 1
    assert not output.exists()
    assert 'chronos: Image' in capsys.readouterr().err


@pytest.mark.parametrize('extra', [
    ['--timezone', 'Mars/Base'],
    ['--workers', '0'],
    ['--config', 'does-not-exist.json'],
])
def test_configuration_errors(tmp_path, windows_image, extra, capsys):
    output = tmp_path / 'timeline.html'
    assert run(windows_image, '-o', str(output), *extra) == 1
    assert not output.exists()
    assert 'configuration error' in capsys.readouterr().err


def test_unknown_config_key(tmp_path, windows_image):
    config = tmp_path / 'chronos.json'
    config.write_text('{"mft_limit": 10}')
    assert run(windows_image, '--config', str(config)) == 1


def test_build_error_is_one_line_diagnostic(tmp_path, windows_image, monkeypatch, capsys):
    def build(self, image_path, **kwargs):
        raise FormatError('directory index is damaged')

    monkeypatch.setattr(TimelineDataManager, 'build', build)
    output = tmp_path / 'timeline.html'
    assert run(windows_image, '-o', str(output)) == 1
    assert not output.exists()

    err = capsys.readouterr().err
    assert 'chronos: directory index is damaged' in err
    assert 'Timeline build failed: directory index is damaged' in err
    assert 'Traceback' not in err


def test_unwritable_output(tmp_path, windows_image):
    blocker = tmp_path / 'file.txt'
    blocker.write_text('x')
    assert run(windows_image, '-o', str(blocker / 'timeline.html')) == 1


def test_invalid_arguments_exit_with_usage_error(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2

    with pytest.raises(SystemExit) as excinfo:
        main(['--version'])
    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out
