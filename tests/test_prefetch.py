import pytest

import image_builders as ib
from chronos.Artifacts_Collectors.Prefetch_claw import PrefetchFile, PrefetchParser, Version
from chronos.data.volume_reader import FileRange
from chronos.timeline.data.timeline_event import EventType, SourceArtifact
from chronos.utils.error_handler import FormatError


def as_source(data, name='TEST.EXE-12345678.pf'):
    return FileRange(source=None, resident=data, name=name)


def prefetch_events(data, name='TEST.EXE-12345678.pf', **kwargs):
    parser = PrefetchParser(as_source(data, name), **kwargs)
    return list(parser.iter_events()), parser.stats


def test_windows_7_prefetch():
    events, stats = prefetch_events(ib.notepad_prefetch(), name='NOTEPAD.EXE-AF43252D.pf')
    assert len(events) == 1
    event = events[0]
    assert event.event_type is EventType.PROGRAM_EXECUTED
    assert event.source is SourceArtifact.PREFETCH
    assert event.timestamp.to_filetime() == ib.NOTEPAD_RUN
    assert event.description == (
        "Executable '\\VOLUME{01d9a1b2c3d4e5f6-12345678}\\WINDOWS\\SYSTEM32\\NOTEPAD.EXE' "
        "was run (run count 3)."
    )
    assert event.source_ref == 'NOTEPAD.EXE-AF43252D.pf (v23)'
    assert stats.name == 'Prefetch NOTEPAD.EXE-AF43252D.pf'
    assert (stats.records_seen, stats.events_emitted) == (1, 1)


def test_windows_xp_prefetch():
    run = ib.filetime(2009, 6, 1, 12, 0, 0)
    parsed = PrefetchFile.from_bytes(ib.build_prefetch(17, 'CALC.EXE', [run], 12, ['\\DEVICE\\HARDDISKVOLUME1\\WINDOWS\\SYSTEM32\\CALC.EXE']))
    assert parsed.header.version is Version.WIN_XP_OR_2003
    assert parsed.run_count == 12
    assert parsed.last_run.to_filetime() == run
    assert parsed.header.hash == 'AF43252D'


def test_windows_8_prefetch_reports_the_latest_of_eight_runs():
    runs = [ib.filetime(2014, 1, day) for day in (3, 9, 1, 7)]
    parsed = PrefetchFile.from_bytes(ib.build_prefetch(26, 'EXPLORER.EXE', runs, 40, []))
    assert [ts.to_filetime() for ts in parsed.last_run_times] == sorted(runs, reverse=True)
    assert parsed.last_run.to_filetime() == ib.filetime(2014, 1, 9)
    # No filename strings: the header name stands in for the path
    assert parsed.executable_path == 'EXPLORER.EXE'


def test_windows_10_compressed_prefetch():
    events, _ = prefetch_events(ib.cmd_prefetch_compressed(), name='CMD.EXE-0BD30981.pf')
    assert len(events) == 1
    assert events[0].timestamp.to_filetime() == max(ib.CMD_RUNS)
    assert events[0].description.endswith("\\WINDOWS\\SYSTEM32\\CMD.EXE' was run (run count 7).")
    assert events[0].source_ref == 'CMD.EXE-0BD30981.pf (v30)'

    parsed = PrefetchFile.from_bytes(ib.cmd_prefetch_compressed())
    assert parsed.compressed
    assert parsed.header.hash == '0BD30981'
    assert parsed.filenames == ib.CMD_PATHS


def test_version_30_short_file_information_layout():
    raw = ib.build_prefetch(30, 'SVCHOST.EXE', [ib.filetime(2023, 5, 5)], 55, [], metrics_offset=0x128)
    assert PrefetchFile.from_bytes(raw).run_count == 55


def test_truncated_executable_name_is_completed_from_strings():
    long_name = 'VERYLONGEXECUTABLENAMEFORTEST'
    path = '\\VOLUME{0}\\TOOLS\\VERYLONGEXECUTABLENAMEFORTESTING.EXE'
    parsed = PrefetchFile.from_bytes(ib.build_prefetch(23, long_name, [ib.filetime(2020, 2, 2)], 1,
                                                       ['\\VOLUME{0}\\WINDOWS\\NTDLL.DLL', path]))
    assert parsed.executable_name == long_name
    assert parsed.executable_path == path


@pytest.mark.parametrize('data, message', [
    (ib.build_prefetch(99, 'X.EXE', [1], 1, []), 'Unsupported prefetch version: 99'),
    (b'\x17\x00\x00\x00MAMA' + bytes(200), 'signature'),
    (ib.compress_prefetch(ib.build_prefetch(23, 'OLD.EXE', [ib.NOTEPAD_RUN], 1, [])), 'pre-Windows 10'),
    (b'MAM\x04' + b'\x00\x10\x00\x00' + bytes(300), 'decompress'),
    (b'SCCA', 'too small'),
])
def test_unparseable_files_raise_format_error(data, message):
    with pytest.raises(FormatError, match=message):
        prefetch_events(data)


def test_size_limit():
    with pytest.raises(FormatError, match='byte limit'):
        prefetch_events(ib.notepad_prefetch(), max_bytes=100)


def test_file_without_run_time_is_skipped():
    events, stats = prefetch_events(ib.build_prefetch(23, 'IDLE.EXE', [], 0, []))
    assert events == []
    assert stats.skipped == {'no_run_time': 1}


def test_implausible_run_count_is_replaced():
    parsed = PrefetchFile.from_bytes(ib.build_prefetch(23, 'A.EXE', [ib.NOTEPAD_RUN], 0xFFFFFFFF, []))
    assert parsed.run_count == 1
