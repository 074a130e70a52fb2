import json
import os
import sqlite3

import pytest

import image_builders as ib
from chronos.data.database_manager import export_timeline
from chronos.timeline.data.event_aggregator import TimelineAggregator
from chronos.timeline.data.run_report import ParserStats, RunReport
from chronos.timeline.data.timeline_event import EventType, SourceArtifact, TimelineEvent
from chronos.timeline.rendering.html_renderer import build_rows, render_html, render_html_string
from chronos.utils.error_handler import IoError
from chronos.utils.time_utils import filetime_to_utc


@pytest.fixture
def timeline():
    aggregator = TimelineAggregator()
    aggregator.extend([
        TimelineEvent(filetime_to_utc(ib.LOGON_ALICE[1]), EventType.USER_LOGON,
                      "User 'CORP\\alice' logged on (type 3, Network) from source IP 10.0.0.5.",
                      SourceArtifact.SECURITY_LOG, 'Security.evtx record 1'),
        TimelineEvent(filetime_to_utc(ib.filetime(2024, 3, 1, 8)), EventType.FILE_CREATED,
                      "File '\\<script>alert(1)</script>.txt' was created.",
                      SourceArtifact.MFT, 'MFT record 40'),
        TimelineEvent(filetime_to_utc(ib.NOTEPAD_RUN), EventType.PROGRAM_EXECUTED,
                      "Executable 'NOTEPAD.EXE' was run (run count 3).",
                      SourceArtifact.PREFETCH, 'NOTEPAD.EXE-AF43252D.pf (v23)'),
    ])
    return aggregator.finalize()


@pytest.fixture
def report():
    report = RunReport('/evidence/disk.E01')
    report.container_kind = 'ewf'
    mft = report.register(ParserStats(name='MFT', records_seen=1000, events_emitted=1, capped=True))
    mft.skip('not_in_use', 3)
    mft.skip('bad_signature')
    report.register(ParserStats(name='System log (System.evtx)', failure='Invalid EVTX signature'))
    report.note('No prefetch files found in Windows/Prefetch')
    return report


def test_rows_keep_order_and_sort_as_text(timeline):
    rows = build_rows(timeline)
    assert [row['source'] for row in rows] == ['MFT', 'Security log', 'Prefetch']
    assert [len(row['key']) for row in rows] == [20, 20, 20]
    assert [row['key'] for row in rows] == sorted(row['key'] for row in rows)
    assert rows[1]['timestamp'] == '2024-03-01T09:15:00.0000003Z'
    assert rows[1]['event_type'] == 'User Logon'
    assert rows[1]['source_class'] == 'source-security-log'
    assert rows[1]['local'] == ''


def test_local_time_column(timeline, report):
    rows = build_rows(timeline, 'Europe/Berlin')
    assert rows[0]['local'] == '2024-03-01 09:00:00 CET (UTC+01:00)'

    html = render_html_string(timeline, report, 'Europe/Berlin')
    assert 'Timestamp (Europe/Berlin)' in html
    assert 'Timestamp (Europe/Berlin)' not in render_html_string(timeline, report)


def test_report_page_content(timeline, report):
    html = render_html_string(timeline, report)

    assert '&lt;script&gt;alert(1)&lt;/script&gt;' in html
    assert '<script>alert(1)' not in html
    assert 'CORP\\alice' in html
    assert '/evidence/disk.E01' in html
    assert 'bad_signature=1, not_in_use=3' in html
    assert 'stopped at processing cap' in html
    assert 'failed: Invalid EVTX signature' in html
    assert 'No prefetch files found in Windows/Prefetch' in html
    assert '2024-03-01T08:00:00.0000000Z' in html
    # Event table rows appear in timeline order
    assert html.index('alert(1)') < html.index('CORP') < html.index('NOTEPAD.EXE-AF43252D')


def test_empty_timeline_still_renders(report):
    html = render_html_string((), report)
    assert 'n/a' in html
    assert 'Activity per' not in html


def test_render_html_creates_directories(tmp_path, timeline, report):
    target = tmp_path / 'out' / 'case' / 'timeline.html'
    written = render_html(timeline, report, str(target))
    assert written == os.path.abspath(str(target))
    assert target.read_text(encoding='utf-8').startswith('<!DOCTYPE html>')


def test_render_html_unwritable_target(tmp_path, timeline, report):
    blocker = tmp_path / 'file.txt'
    blocker.write_text('x')
    with pytest.raises(IoError):
        render_html(timeline, report, str(blocker / 'timeline.html'))


def test_sqlite_export(tmp_path, timeline, report):
    db_path = str(tmp_path / 'db' / 'timeline.db')
    assert export_timeline(timeline, report, db_path) == 3

    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute('SELECT id, filetime, event_type, source FROM timeline_events ORDER BY id').fetchall()
        assert [row[3] for row in rows] == ['MFT', 'Security log', 'Prefetch']
        assert rows[1][1] == ib.LOGON_ALICE[1]
        assert rows[1][2] == 'UserLogon'

        mft = conn.execute("SELECT records_seen, skipped_reasons, capped, failure FROM run_report "
                           "WHERE parser = 'MFT'").fetchone()
        assert mft[0] == 1000
        assert json.loads(mft[1]) == {'bad_signature': 1, 'not_in_use': 3}
        assert mft[2] == 1
        assert mft[3] is None
    finally:
        conn.close()


def test_exported_rows_match_event_dicts(tmp_path, timeline, report):
    db_path = str(tmp_path / 'timeline.db')
    export_timeline(timeline, report, db_path)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        rows = [dict(row) for row in conn.execute(
            'SELECT timestamp, filetime, event_type, description, source, source_ref '
            'FROM timeline_events ORDER BY id')]
    finally:
        conn.close()
    assert rows == [event.to_dict() for event in timeline]
    assert rows[1]['timestamp'] == '2024-03-01T09:15:00.0000003Z'


def test_sqlite_export_replaces_previous_tables(tmp_path, timeline, report):
    db_path = str(tmp_path / 'timeline.db')
    export_timeline(timeline, report, db_path)
    export_timeline(timeline[:1], report, db_path)

    conn = sqlite3.connect(db_path)
    try:
        assert conn.execute('SELECT COUNT(*) FROM timeline_events').fetchone()[0] == 1
        assert conn.execute('SELECT COUNT(*) FROM run_report').fetchone()[0] == 2
    finally:
        conn.close()


def test_sqlite_export_to_unusable_path(tmp_path, timeline, report):
    blocker = tmp_path / 'file.txt'
    blocker.write_text('x')
    with pytest.raises(IoError):
        export_timeline(timeline, report, str(blocker / 'timeline.db'))
