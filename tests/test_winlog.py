import struct
import xml.etree.ElementTree as ET

import pytest
from Evtx.Evtx import ChunkHeader

import image_builders as ib
from chronos.Artifacts_Collectors.WinLog_Claw import (
    EventLogParser, EvtxFileHeader, LogRecord, describe_logon, describe_service, read_event_data,
    read_event_id, render_event
)
from chronos.timeline.data.run_report import ParserStats
from chronos.timeline.data.timeline_event import EventType, SourceArtifact
from chronos.utils.error_handler import FormatError, RecordError
from chronos.utils.time_utils import filetime_to_utc


def parse_log(open_image, data, label=SourceArtifact.SECURITY_LOG, **kwargs):
    stats = ParserStats(name=label.value)
    parser = EventLogParser(open_image(data), label, name='Security.evtx', stats=stats, **kwargs)
    return list(parser.iter_events()), stats


def test_file_header_fields():
    header = EvtxFileHeader.from_bytes(ib.security_log_bytes()[:128])
    assert (header.major_version, header.minor_version) == (3, 1)
    assert header.header_block_size == 4096
    assert header.chunk_count == 1
    assert not header.is_dirty


def test_security_log_logons(open_image, security_log):
    events, stats = parse_log(open_image, security_log)

    assert [e.event_type for e in events] == [EventType.USER_LOGON, EventType.USER_LOGON]
    alice, bob = events
    assert alice.description == (
        "User 'CORP\\alice' logged on (type 3, Network) from source IP 10.0.0.5 (workstation WS01)."
    )
    assert alice.timestamp.isoformat() == '2024-03-01T09:15:00.0000003Z'
    assert alice.source is SourceArtifact.SECURITY_LOG
    assert alice.source_ref == 'Security.evtx record 1'

    assert bob.description == "User 'bob' logged on (type 10, RemoteInteractive) from source IP 192.168.1.20."
    assert bob.source_ref == 'Security.evtx record 3'

    assert stats.records_seen == 3
    assert stats.events_emitted == 2
    assert stats.skipped == {'other_event_id': 1}


def test_system_log_service_install(open_image, system_log):
    events, stats = parse_log(open_image, system_log, label=SourceArtifact.SYSTEM_LOG)
    assert len(events) == 1
    service = events[0]
    assert service.event_type is EventType.SERVICE_INSTALLED
    assert service.source is SourceArtifact.SYSTEM_LOG
    assert service.description == (
        "Service 'EvilSvc' was installed (C:\\Windows\\Temp\\evil.exe) "
        "[start auto start, account LocalSystem]."
    )
    assert service.timestamp.to_filetime() == ib.SERVICE_INSTALL[1]
    assert stats.skipped == {'other_event_id': 1}


def test_record_with_impossible_length_is_skipped_and_parsing_resumes(open_image):
    chunk, offsets = ib.evtx_chunk([ib.LOGON_ALICE, ib.LOGOFF_ALICE, ib.LOGON_BOB])
    struct.pack_into('<I', chunk, offsets[1] + 4, 0x00FFFFFF)
    events, stats = parse_log(open_image, ib.evtx_file([chunk]))

    assert [e.source_ref for e in events] == ['Security.evtx record 1', 'Security.evtx record 3']
    assert stats.skipped == {'bad_length': 1}
    assert stats.records_seen == 3


def test_size_trailer_mismatch_is_a_bad_length(open_image):
    chunk, offsets = ib.evtx_chunk([ib.LOGON_ALICE, ib.LOGON_BOB])
    size, = struct.unpack_from('<I', chunk, offsets[0] + 4)
    struct.pack_into('<I', chunk, offsets[0] + size - 4, size + 8)
    events, stats = parse_log(open_image, ib.evtx_file([chunk]))
    assert stats.skipped == {'bad_length': 1}
    # Bob's record reuses the template defined inline in Alice's
    assert [e.source_ref for e in events] == ['Security.evtx record 2']


def test_corrupt_chunk_does_not_stop_later_chunks(open_image):
    broken = bytearray(ib.EVTX_CHUNK_SIZE)
    broken[0:8] = b'NotAChnk'
    good, _ = ib.evtx_chunk([ib.LOGON_ALICE], first_record_id=10)
    empty = bytearray(ib.EVTX_CHUNK_SIZE)
    events, stats = parse_log(open_image, ib.evtx_file([broken, empty, good]))

    assert [e.source_ref for e in events] == ['Security.evtx record 10']
    assert stats.skipped == {'corrupt_chunk': 1}


def test_record_cap(open_image, security_log):
    events, stats = parse_log(open_image, security_log, max_records=1)
    assert stats.capped
    assert stats.records_seen == 1
    assert len(events) == 1


@pytest.mark.parametrize('data', [
    b'ElfFile\x00',
    b'NotAnEvtxFile' + bytes(200),
])
def test_invalid_file_header(open_image, data):
    with pytest.raises(FormatError):
        parse_log(open_image, data)


def test_records_render_through_shared_chunk_templates():
    chunk, offsets = ib.evtx_chunk([ib.LOGON_ALICE, ib.LOGOFF_ALICE, ib.LOGON_BOB])
    data = bytes(chunk)
    header = ChunkHeader(data, 0)
    events = [render_event(data, header, offset) for offset in offsets]

    assert events[0].tag == '{%s}Event' % ib.EVENT_NAMESPACE
    assert [read_event_id(event) for event in events] == [4624, 4634, 4624]
    assert read_event_data(events[1]) == {'TargetUserName': 'alice', 'TargetDomainName': 'CORP'}
    bob = read_event_data(events[2])
    assert bob['TargetUserName'] == 'bob'
    assert bob['LogonType'] == '10'


def test_unrenderable_record_is_skipped(open_image):
    chunk, offsets = ib.evtx_chunk([ib.LOGON_ALICE, ib.LOGOFF_ALICE, ib.LOGON_BOB])
    # Bob's record references Alice's template: fragment header, 10-byte instance, then the value count
    struct.pack_into('<I', chunk, offsets[2] + 24 + 4 + 10, 0xFFFFFFFF)
    events, stats = parse_log(open_image, ib.evtx_file([chunk]))

    assert [e.source_ref for e in events] == ['Security.evtx record 1']
    assert stats.skipped == {'other_event_id': 1, 'corrupt': 1}
    assert stats.records_seen == 3


def test_event_without_event_id():
    root = ET.fromstring('<Event><System><Provider Name="x"/></System></Event>')
    with pytest.raises(RecordError):
        read_event_id(root)

    root = ET.fromstring('<Event><System><EventID>abc</EventID></System></Event>')
    with pytest.raises(RecordError):
        read_event_id(root)


def test_descriptions_with_missing_fields():
    ts = filetime_to_utc(ib.LOGON_ALICE[1])
    logon = LogRecord(1, 4624, ts, {'TargetUserName': 'carol', 'LogonType': '99'})
    assert describe_logon(logon) == "User 'carol' logged on (type 99) from source IP -."

    service = LogRecord(2, 7045, ts, {'ServiceName': 'Svc'})
    assert describe_service(service) == "Service 'Svc' was installed (-)."
