#!/usr/bin/env python3
"""
Tests for the session assembler state machine

This test suite validates:
- Start / message / end framing into one complete session
- Messages split across chunks and multi-message chunks
- Ack markers and markers outside a session
- Abandonment of an active session by a new start marker
- Session table eviction
- Direction classification
"""

from conftest import MSH, FakeClock

from hl7_recorder.config_utils import MarkerConfig
from hl7_recorder.interfaces import Direction, ElementType, Packet, SubmissionStatus
from hl7_recorder.session_assembler import (
    ElementProduced, SessionAbandoned, SessionAssembler, SessionCompleted
)


def feed(assembler, *chunks, source=None, dest=None):
    events = []
    for chunk in chunks:
        events.extend(assembler.process(Packet(chunk, source, dest)))
    return events


class TestFraming:
    """Tests for basic start/message/end framing"""

    def test_single_message_session(self):
        """0x05, one MSH line, 0x04 gives one complete session with 3 elements"""
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        events = feed(assembler, b'\x05', MSH.encode(), b'\x04')

        sessions = list(assembler.sessions.values())
        assert len(sessions) == 1
        session = sessions[0]
        assert session.is_complete
        assert [e.type for e in session.elements] == [
            ElementType.START, ElementType.MESSAGE, ElementType.END]
        assert session.messages == [MSH]
        assert session.end_time == session.elements[-1].timestamp
        assert isinstance(events[-1], SessionCompleted)
        assert events[-1].session is session
        assert assembler.active_session is None

    def test_new_session_defaults(self):
        """New sessions are pending with zero attempts and a timestamped id"""
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock(start=5000))

        feed(assembler, b'\x05')

        session = assembler.active_session
        assert session.id == "session-5000-1"
        assert session.sequence_number == 1
        assert session.submission_status == SubmissionStatus.PENDING
        assert session.submission_attempts == 0
        assert not session.is_complete

    def test_element_events_in_order(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        events = feed(assembler, b'\x05', b'\x06', MSH.encode(), b'\x04')

        produced = [e.element.type for e in events if isinstance(e, ElementProduced)]
        assert produced == [ElementType.START, ElementType.ACK, ElementType.MESSAGE, ElementType.END]

    def test_message_element_content(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', b'OBX|1|NM|GLU||5.4\r\n')

        element = assembler.active_session.elements[1]
        assert element.content == 'OBX|1|NM|GLU||5.4\r\n'
        assert element.raw_bytes == b'OBX|1|NM|GLU||5.4\r\n'
        assert element.hex_data == b'OBX|1|NM|GLU||5.4\r\n'.hex()

    def test_custom_markers(self):
        markers = MarkerConfig(start_marker=0x0b, ack_marker=0x06, end_marker=0x1c)
        assembler = SessionAssembler(markers, clock=FakeClock())

        feed(assembler, b'\x0b', MSH.encode(), b'\x1c')

        session = next(iter(assembler.sessions.values()))
        assert session.is_complete
        assert session.messages == [MSH]

    def test_empty_chunk_ignored(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())
        assert assembler.process(Packet(b'')) == []
        assert not assembler.sessions


class TestMessageBuffering:
    """Tests for CR-LF message extraction across chunk boundaries"""

    def test_message_split_across_chunks(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', b'MSH|^~\\&|A', b'BC\r', b'\n')

        assert assembler.active_session.messages == ['MSH|^~\\&|ABC\r\n']

    def test_incomplete_message_not_emitted(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        events = feed(assembler, b'\x05', b'MSH|partial')

        assert len(events) == 1
        assert assembler.active_session.messages == []
        assert bytes(assembler.buffer) == b'MSH|partial'

    def test_one_message_per_chunk_by_default(self):
        """Only the first CR-LF message is extracted; the rest waits for the next chunk"""
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', b'A|1\r\nB|2\r\n')
        assert assembler.active_session.messages == ['A|1\r\n']

        feed(assembler, b'C')
        assert assembler.active_session.messages == ['A|1\r\n', 'B|2\r\n']
        assert bytes(assembler.buffer) == b'C'

    def test_extract_all_messages(self):
        assembler = SessionAssembler(MarkerConfig(), extract_all_messages=True, clock=FakeClock())

        feed(assembler, b'\x05', b'A|1\r\nB|2\r\nC|3')

        assert assembler.active_session.messages == ['A|1\r\n', 'B|2\r\n']
        assert bytes(assembler.buffer) == b'C|3'

    def test_marker_byte_inside_longer_chunk_is_data(self):
        """A marker value is only recognised as a single-byte chunk"""
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', b'x\x04')

        session = assembler.active_session
        assert session is not None
        assert not session.is_complete
        assert bytes(assembler.buffer) == b'x\x04'

    def test_buffer_cleared_on_end(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', b'dangling', b'\x04', b'\x05', b'MSH|x\r\n')

        second = assembler.active_session
        assert second.messages == ['MSH|x\r\n']


class TestOutsideSession:
    """Tests for chunks arriving with no active session"""

    def test_message_without_session_dropped(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        assert feed(assembler, MSH.encode()) == []
        assert not assembler.sessions
        assert bytes(assembler.buffer) == b''

    def test_ack_and_end_without_session_ignored(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        assert feed(assembler, b'\x06', b'\x04') == []
        assert not assembler.sessions


class TestAbandonment:
    """Tests for a start marker arriving while a session is active"""

    def test_prior_session_force_finalized(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', MSH.encode())
        first = assembler.active_session

        events = feed(assembler, b'\x05')

        assert isinstance(events[0], SessionAbandoned)
        assert events[0].session is first
        assert first.end_time is not None
        assert not first.is_complete
        assert first.submission_status == SubmissionStatus.IGNORED

        assert len(assembler.sessions) == 2
        assert assembler.active_session is not first
        assert assembler.active_session.sequence_number == 2


class TestEviction:
    """Tests for the bounded in-memory session table"""

    def test_oldest_session_evicted(self):
        assembler = SessionAssembler(MarkerConfig(), max_sessions=2, clock=FakeClock())

        for _ in range(3):
            feed(assembler, b'\x05', MSH.encode(), b'\x04')

        assert len(assembler.sessions) == 2
        assert [s.sequence_number for s in assembler.sessions.values()] == [2, 3]

    def test_reset_restarts_sequence(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())
        feed(assembler, b'\x05', b'\x04')

        assembler.reset()
        feed(assembler, b'\x05')

        assert len(assembler.sessions) == 1
        assert assembler.active_session.sequence_number == 1


class TestDirection:
    """Tests for device-to-host / host-to-device classification"""

    def test_configured_device_address(self):
        markers = MarkerConfig(device_address='10.0.0.5', host_address='10.0.0.9')
        assembler = SessionAssembler(markers, clock=FakeClock())

        feed(assembler, b'\x05', source='10.0.0.5', dest='10.0.0.9')
        feed(assembler, b'\x06', source='10.0.0.9', dest='10.0.0.5')

        start, ack = assembler.active_session.elements
        assert start.direction == Direction.DEVICE_TO_HOST
        assert ack.direction == Direction.HOST_TO_DEVICE

    def test_device_inferred_from_start_marker(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', source='192.168.1.20', dest='192.168.1.1')
        feed(assembler, b'\x06', source='192.168.1.1', dest='192.168.1.20')
        feed(assembler, MSH.encode(), source='192.168.1.20', dest='192.168.1.1')

        session = assembler.active_session
        assert session.device_address == '192.168.1.20'
        assert session.host_address == '192.168.1.1'
        assert [e.direction for e in session.elements] == [
            Direction.DEVICE_TO_HOST, Direction.HOST_TO_DEVICE, Direction.DEVICE_TO_HOST]

    def test_no_source_address_is_device_to_host(self):
        assembler = SessionAssembler(MarkerConfig(), clock=FakeClock())

        feed(assembler, b'\x05', b'\x06')

        assert all(e.direction == Direction.DEVICE_TO_HOST
                   for e in assembler.active_session.elements)

    def test_addresses_fall_back_to_marker_config(self):
        markers = MarkerConfig(device_address='10.0.0.5', host_address='10.0.0.9')
        assembler = SessionAssembler(markers, clock=FakeClock())

        feed(assembler, b'\x05')

        session = assembler.active_session
        assert session.device_address == '10.0.0.5'
        assert session.host_address == '10.0.0.9'
