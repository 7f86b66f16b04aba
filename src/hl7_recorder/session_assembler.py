#!/usr/bin/env python3
"""
HL7 Session Assembler

Turns a stream of TCP payload chunks into typed elements and sessions.

Framing (per attached source):
    start marker  -> new session, becomes active
    ack marker    -> ack element on the active session
    other bytes   -> accumulated until CR-LF, then one message element
    end marker    -> end element, session complete, active cleared

Chunk boundaries are arbitrary: a marker is recognised only when it arrives
as a chunk of exactly one byte, and message text may be split across any
number of chunks.

The assembler is synchronous and performs no I/O. It returns the events
produced by each chunk; the capture manager forwards them to observers and
schedules persistence.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from .config_utils import MarkerConfig
from .interfaces.data_models import (
    CRLF, Direction, Element, ElementType, Session, SubmissionStatus, now_ms
)
from .interfaces.packet_source import Packet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElementProduced:
    """A new element was appended to a session"""
    session_id: str
    element: Element


@dataclass(frozen=True)
class SessionCompleted:
    """End marker received; session is complete and ready to persist"""
    session: Session


@dataclass(frozen=True)
class SessionAbandoned:
    """A start marker arrived while this session was still active"""
    session: Session


AssemblerEvent = Union[ElementProduced, SessionCompleted, SessionAbandoned]


class SessionAssembler:
    """
    Byte-oriented framing state machine.

    Example:
        assembler = SessionAssembler(MarkerConfig())
        for chunk in (b'\\x05', b'MSH|^~\\\\&|...\\r\\n', b'\\x04'):
            events = assembler.process(Packet(chunk))
    """

    def __init__(
        self,
        markers: MarkerConfig,
        max_sessions: int = 100,
        extract_all_messages: bool = False,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize assembler.

        Args:
            markers: Validated marker configuration
            max_sessions: In-memory session table bound (oldest evicted first)
            extract_all_messages: Extract every CR-LF message in a chunk instead
                of only the first one
            clock: Epoch-millisecond time source
        """
        self.max_sessions = max(1, max_sessions)
        self.extract_all_messages = extract_all_messages
        self.clock = clock

        self.sessions: "OrderedDict[str, Session]" = OrderedDict()
        self.sequence_counter = 0
        self.active_session_id: Optional[str] = None
        self.buffer = bytearray()

        self.set_markers(markers)

    def set_markers(self, markers: MarkerConfig):
        self.markers = markers
        values = markers.marker_bytes()
        self.start_marker = values['start']
        self.ack_marker = values['ack']
        self.end_marker = values['end']

    def reset(self):
        """Drop all sessions and restart the sequence counter"""
        self.sessions.clear()
        self.sequence_counter = 0
        self.clear_active()

    def clear_active(self):
        self.active_session_id = None
        self.buffer = bytearray()

    @property
    def active_session(self) -> Optional[Session]:
        if self.active_session_id is None:
            return None
        return self.sessions.get(self.active_session_id)

    def element_count(self) -> int:
        return sum(len(s.elements) for s in self.sessions.values())

    def process(self, packet: Packet) -> List[AssemblerEvent]:
        """
        Feed one chunk through the state machine.

        Returns:
            Events produced by this chunk, in order. Empty for ignored chunks.
        """
        data = packet.data
        if not data:
            return []

        direction = self._direction(packet)

        if len(data) == 1:
            marker = data[0]
            if marker == self.start_marker:
                return self._handle_start(packet, direction)
            if marker == self.ack_marker:
                return self._handle_ack(data, direction)
            if marker == self.end_marker:
                return self._handle_end(data, direction)

        return self._handle_message(data, direction)

    def _direction(self, packet: Packet) -> Direction:
        if packet.source_address is None:
            return Direction.DEVICE_TO_HOST

        device = self.markers.device_address
        if not device:
            active = self.active_session
            device = active.device_address if active else packet.source_address

        if packet.source_address == device:
            return Direction.DEVICE_TO_HOST
        return Direction.HOST_TO_DEVICE

    def _handle_start(self, packet: Packet, direction: Direction) -> List[AssemblerEvent]:
        events: List[AssemblerEvent] = []

        previous = self.active_session
        if previous is not None:
            previous.end_time = self.clock()
            previous.submission_status = SubmissionStatus.IGNORED
            logger.warning(f"Session {previous.id} abandoned after "
                           f"{len(previous.elements)} elements (new start marker)")
            events.append(SessionAbandoned(previous))

        self.sequence_counter += 1
        start_time = self.clock()
        element = Element.create(ElementType.START, direction, packet.data, start_time)

        session = Session(
            id=Session.make_id(start_time, self.sequence_counter),
            sequence_number=self.sequence_counter,
            start_time=start_time,
            device_address=packet.source_address or self.markers.device_address,
            host_address=packet.dest_address or self.markers.host_address,
            elements=[element],
        )

        self.sessions[session.id] = session
        self.active_session_id = session.id
        self.buffer = bytearray()
        events.append(ElementProduced(session.id, element))

        while len(self.sessions) > self.max_sessions:
            evicted_id, _ = self.sessions.popitem(last=False)
            logger.debug(f"Evicted session {evicted_id} (table limit {self.max_sessions})")

        return events

    def _handle_ack(self, data: bytes, direction: Direction) -> List[AssemblerEvent]:
        session = self.active_session
        if session is None:
            return []

        element = Element.create(ElementType.ACK, direction, data, self.clock())
        session.elements.append(element)
        return [ElementProduced(session.id, element)]

    def _handle_end(self, data: bytes, direction: Direction) -> List[AssemblerEvent]:
        session = self.active_session
        if session is None:
            return []

        element = Element.create(ElementType.END, direction, data, self.clock())
        session.elements.append(element)
        session.end_time = element.timestamp
        session.is_complete = True

        self.clear_active()

        logger.info(f"Session {session.id} complete: {len(session.messages)} messages, "
                    f"{len(session.elements)} elements")
        return [ElementProduced(session.id, element), SessionCompleted(session)]

    def _handle_message(self, data: bytes, direction: Direction) -> List[AssemblerEvent]:
        session = self.active_session
        if session is None:
            return []

        self.buffer.extend(data)
        events: List[AssemblerEvent] = []

        while True:
            index = self.buffer.find(CRLF)
            if index == -1:
                break

            message = bytes(self.buffer[:index + len(CRLF)])
            del self.buffer[:index + len(CRLF)]

            element = Element.create(ElementType.MESSAGE, direction, message, self.clock())
            session.elements.append(element)
            session.messages.append(element.content)
            events.append(ElementProduced(session.id, element))

            if not self.extract_all_messages:
                break

        return events
