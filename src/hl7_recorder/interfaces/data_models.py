"""
Shared data structures for HL7 session capture

Elements and sessions are produced by the session assembler, persisted by the
session store, swept by the cleanup worker and delivered by the submission
worker. On-disk and on-the-wire field names are camelCase (the persisted file
format); Python attribute names are snake_case.
"""

import base64
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

MS_PER_DAY = 86_400_000

CRLF = b"\r\n"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


class Direction(Enum):
    """Which side of the link sent a chunk"""
    DEVICE_TO_HOST = "device-to-host"
    HOST_TO_DEVICE = "host-to-device"


class ElementType(Enum):
    """Kind of element observed inside a session"""
    START = "start"
    MESSAGE = "message"
    ACK = "ack"
    END = "end"


class SubmissionStatus(Enum):
    """Delivery state of a persisted session"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Element:
    """One observed unit within a session (marker or CR-LF terminated message)"""
    id: str
    timestamp: int                      # epoch ms
    direction: Direction
    type: ElementType
    raw_bytes: bytes
    content: Optional[str] = None       # decoded text, message elements only

    @property
    def hex_data(self) -> str:
        return self.raw_bytes.hex()

    @classmethod
    def create(cls, element_type: ElementType, direction: Direction,
               data: bytes, timestamp: Optional[int] = None) -> 'Element':
        """Build an element for freshly received bytes"""
        content = None
        if element_type == ElementType.MESSAGE:
            content = data.decode('utf-8', errors='replace')
        return cls(
            id=f"element-{uuid.uuid4().hex}",
            timestamp=timestamp if timestamp is not None else now_ms(),
            direction=direction,
            type=element_type,
            raw_bytes=bytes(data),
            content=content,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'timestamp': self.timestamp,
            'direction': self.direction.value,
            'type': self.type.value,
            'rawBytes': base64.b64encode(self.raw_bytes).decode('ascii'),
            'hexData': self.hex_data,
        }
        if self.content is not None:
            data['content'] = self.content
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Element':
        if not isinstance(data, dict):
            raise ValueError(f"Element record must be an object, got {type(data).__name__}")
        if 'rawBytes' in data:
            raw = base64.b64decode(data['rawBytes'])
        else:
            raw = bytes.fromhex(data.get('hexData', ''))
        return cls(
            id=data['id'],
            timestamp=int(data['timestamp']),
            direction=Direction(data['direction']),
            type=ElementType(data['type']),
            raw_bytes=raw,
            content=data.get('content'),
        )


@dataclass
class Session:
    """One device transmission cycle framed by start and end markers"""
    id: str
    sequence_number: int
    start_time: int                     # epoch ms
    device_address: str = ""
    host_address: str = ""
    end_time: Optional[int] = None
    elements: List[Element] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)
    is_complete: bool = False
    persisted_until: Optional[int] = None
    submission_status: SubmissionStatus = SubmissionStatus.PENDING
    submission_attempts: int = 0
    submission_error: Optional[str] = None
    submitted_at: Optional[int] = None

    @staticmethod
    def make_id(start_time: int, sequence_number: int) -> str:
        return f"session-{start_time}-{sequence_number}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted file layout (without store metadata)"""
        data: Dict[str, Any] = {
            'id': self.id,
            'sequenceNumber': self.sequence_number,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'deviceAddress': self.device_address,
            'hostAddress': self.host_address,
            'elements': [e.to_dict() for e in self.elements],
            'messages': list(self.messages),
            'isComplete': self.is_complete,
            'submissionStatus': self.submission_status.value,
            'submissionAttempts': self.submission_attempts,
            'submissionError': self.submission_error,
            'submittedAt': self.submitted_at,
        }
        if self.persisted_until is not None:
            data['persistedUntil'] = self.persisted_until
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        """Parse a persisted record; unknown keys such as _metadata are ignored"""
        if not isinstance(data, dict):
            raise ValueError(f"Session record must be an object, got {type(data).__name__}")
        status = data.get('submissionStatus') or SubmissionStatus.PENDING.value
        return cls(
            id=data['id'],
            sequence_number=int(data.get('sequenceNumber', 0)),
            start_time=int(data['startTime']),
            end_time=data.get('endTime'),
            device_address=data.get('deviceAddress', ''),
            host_address=data.get('hostAddress', ''),
            elements=[Element.from_dict(e) for e in data.get('elements', [])],
            messages=list(data.get('messages', [])),
            is_complete=bool(data.get('isComplete', False)),
            persisted_until=data.get('persistedUntil'),
            submission_status=SubmissionStatus(status),
            submission_attempts=int(data.get('submissionAttempts') or 0),
            submission_error=data.get('submissionError'),
            submitted_at=data.get('submittedAt'),
        )

    def submission_payload(self) -> Dict[str, Any]:
        """JSON body POSTed to the collection endpoint"""
        return {
            'sessionId': self.id,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'messages': list(self.messages),
            'deviceAddress': self.device_address,
            'hostAddress': self.host_address,
        }


@dataclass(frozen=True)
class CleanupSummary:
    """Result of one retention sweep"""
    files_deleted: int
    bytes_freed: int
    files_in_trash: int
    start_time: int
    end_time: int
    dry_run: bool

    @classmethod
    def empty(cls, dry_run: bool = False) -> 'CleanupSummary':
        now = now_ms()
        return cls(files_deleted=0, bytes_freed=0, files_in_trash=0,
                   start_time=now, end_time=now, dry_run=dry_run)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filesDeleted': self.files_deleted,
            'bytesFreed': self.bytes_freed,
            'filesInTrash': self.files_in_trash,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'dryRun': self.dry_run,
        }


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of one delivery attempt sequence for a session"""
    session_id: str
    success: bool
    attempts: int
    error: Optional[str] = None
    submitted_at: Optional[int] = None


@dataclass(frozen=True)
class SubmissionProgress:
    """Snapshot emitted once per discovery cycle"""
    in_flight: int
    queue_size: int
    active_worker: bool


@dataclass(frozen=True)
class CaptureStatus:
    """Capture state broadcast to observers"""
    is_capturing: bool
    is_paused: bool
    session_count: int
    element_count: int
    packet_count: int
