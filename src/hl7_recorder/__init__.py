"""
HL7 Recorder - Capture, persist and forward HL7 sessions from device links

Observes the TCP conversation between an analyzer (device) and a laboratory
information system (host), frames it into sessions using start/ack/end
marker bytes, persists completed sessions as JSON, expires them after a
retention period and delivers them to an HTTP collection endpoint.

Quick Start:
    from hl7_recorder import CaptureManager, MarkerConfig, SessionStore, TcpRelaySource

    store = SessionStore(Path('./data/sessions'))
    manager = CaptureManager(store=store)
    manager.start_capture(MarkerConfig(), TcpRelaySource('0.0.0.0', 2575, '10.0.0.9', 2575))
"""

__version__ = "1.0.0"
__author__ = "HL7 Recorder Project"

from .interfaces import (
    Direction, ElementType, SubmissionStatus,
    Element, Session, CleanupSummary, SubmissionResult, SubmissionProgress, CaptureStatus,
    Packet, PacketSource, PacketSourceListener, PassivePacketSource, ControllablePacketSource,
)
from .config_utils import (
    MarkerConfig, RelayConfig, AppConfig, PathResolver, ValidationResult,
    validate_marker_config, build_capture_filter, load_config_with_paths,
)
from .session_assembler import SessionAssembler, ElementProduced, SessionCompleted, SessionAbandoned
from .session_store import SessionStore, SessionStoreError, RecoveryStats
from .capture_manager import (
    CaptureManager, CaptureError, AlreadyCapturingError, InvalidMarkerConfigError,
    StatusChanged, SessionPersisted, ErrorOccurred, SourceLog,
)
from .cleanup_worker import CleanupWorker
from .submission_worker import SubmissionWorker
from .tcp_relay_source import TcpRelaySource

__all__ = [
    # Data model
    'Direction', 'ElementType', 'SubmissionStatus',
    'Element', 'Session', 'CleanupSummary', 'SubmissionResult', 'SubmissionProgress',
    'CaptureStatus',

    # Packet sources
    'Packet', 'PacketSource', 'PacketSourceListener', 'PassivePacketSource',
    'ControllablePacketSource', 'TcpRelaySource',

    # Configuration
    'MarkerConfig', 'RelayConfig', 'AppConfig', 'PathResolver', 'ValidationResult',
    'validate_marker_config', 'build_capture_filter', 'load_config_with_paths',

    # Capture
    'SessionAssembler', 'ElementProduced', 'SessionCompleted', 'SessionAbandoned',
    'CaptureManager', 'CaptureError', 'AlreadyCapturingError', 'InvalidMarkerConfigError',
    'StatusChanged', 'SessionPersisted', 'ErrorOccurred', 'SourceLog',

    # Persistence and workers
    'SessionStore', 'SessionStoreError', 'RecoveryStats',
    'CleanupWorker', 'SubmissionWorker',
]
