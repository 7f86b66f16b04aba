"""
HL7 Recorder API Interfaces

Defines the contracts between the capture pipeline stages:
1. Packet source (bytes + endpoint addresses)
2. Session assembly (elements and sessions)
3. Persistence, cleanup and submission of sessions

These interfaces allow testing, implementation swapping, and clear separation of concerns.
"""

# Data models (shared structures)
from .data_models import (
    MS_PER_DAY,
    Direction,
    ElementType,
    SubmissionStatus,
    Element,
    Session,
    CleanupSummary,
    SubmissionResult,
    SubmissionProgress,
    CaptureStatus,
    now_ms,
)

# Packet source boundary
from .packet_source import (
    Packet,
    PacketSourceListener,
    PacketSource,
    PassivePacketSource,
    ControllablePacketSource,
)

__all__ = [
    # ===== Data Models =====
    'MS_PER_DAY',
    'Direction',
    'ElementType',
    'SubmissionStatus',
    'Element',
    'Session',
    'CleanupSummary',
    'SubmissionResult',
    'SubmissionProgress',
    'CaptureStatus',
    'now_ms',

    # ===== Packet Source =====
    'Packet',
    'PacketSourceListener',
    'PacketSource',
    'PassivePacketSource',
    'ControllablePacketSource',
]
