#!/usr/bin/env python3
"""
HL7 Capture Manager

Wires a packet source to the session assembler and owns the capture
lifecycle (start/stop/pause/resume). Completed sessions are persisted on a
background executor so the packet path never waits on disk I/O.

Observers receive tagged notifications:
    ElementProduced, SessionCompleted, SessionAbandoned  (from the assembler)
    SessionPersisted, StatusChanged, ErrorOccurred, SourceLog

Architecture:
    PacketSource → CaptureManager → SessionAssembler
                        ↓ (executor)
                   SessionStore
"""

import dataclasses
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Set, Union

from .config_utils import AppConfig, MarkerConfig, validate_marker_config
from .interfaces.data_models import CaptureStatus, Session, now_ms
from .interfaces.packet_source import (
    ControllablePacketSource, Packet, PacketSource, PacketSourceListener
)
from .session_assembler import (
    AssemblerEvent, ElementProduced, SessionAbandoned, SessionAssembler, SessionCompleted
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """Capture lifecycle misuse"""


class AlreadyCapturingError(CaptureError):
    """start_capture() called while a capture is in progress"""


class InvalidMarkerConfigError(CaptureError, ValueError):
    """Marker configuration failed validation"""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass(frozen=True)
class StatusChanged:
    status: CaptureStatus


@dataclass(frozen=True)
class SessionPersisted:
    session_id: str
    path: Path


@dataclass(frozen=True)
class ErrorOccurred:
    """Non-fatal failure; capture continues"""
    error: Exception
    context: str    # 'source', 'persistence', 'packet'


@dataclass(frozen=True)
class SourceLog:
    message: str


CaptureNotification = Union[
    ElementProduced, SessionCompleted, SessionAbandoned,
    SessionPersisted, StatusChanged, ErrorOccurred, SourceLog,
]
CaptureObserver = Callable[[CaptureNotification], None]


class _SourceBridge(PacketSourceListener):
    """Forwards packet source events into the manager"""

    def __init__(self, manager: 'CaptureManager'):
        self.manager = manager

    def on_packet(self, packet: Packet) -> None:
        self.manager.handle_packet(packet)

    def on_start(self) -> None:
        logger.info("Packet source started")

    def on_stop(self) -> None:
        logger.info("Packet source stopped")

    def on_error(self, error: Exception) -> None:
        logger.warning(f"Packet source error: {error}")
        self.manager._dispatch([ErrorOccurred(error, 'source')])

    def on_log(self, message: str) -> None:
        logger.debug(f"Packet source: {message}")
        self.manager._dispatch([SourceLog(message)])


class CaptureManager:
    """
    Capture orchestrator.

    Example:
        manager = CaptureManager(store=SessionStore(sessions_dir), app_config=app_config)
        manager.add_observer(lambda n: print(n))
        manager.start_capture(MarkerConfig(), source)
        ...
        manager.stop_capture()
        manager.shutdown()
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        app_config: Optional[AppConfig] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize capture manager.

        Args:
            store: Session store for completed sessions (None disables persistence)
            app_config: Runtime settings (retention, table size, message extraction)
            clock: Epoch-millisecond time source
        """
        self.store = store
        self.app_config = app_config or AppConfig()

        self.assembler = SessionAssembler(
            MarkerConfig(),
            max_sessions=self.app_config.max_sessions,
            extract_all_messages=self.app_config.extract_all_messages,
            clock=clock,
        )

        # State
        self.is_capturing = False
        self.is_paused = False
        self.packet_count = 0
        self.source: Optional[PacketSource] = None
        self._bridge = _SourceBridge(self)

        # One packet event at a time; lifecycle changes take the same lock
        self._lock = threading.RLock()

        self._observers: List[CaptureObserver] = []
        self._observers_lock = threading.Lock()

        # Background persistence
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending_writes: Set[Future] = set()
        self._pending_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def add_observer(self, observer: CaptureObserver):
        with self._observers_lock:
            self._observers.append(observer)

    def remove_observer(self, observer: CaptureObserver):
        with self._observers_lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def _dispatch(self, notifications: List[CaptureNotification]):
        if not notifications:
            return
        with self._observers_lock:
            observers = list(self._observers)
        for notification in notifications:
            for observer in observers:
                try:
                    observer(notification)
                except Exception as e:
                    logger.error(f"Capture observer failed on {type(notification).__name__}: {e}",
                                 exc_info=True)

    def _status_notification(self) -> StatusChanged:
        return StatusChanged(self.get_status())

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_capture(self, markers: MarkerConfig, source: PacketSource):
        """
        Start capturing from a packet source.

        Raises:
            InvalidMarkerConfigError: markers failed validation
            AlreadyCapturingError: a capture is already in progress
            Exception: whatever a controllable source raises from start();
                capture state is reset before it propagates
        """
        validation = validate_marker_config(markers)
        if not validation.valid:
            raise InvalidMarkerConfigError(validation.errors)

        with self._lock:
            if self.is_capturing:
                raise AlreadyCapturingError("Capture already in progress")

            self.assembler.set_markers(markers)
            self.assembler.reset()
            self.packet_count = 0
            self.is_paused = False
            self.source = source
            self.is_capturing = True
            source.add_listener(self._bridge)

        if isinstance(source, ControllablePacketSource) and not source.is_running():
            try:
                source.start()
            except Exception:
                logger.error("Packet source failed to start", exc_info=True)
                with self._lock:
                    source.remove_listener(self._bridge)
                    self.source = None
                    self.is_capturing = False
                    self.assembler.clear_active()
                raise

        values = markers.marker_bytes()
        logger.info(f"✅ Capture started (start=0x{values['start']:02x}, "
                    f"ack=0x{values['ack']:02x}, end=0x{values['end']:02x})")
        self._dispatch([self._status_notification()])

    def stop_capture(self):
        """
        Stop capturing. Idempotent.

        A failure stopping the source is reported as an ErrorOccurred
        notification; local state is cleared regardless.
        """
        with self._lock:
            if not self.is_capturing:
                return
            source = self.source

        notifications: List[CaptureNotification] = []
        try:
            if isinstance(source, ControllablePacketSource):
                source.stop()
        except Exception as e:
            logger.warning(f"Failed to stop packet source: {e}")
            notifications.append(ErrorOccurred(e, 'source'))
        finally:
            with self._lock:
                if source is not None:
                    source.remove_listener(self._bridge)
                self.source = None
                self.is_capturing = False
                self.is_paused = False
                self.assembler.clear_active()
                notifications.append(self._status_notification())

        logger.info("Capture stopped")
        self._dispatch(notifications)

    def pause_capture(self):
        """Mark capture paused. Packets are still processed."""
        with self._lock:
            if not self.is_capturing or self.is_paused:
                return
            self.is_paused = True
            notification = self._status_notification()
        self._dispatch([notification])

    def resume_capture(self):
        with self._lock:
            if not self.is_capturing or not self.is_paused:
                return
            self.is_paused = False
            notification = self._status_notification()
        self._dispatch([notification])

    def shutdown(self, timeout: Optional[float] = 10.0):
        """Stop capture and wait for in-flight persistence"""
        self.stop_capture()
        self.wait_for_persistence(timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # -------------------------------------------------------------------------
    # Packet path
    # -------------------------------------------------------------------------

    def handle_packet(self, packet: Packet):
        """
        Process one chunk. Never raises.

        Called on the packet source's thread.
        """
        notifications: List[CaptureNotification] = []
        finished: List[Session] = []
        try:
            with self._lock:
                if not self.is_capturing or not packet.data:
                    return
                self.packet_count += 1

                events = self.assembler.process(packet)
                notifications.extend(events)

                for event in events:
                    if isinstance(event, (SessionCompleted, SessionAbandoned)):
                        finished.append(dataclasses.replace(
                            event.session, elements=list(event.session.elements),
                            messages=list(event.session.messages)))
                    if isinstance(event, SessionCompleted):
                        notifications.append(self._status_notification())
        except Exception as e:
            logger.error(f"Packet handling failed: {e}", exc_info=True)
            notifications.append(ErrorOccurred(e, 'packet'))

        self._dispatch(notifications)

        # Scheduled after dispatch so SessionCompleted reaches observers first
        for snapshot in finished:
            self._schedule_persist(snapshot)

    def _schedule_persist(self, snapshot: Session):
        if self.store is None or not self.app_config.enable_persistence:
            return

        with self._pending_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='hl7-persist')
            future = self._executor.submit(self._persist, snapshot,
                                           self.app_config.retention_days)
            self._pending_writes.add(future)
        future.add_done_callback(self._forget_write)

    def _persist(self, session: Session, retention_days: int):
        """Save one finished session and report the outcome (executor thread)"""
        try:
            path = self.store.save(session, retention_days)
        except Exception as e:
            logger.error(f"Failed to persist session {session.id}: {e}")
            self._dispatch([ErrorOccurred(e, 'persistence')])
            return
        self._dispatch([SessionPersisted(session.id, path)])

    def _forget_write(self, future: Future):
        with self._pending_lock:
            self._pending_writes.discard(future)

    def wait_for_persistence(self, timeout: Optional[float] = None) -> bool:
        """
        Block until scheduled writes finish.

        Returns:
            True if nothing is still pending
        """
        with self._pending_lock:
            pending = list(self._pending_writes)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_sessions(self) -> List[Session]:
        with self._lock:
            return list(self.assembler.sessions.values())

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self.assembler.sessions.get(session_id)

    def clear_sessions(self):
        with self._lock:
            self.assembler.reset()
            notification = self._status_notification()
        self._dispatch([notification])

    def update_marker_config(self, markers: MarkerConfig):
        validation = validate_marker_config(markers)
        if not validation.valid:
            raise InvalidMarkerConfigError(validation.errors)
        with self._lock:
            self.assembler.set_markers(markers)

    def get_status(self) -> CaptureStatus:
        with self._lock:
            return CaptureStatus(
                is_capturing=self.is_capturing,
                is_paused=self.is_paused,
                session_count=len(self.assembler.sessions),
                element_count=self.assembler.element_count(),
                packet_count=self.packet_count,
            )
