#!/usr/bin/env python3
"""
HL7 Recorder Daemon

Long-running process wiring every component together:

    TcpRelaySource → CaptureManager → SessionStore (sessions/*.json)
                                          ↑
                        CleanupWorker ────┤ (retention sweep → trash/)
                        SubmissionWorker ─┘ (HTTP delivery)

Startup order: store crash recovery and migration, then cleanup and
submission workers, then capture. Shutdown runs in reverse.
"""

import logging
import signal
import time
from typing import Dict, Optional

from .capture_manager import (
    CaptureManager, CaptureNotification, ErrorOccurred, SessionPersisted
)
from .cleanup_worker import CleanupWorker
from .config_utils import AppConfig, MarkerConfig, PathResolver, RelayConfig
from .interfaces.data_models import CleanupSummary, SubmissionResult
from .interfaces.packet_source import PacketSource, PassivePacketSource
from .session_assembler import SessionAbandoned, SessionCompleted
from .session_store import SessionStore
from .submission_worker import SubmissionWorker
from .tcp_relay_source import TcpRelaySource

logger = logging.getLogger(__name__)

STATUS_LOG_INTERVAL_SEC = 60


class RecorderDaemon:
    """Owns the recorder components and the main loop"""

    def __init__(self, config: Dict, path_resolver: PathResolver,
                 install_signal_handlers: bool = True):
        """
        Initialize daemon.

        Args:
            config: Parsed TOML configuration
            path_resolver: Resolves sessions/trash directories
            install_signal_handlers: Register SIGINT/SIGTERM for graceful shutdown
        """
        self.config = config
        self.path_resolver = path_resolver
        self.app_config = AppConfig.from_toml(config)
        self.markers = MarkerConfig.from_toml(config.get('markers', {}))
        self.relay_config = RelayConfig.from_toml(config)

        # Persistence (recovery and migration before anything writes)
        self.store = SessionStore(path_resolver.get_sessions_dir())
        self.store.initialize()
        recovery = self.store.perform_crash_recovery()
        migrated = self.store.load_and_migrate_all()
        logger.info(f"Session store ready: {len(migrated)} sessions on disk "
                    f"(recovered {recovery.recovered}, cleaned {recovery.cleaned})")

        self.capture = CaptureManager(store=self.store, app_config=self.app_config)
        self.capture.add_observer(self._on_capture_notification)

        self.cleanup_worker = CleanupWorker(
            store=self.store,
            trash_dir=path_resolver.get_trash_dir(),
            cleanup_interval_hours=self.app_config.cleanup_interval_hours,
            retention_days=self.app_config.retention_days,
            dry_run_mode=self.app_config.dry_run_mode,
            on_summary=self._on_cleanup_summary,
        )

        self.submission_worker = SubmissionWorker(
            store=self.store,
            endpoint=self.app_config.submission_endpoint,
            auth_header=self.app_config.submission_auth_header,
            concurrency=self.app_config.submission_concurrency,
            max_retries=self.app_config.submission_max_retries,
            submission_interval_minutes=self.app_config.submission_interval_minutes,
            on_result=self._on_submission_result,
        )

        self.source: Optional[PacketSource] = None
        self.start_time = time.time()

        # Graceful shutdown
        self.running = False
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def build_source(self) -> PacketSource:
        """Relay source when an upstream host is configured, passive otherwise"""
        relay = self.relay_config
        if relay.is_configured:
            return TcpRelaySource(relay.listen_host, relay.listen_port,
                                  relay.upstream_host, relay.upstream_port)

        logger.warning("No relay upstream configured ([relay] or [markers] host_address/host_port); "
                       "capture will only see packets pushed by an external source")
        return PassivePacketSource()

    def start_capture(self):
        self.source = self.build_source()
        self.capture.start_capture(self.markers, self.source)

    def run(self, start_capture: Optional[bool] = None):
        """
        Main run loop.

        Args:
            start_capture: Start capture immediately; defaults to the
                [capture] auto_start setting
        """
        if start_capture is None:
            start_capture = self.app_config.auto_start_capture

        logger.info("Starting HL7 recorder daemon")

        self.cleanup_worker.start()
        self.submission_worker.start()

        if start_capture:
            self.start_capture()
        else:
            logger.info("Capture not started (auto_start is off)")

        self.running = True
        logger.info("HL7 recorder running. Press Ctrl+C to stop.")

        last_status_time = time.time()
        try:
            while self.running:
                time.sleep(1)
                now = time.time()

                if now - last_status_time >= STATUS_LOG_INTERVAL_SEC:
                    self._log_status()
                    last_status_time = now

        except KeyboardInterrupt:
            logger.info("Received interrupt signal")

        finally:
            self.stop()

    def stop(self):
        """Shut down capture, workers and pending persistence"""
        self.running = False
        logger.info("Shutting down HL7 recorder")

        self.capture.shutdown()
        self.submission_worker.shutdown()
        self.cleanup_worker.stop()

        logger.info(f"✅ HL7 recorder stopped (uptime {int(time.time() - self.start_time)}s)")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self.running = False

    def _log_status(self):
        status = self.capture.get_status()
        progress = self.submission_worker.get_progress()
        logger.info(
            f"Status: capturing={status.is_capturing}, "
            f"{status.packet_count} packets, "
            f"{status.session_count} sessions, "
            f"{status.element_count} elements, "
            f"submission in flight={progress.in_flight} queued={progress.queue_size}"
        )

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def _on_capture_notification(self, notification: CaptureNotification):
        if isinstance(notification, SessionPersisted):
            logger.info(f"Session {notification.session_id} saved to {notification.path.name}")
            self.submission_worker.trigger_now()
        elif isinstance(notification, SessionCompleted):
            logger.debug(f"Session {notification.session.id} completed")
        elif isinstance(notification, SessionAbandoned):
            logger.debug(f"Session {notification.session.id} abandoned")
        elif isinstance(notification, ErrorOccurred):
            logger.warning(f"Capture error ({notification.context}): {notification.error}")

    def _on_cleanup_summary(self, summary: CleanupSummary):
        logger.info(f"Cleanup summary: {summary.to_dict()}")

    def _on_submission_result(self, result: SubmissionResult):
        if not result.success:
            logger.warning(f"Session {result.session_id} not delivered: {result.error}")
