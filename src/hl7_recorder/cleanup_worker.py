#!/usr/bin/env python3
"""
HL7 Session Cleanup Worker

Periodically removes persisted sessions whose retention period has expired.

Default behavior:
- Runs once on start(), then every cleanup_interval_hours (1-168)
- Expired files are moved to trash/cleanup-<sweep start ms>/ rather than
  unlinked; if the move fails the file is deleted directly
- Trash directories older than 7 days are purged
- Dry-run mode only logs and counts, touching nothing on disk
"""

import logging
import re
import shutil
import threading
from pathlib import Path
from typing import Callable, Optional

from .interfaces.data_models import MS_PER_DAY, CleanupSummary, now_ms
from .session_store import SESSION_SUFFIX, SessionStore

logger = logging.getLogger(__name__)

TRASH_RETENTION_MS = 7 * MS_PER_DAY
_TRASH_DIR_RE = re.compile(r'^cleanup-(\d+)$')


class CleanupWorker:
    """Retention sweep over persisted sessions (single-flight)"""

    def __init__(
        self,
        store: SessionStore,
        trash_dir: Path,
        cleanup_interval_hours: int = 24,
        retention_days: int = 30,
        dry_run_mode: bool = False,
        on_summary: Optional[Callable[[CleanupSummary], None]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize cleanup worker.

        Args:
            store: Session store whose files are swept
            trash_dir: Root of the soft-delete staging area
            cleanup_interval_hours: Sweep interval (clamped to 1-168)
            retention_days: Retention period (informational; expiry uses each
                file's persistedUntil)
            dry_run_mode: If True, only log what would be removed
            on_summary: Called with the CleanupSummary of every sweep
            clock: Epoch-millisecond time source
        """
        self.store = store
        self.trash_dir = Path(trash_dir)
        self.cleanup_interval_hours = max(1, min(168, int(cleanup_interval_hours)))
        self.retention_days = retention_days
        self.dry_run_mode = dry_run_mode
        self.on_summary = on_summary
        self.clock = clock

        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Run one sweep now, then schedule periodic sweeps"""
        if self.is_running:
            logger.warning("Cleanup worker already running")
            return

        logger.info(f"Starting cleanup worker (interval: {self.cleanup_interval_hours}h, "
                    f"retention: {self.retention_days}d, dry_run: {self.dry_run_mode})")

        self.run_cleanup_now()

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._timer_loop, name='hl7-cleanup', daemon=True)
        self._thread.start()

    def stop(self):
        """Cancel the periodic timer. A sweep in progress finishes."""
        if self._thread is None:
            return
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("Cleanup worker stopped")

    def update_config(
        self,
        cleanup_interval_hours: Optional[int] = None,
        retention_days: Optional[int] = None,
        dry_run_mode: Optional[bool] = None,
    ):
        """Apply new settings; a changed interval restarts the timer"""
        if retention_days is not None:
            self.retention_days = retention_days
        if dry_run_mode is not None:
            self.dry_run_mode = dry_run_mode

        if cleanup_interval_hours is not None:
            self.cleanup_interval_hours = max(1, min(168, int(cleanup_interval_hours)))
            if self.is_running:
                self.stop()
                self.start()

    def _timer_loop(self):
        interval_sec = self.cleanup_interval_hours * 3600
        while not self._stop_event.wait(interval_sec):
            try:
                self.run_cleanup_now()
            except Exception as e:
                logger.error(f"Cleanup interval execution failed: {e}", exc_info=True)

    def run_cleanup_now(self) -> CleanupSummary:
        """
        Run one sweep.

        Returns:
            Summary of the sweep, or a zero-effect summary if another sweep
            is already in progress
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.warning("Cleanup already in progress")
            return CleanupSummary.empty(dry_run=self.dry_run_mode)

        try:
            summary = self._sweep()
        finally:
            self._sweep_lock.release()

        if self.on_summary is not None:
            try:
                self.on_summary(summary)
            except Exception as e:
                logger.error(f"Cleanup summary callback failed: {e}")

        return summary

    def _sweep(self) -> CleanupSummary:
        start_time = self.clock()
        dry_run = self.dry_run_mode
        files_deleted = 0
        files_in_trash = 0
        bytes_freed = 0

        trash_subdir = self.trash_dir / f"cleanup-{start_time}"
        session_files = self.store.session_files()
        logger.info(f"Cleanup: scanning {len(session_files)} session files")

        for path in session_files:
            try:
                size = path.stat().st_size
                record = self.store.read_record(path)
            except (OSError, ValueError) as e:
                logger.error(f"Skipping unreadable session file {path.name}: {e}")
                continue

            persisted_until = record.get('persistedUntil')
            if not isinstance(persisted_until, (int, float)) or persisted_until > start_time:
                continue

            if dry_run:
                logger.info(f"[DRY RUN] Would delete: {path.name} ({size} bytes)")
                bytes_freed += size
                continue

            # Serialized with store writes to the same id
            with self.store.session_lock(path.name[:-len(SESSION_SUFFIX)]):
                outcome = self._move_to_trash(path, trash_subdir)
            if outcome is not None:
                files_deleted += 1
                bytes_freed += size
                if outcome == 'trashed':
                    files_in_trash += 1

        if not dry_run:
            self._purge_trash(start_time)

        summary = CleanupSummary(
            files_deleted=files_deleted,
            bytes_freed=bytes_freed,
            files_in_trash=files_in_trash,
            start_time=start_time,
            end_time=self.clock(),
            dry_run=dry_run,
        )

        logger.info(f"Cleanup: {'would free' if dry_run else 'freed'} {bytes_freed} bytes, "
                    f"deleted {files_deleted} files, in trash: {files_in_trash}")
        return summary

    def _move_to_trash(self, path: Path, trash_subdir: Path) -> Optional[str]:
        """
        Move one expired file into the sweep's trash directory.

        Returns:
            'trashed', 'deleted' (move failed, unlinked instead) or None
        """
        try:
            trash_subdir.mkdir(parents=True, exist_ok=True)
            path.replace(trash_subdir / path.name)
            logger.info(f"Moved to trash: {path.name}")
            return 'trashed'
        except OSError as e:
            logger.error(f"Failed to move {path.name} to trash, deleting instead: {e}")

        try:
            path.unlink()
            logger.info(f"Deleted: {path.name}")
            return 'deleted'
        except OSError as e:
            logger.error(f"Failed to delete {path.name}: {e}")
            return None

    def _purge_trash(self, now: int):
        """Remove trash directories whose embedded timestamp is over 7 days old"""
        if not self.trash_dir.exists():
            return

        try:
            entries = list(self.trash_dir.iterdir())
        except OSError as e:
            logger.error(f"Trash cleanup failed: {e}")
            return

        for entry in entries:
            match = _TRASH_DIR_RE.match(entry.name)
            if not match or not entry.is_dir():
                continue

            if now - int(match.group(1)) > TRASH_RETENTION_MS:
                try:
                    shutil.rmtree(entry)
                    logger.info(f"Cleaned up old trash: {entry.name}")
                except OSError as e:
                    logger.error(f"Failed to clean up trash entry {entry.name}: {e}")
