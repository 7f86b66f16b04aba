#!/usr/bin/env python3
"""
Tests for the cleanup worker

This test suite validates:
- Expiry rule (persistedUntil <= now)
- Move-to-trash layout and unlink fallback
- Dry-run mode never touches the filesystem
- Trash purge after 7 days
- Single-flight sweeps
- Timer start/stop/reconfiguration
"""

import threading
from pathlib import Path

from conftest import make_session

from hl7_recorder.cleanup_worker import CleanupWorker
from hl7_recorder.interfaces import MS_PER_DAY
from hl7_recorder.session_store import SessionStore

NOW = 1_700_000_000_000


def fixed_clock():
    return NOW


def save_expired(store, session_id='session-1-1'):
    """persistedUntil three days in the past"""
    session = make_session(session_id, start_time=NOW - 10 * MS_PER_DAY)
    return store.save(session, retention_days=7)


def save_current(store, session_id='session-2-2'):
    """persistedUntil seven days in the future"""
    session = make_session(session_id, start_time=NOW)
    return store.save(session, retention_days=7)


def snapshot(root: Path):
    return sorted(str(p.relative_to(root)) for p in root.rglob('*'))


class TestSweep:
    """Tests for a single cleanup run"""

    def test_expired_moved_to_trash(self, store, tmp_path):
        expired = save_expired(store)
        current = save_current(store)
        worker = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock)

        summary = worker.run_cleanup_now()

        assert not expired.exists()
        assert current.exists()
        assert (tmp_path / 'trash' / f"cleanup-{NOW}" / expired.name).exists()
        assert summary.files_deleted == 1
        assert summary.files_in_trash == 1
        assert summary.bytes_freed > 0
        assert summary.start_time == NOW
        assert not summary.dry_run

    def test_expiry_boundary_inclusive(self, store, tmp_path):
        session = make_session(start_time=NOW - 7 * MS_PER_DAY)
        path = store.save(session, retention_days=7)
        assert session.persisted_until == NOW

        CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock).run_cleanup_now()

        assert not path.exists()

    def test_dry_run_changes_nothing(self, store, tmp_path):
        expired = save_expired(store)
        save_current(store)
        before = snapshot(tmp_path)
        worker = CleanupWorker(store, tmp_path / 'trash', dry_run_mode=True, clock=fixed_clock)

        summary = worker.run_cleanup_now()

        assert snapshot(tmp_path) == before
        assert expired.exists()
        assert summary.files_deleted == 0
        assert summary.files_in_trash == 0
        assert summary.bytes_freed == expired.stat().st_size
        assert summary.dry_run

    def test_corrupt_file_skipped(self, store, tmp_path):
        corrupt = store.sessions_dir / 'session-0-0.json'
        corrupt.write_text('{broken')
        expired = save_expired(store)

        summary = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock).run_cleanup_now()

        assert corrupt.exists()
        assert not expired.exists()
        assert summary.files_deleted == 1

    def test_nothing_expired(self, store, tmp_path):
        save_current(store)

        summary = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock).run_cleanup_now()

        assert summary.files_deleted == 0
        assert not (tmp_path / 'trash').exists()

    def test_unlink_fallback_when_move_fails(self, store, tmp_path, monkeypatch):
        expired = save_expired(store)

        def failing_replace(self, target):
            raise OSError("cross-device link")

        monkeypatch.setattr(Path, 'replace', failing_replace)
        summary = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock).run_cleanup_now()

        assert not expired.exists()
        assert summary.files_deleted == 1
        assert summary.files_in_trash == 0

    def test_move_waits_for_writer_of_same_session(self, store, tmp_path):
        expired = save_expired(store)
        worker = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock)
        results = []

        with store.session_lock('session-1-1'):
            sweep = threading.Thread(target=lambda: results.append(worker.run_cleanup_now()))
            sweep.start()
            sweep.join(0.3)
            assert sweep.is_alive()
            assert expired.exists()

        sweep.join(5)
        assert results[0].files_deleted == 1
        assert not expired.exists()

    def test_summary_callback(self, store, tmp_path):
        save_expired(store)
        summaries = []
        worker = CleanupWorker(store, tmp_path / 'trash', on_summary=summaries.append,
                               clock=fixed_clock)

        worker.run_cleanup_now()
        worker.run_cleanup_now()

        assert [s.files_deleted for s in summaries] == [1, 0]


class TestTrashPurge:
    """Tests for permanent deletion of old trash directories"""

    def _make_trash(self, trash: Path, name: str):
        directory = trash / name
        directory.mkdir(parents=True)
        (directory / 'session-1-1.json').write_text('{}')
        return directory

    def test_old_trash_removed(self, store, tmp_path):
        trash = tmp_path / 'trash'
        old = self._make_trash(trash, f"cleanup-{NOW - 8 * MS_PER_DAY}")
        recent = self._make_trash(trash, f"cleanup-{NOW - 1 * MS_PER_DAY}")
        unrelated = self._make_trash(trash, 'manual-backup')

        CleanupWorker(store, trash, clock=fixed_clock).run_cleanup_now()

        assert not old.exists()
        assert recent.exists()
        assert unrelated.exists()

    def test_dry_run_keeps_old_trash(self, store, tmp_path):
        trash = tmp_path / 'trash'
        old = self._make_trash(trash, f"cleanup-{NOW - 30 * MS_PER_DAY}")

        CleanupWorker(store, trash, dry_run_mode=True, clock=fixed_clock).run_cleanup_now()

        assert old.exists()


class BlockingStore(SessionStore):
    """Store whose file listing blocks until released"""

    def __init__(self, sessions_dir):
        super().__init__(sessions_dir)
        self.entered = threading.Event()
        self.release = threading.Event()

    def session_files(self):
        self.entered.set()
        self.release.wait(5)
        return super().session_files()


class TestSingleFlight:
    """Tests for concurrent sweep triggers"""

    def test_concurrent_run_is_noop(self, tmp_path):
        store = BlockingStore(tmp_path / 'sessions')
        store.initialize()
        expired = save_expired(store)
        worker = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock)

        results = []
        first = threading.Thread(target=lambda: results.append(worker.run_cleanup_now()))
        first.start()
        assert store.entered.wait(5)

        second = worker.run_cleanup_now()
        assert second.files_deleted == 0
        assert second.bytes_freed == 0
        assert expired.exists()

        store.release.set()
        first.join(5)
        assert results[0].files_deleted == 1
        assert not expired.exists()


class TestTimer:
    """Tests for the periodic timer"""

    def test_start_runs_immediately(self, store, tmp_path):
        expired = save_expired(store)
        worker = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock)

        worker.start()
        try:
            assert not expired.exists()
            assert worker.is_running
        finally:
            worker.stop()

        assert not worker.is_running

    def test_interval_clamped(self, store, tmp_path):
        assert CleanupWorker(store, tmp_path, cleanup_interval_hours=0).cleanup_interval_hours == 1
        assert CleanupWorker(store, tmp_path, cleanup_interval_hours=500).cleanup_interval_hours == 168

    def test_update_config_restarts_timer(self, store, tmp_path):
        worker = CleanupWorker(store, tmp_path / 'trash', clock=fixed_clock)
        worker.start()
        try:
            old_thread = worker._thread
            worker.update_config(cleanup_interval_hours=2, dry_run_mode=True)

            assert worker.cleanup_interval_hours == 2
            assert worker.dry_run_mode
            assert worker.is_running
            assert worker._thread is not old_thread
        finally:
            worker.stop()

    def test_stop_without_start(self, store, tmp_path):
        CleanupWorker(store, tmp_path / 'trash').stop()
