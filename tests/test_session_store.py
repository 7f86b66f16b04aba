#!/usr/bin/env python3
"""
Tests for the session store

This test suite validates:
- Atomic save and load
- Retention arithmetic (persistedUntil)
- Partial-failure tolerant bulk load
- Idempotent delete
- Crash recovery of interrupted writes
- Migration of records without metadata
- Retry / ignore bookkeeping
"""

import json
import threading

import pytest

from conftest import make_session

from hl7_recorder.interfaces import MS_PER_DAY, SubmissionStatus
from hl7_recorder.session_store import FORMAT_VERSION, SessionStore, SessionStoreError


class TestSaveAndLoad:
    """Tests for atomic writes and reads"""

    def test_round_trip(self, store):
        session = make_session()

        store.save(session, retention_days=30)
        loaded = store.load(session.id)

        assert loaded == session

    def test_persisted_until(self, store):
        """persistedUntil == startTime + retentionDays * 86400000"""
        session = make_session(start_time=1_000_000)

        store.save(session, retention_days=7)

        record = json.loads(store.path_for(session.id).read_text())
        assert record['persistedUntil'] == 1_000_000 + 604_800_000
        assert session.persisted_until == 1_000_000 + 604_800_000

    def test_file_layout(self, store):
        session = make_session()

        path = store.save(session, retention_days=7)

        assert path.name == f"{session.id}.json"
        record = json.loads(path.read_text())
        assert record['_metadata']['formatVersion'] == FORMAT_VERSION
        assert record['_metadata']['retentionDays'] == 7
        assert isinstance(record['_metadata']['savedAt'], int)
        assert record['messages'] == session.messages
        assert record['submissionStatus'] == 'pending'
        assert record['elements'][0]['type'] == 'start'
        assert record['elements'][0]['hexData'] == '05'

    def test_no_temp_file_left(self, store):
        store.save(make_session(), retention_days=30)
        assert list(store.sessions_dir.glob('*.tmp')) == []

    def test_overwrite(self, store):
        session = make_session()
        store.save(session, retention_days=30)

        session.submission_status = SubmissionStatus.SUBMITTED
        store.save(session, retention_days=30)

        assert store.load(session.id).submission_status == SubmissionStatus.SUBMITTED
        assert len(store.session_files()) == 1

    def test_concurrent_writes_same_session(self, store):
        session = make_session()
        errors = []

        def writer(attempts):
            try:
                copy = make_session(submission_attempts=attempts)
                store.save(copy, retention_days=30)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        loaded = store.load(session.id)
        assert 0 <= loaded.submission_attempts < 10
        assert store._write_locks == {}

    def test_load_missing_returns_none(self, store):
        assert store.load('session-1-1') is None
        assert not store.exists('session-1-1')

    def test_load_corrupt_raises(self, store):
        (store.sessions_dir / 'session-1-1.json').write_text('{"id": "session-1-1"')
        with pytest.raises(SessionStoreError):
            store.load('session-1-1')

    def test_unsafe_id_rejected(self, store):
        with pytest.raises(ValueError):
            store.path_for('../etc/passwd')

    def test_initialize_failure(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('not a directory')
        with pytest.raises(SessionStoreError):
            SessionStore(blocker / 'sessions').initialize()


class TestBulkLoad:
    """Tests for loading every persisted session"""

    def test_corrupt_file_skipped(self, store):
        store.save(make_session('session-1-1'), retention_days=30)
        store.save(make_session('session-2-2'), retention_days=30)
        (store.sessions_dir / 'session-3-3.json').write_text('{not json')
        (store.sessions_dir / 'session-4-4.json').write_text('[1, 2, 3]')

        sessions = store.load_all()

        assert sorted(s.id for s in sessions) == ['session-1-1', 'session-2-2']

    def test_wrong_shape_record_skipped(self, store):
        """Valid JSON with non-object elements does not stop the bulk load"""
        store.save(make_session('session-1-1'), retention_days=30)
        (store.sessions_dir / 'session-2-2.json').write_text(
            '{"id": "session-2-2", "startTime": 1, "elements": ["oops"]}')
        (store.sessions_dir / 'session-3-3.json').write_text(
            '{"id": "session-3-3", "startTime": 1, "elements": {"a": 1}}')

        assert [s.id for s in store.load_all()] == ['session-1-1']
        assert [s.id for s in store.load_and_migrate_all()] == ['session-1-1']

    def test_wrong_shape_record_load_raises(self, store):
        (store.sessions_dir / 'session-2-2.json').write_text(
            '{"id": "session-2-2", "startTime": 1, "elements": ["oops"]}')
        with pytest.raises(SessionStoreError):
            store.load('session-2-2')

    def test_temp_files_not_loaded(self, store):
        store.save(make_session(), retention_days=30)
        (store.sessions_dir / 'session-9-9.json.tmp').write_text('{}')

        assert len(store.load_all()) == 1

    def test_missing_directory(self, tmp_path):
        assert SessionStore(tmp_path / 'nowhere').load_all() == []


class TestDelete:
    """Tests for deletion and retention"""

    def test_delete_idempotent(self, store):
        session = make_session()
        store.save(session, retention_days=30)

        store.delete(session.id)
        store.delete(session.id)

        assert not store.exists(session.id)

    def test_get_expired(self, store):
        store.save(make_session('session-1-1', start_time=0), retention_days=1)
        store.save(make_session('session-2-2', start_time=10 * MS_PER_DAY), retention_days=1)

        expired = store.get_expired(now=MS_PER_DAY)

        assert [s.id for s in expired] == ['session-1-1']

    def test_cleanup_expired(self, store):
        store.save(make_session('session-1-1', start_time=0), retention_days=1)
        store.save(make_session('session-2-2', start_time=4_000_000_000_000), retention_days=1)

        assert store.cleanup_expired(retention_days=30) == 1
        assert [s.id for s in store.load_all()] == ['session-2-2']


class TestCrashRecovery:
    """Tests for orphaned temp files left by interrupted writes"""

    def test_temp_with_final_file_removed(self, store):
        session = make_session()
        store.save(session, retention_days=30)
        temp = store.sessions_dir / f"{session.id}.json.tmp"
        temp.write_text('{"partial": ')

        stats = store.perform_crash_recovery()

        assert stats.recovered == 1 and stats.cleaned == 0
        assert not temp.exists()
        assert store.load(session.id) == session

    def test_valid_temp_renamed(self, store):
        session = make_session()
        temp = store.sessions_dir / f"{session.id}.json.tmp"
        temp.write_text(json.dumps(session.to_dict()))

        stats = store.perform_crash_recovery()

        assert stats.recovered == 1
        assert not temp.exists()
        assert store.load(session.id).messages == session.messages

    def test_corrupt_temp_cleaned(self, store):
        temp = store.sessions_dir / 'session-5-5.json.tmp'
        temp.write_text('{"id": "session-5-5", "ele')

        stats = store.perform_crash_recovery()

        assert stats.cleaned == 1 and stats.recovered == 0
        assert not temp.exists()
        assert not store.exists('session-5-5')

    def test_nothing_to_recover(self, store):
        stats = store.perform_crash_recovery()
        assert (stats.recovered, stats.cleaned) == (0, 0)
        assert store.find_orphaned_temp_files() == []


class TestMigration:
    """Tests for records written without a metadata block"""

    def test_legacy_record_migrated(self, store):
        session = make_session(start_time=5_000)
        path = store.path_for(session.id)
        path.write_text(json.dumps(session.to_dict()))

        sessions = store.load_and_migrate_all()

        assert [s.id for s in sessions] == [session.id]
        record = json.loads(path.read_text())
        assert record['_metadata']['retentionDays'] == 30
        assert record['persistedUntil'] == 5_000 + 30 * MS_PER_DAY

    def test_current_record_untouched(self, store):
        session = make_session()
        path = store.save(session, retention_days=7)
        before = path.read_text()

        store.load_and_migrate_all()

        assert path.read_text() == before


class TestSubmissionBookkeeping:
    """Tests for retry / ignore"""

    def test_mark_for_retry(self, store):
        session = make_session(start_time=1_000, submission_status=SubmissionStatus.FAILED,
                               submission_attempts=3, submission_error='HTTP 503')
        store.save(session, retention_days=7)

        assert store.mark_for_retry(session.id)

        loaded = store.load(session.id)
        assert loaded.submission_status == SubmissionStatus.PENDING
        assert loaded.submission_attempts == 0
        assert loaded.submission_error is None
        # Retention period preserved
        assert loaded.persisted_until == 1_000 + 7 * MS_PER_DAY

    def test_mark_ignored(self, store):
        session = make_session()
        store.save(session, retention_days=30)

        assert store.mark_ignored(session.id)
        assert store.load(session.id).submission_status == SubmissionStatus.IGNORED

    def test_unknown_session(self, store):
        assert not store.mark_for_retry('session-0-0')
        assert not store.mark_ignored('session-0-0')

    def test_update_keeps_existing_retention(self, store):
        session = make_session(start_time=1_000)
        store.save(session, retention_days=7)

        session.submission_status = SubmissionStatus.SUBMITTED
        path = store.update(session)

        assert path == store.path_for(session.id)
        assert store.load(session.id).persisted_until == 1_000 + 7 * MS_PER_DAY

    def test_update_does_not_recreate_removed_file(self, store):
        session = make_session()
        store.save(session, retention_days=30)
        store.delete(session.id)

        session.submission_status = SubmissionStatus.SUBMITTED

        assert store.update(session) is None
        assert not store.exists(session.id)
        assert store.find_orphaned_temp_files() == []
