#!/usr/bin/env python3
"""
Session Store - Crash-safe persistence of HL7 sessions

One JSON file per session (<session id>.json) holding the session fields,
persistedUntil and a _metadata block:

    {
        "id": "session-1731000000000-1",
        ...
        "persistedUntil": 1733592000000,
        "_metadata": {"formatVersion": "1.0.0", "savedAt": 1731000000123, "retentionDays": 30}
    }

Writes go to <name>.json.tmp first and are renamed into place, so a reader
sees either the old file or the new file, never a partial one. Writes for
the same session id are serialized; unrelated sessions write concurrently.
"""

import json
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .interfaces.data_models import MS_PER_DAY, Session, SubmissionStatus, now_ms

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0.0"
DEFAULT_RETENTION_DAYS = 30
SESSION_SUFFIX = '.json'
TEMP_SUFFIX = '.json.tmp'

_SAFE_ID_RE = re.compile(r'^[A-Za-z0-9._-]+$')


class SessionStoreError(Exception):
    """Store cannot operate (e.g. the sessions directory is unusable)"""


@dataclass
class RecoveryStats:
    """Outcome of startup crash recovery"""
    recovered: int = 0
    cleaned: int = 0


class SessionStore:
    """
    Atomic on-disk session persistence.

    Example:
        store = SessionStore(Path('/var/lib/hl7-recorder/sessions'))
        store.initialize()
        store.perform_crash_recovery()
        store.save(session, retention_days=30)
        sessions = store.load_all()
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)
        self._registry_lock = threading.Lock()
        self._write_locks: Dict[str, list] = {}  # id -> [Lock, users]

    def initialize(self):
        """Create the sessions directory if needed"""
        try:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SessionStoreError(f"Cannot create sessions directory {self.sessions_dir}: {e}") from e

    # -------------------------------------------------------------------------
    # Paths and locking
    # -------------------------------------------------------------------------

    def path_for(self, session_id: str) -> Path:
        if not _SAFE_ID_RE.match(session_id):
            raise ValueError(f"Unsafe session id for filename: {session_id!r}")
        return self.sessions_dir / f"{session_id}{SESSION_SUFFIX}"

    @contextmanager
    def session_lock(self, session_id: str):
        """Serialize writers (and the cleanup sweep) on one session id"""
        with self._registry_lock:
            entry = self._write_locks.get(session_id)
            if entry is None:
                entry = self._write_locks[session_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._write_locks[session_id]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def save(self, session: Session, retention_days: int) -> Path:
        """
        Persist a session atomically.

        Sets session.persisted_until = start_time + retention_days days.

        Returns:
            Path of the written file

        Raises:
            OSError on write failure (the previous file, if any, is untouched)
        """
        path = self.path_for(session.id)
        with self.session_lock(session.id):
            self._atomic_write(path, self._build_record(session, retention_days))

        logger.debug(f"Saved session {session.id} (persisted until {session.persisted_until})")
        return path

    def update(self, session: Session, retention_days: Optional[int] = None) -> Optional[Path]:
        """
        Re-save an already persisted session.

        Keeps the retention period recorded in the existing file unless one
        is given explicitly. A session whose file is gone (swept by cleanup
        or deleted) is not re-created.

        Returns:
            Path of the written file, or None if the file no longer exists
        """
        path = self.path_for(session.id)
        with self.session_lock(session.id):
            if not path.exists():
                logger.debug(f"Session {session.id} no longer on disk, update skipped")
                return None
            if retention_days is None:
                retention_days = self._stored_retention_days(session.id)
            self._atomic_write(path, self._build_record(session, retention_days))

        logger.debug(f"Updated session {session.id}")
        return path

    def _build_record(self, session: Session, retention_days: int) -> Dict[str, Any]:
        session.persisted_until = session.start_time + retention_days * MS_PER_DAY

        record = session.to_dict()
        record['persistedUntil'] = session.persisted_until
        record['_metadata'] = {
            'formatVersion': FORMAT_VERSION,
            'savedAt': now_ms(),
            'retentionDays': retention_days,
        }
        return record

    def _atomic_write(self, path: Path, record: Dict[str, Any]):
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_name(path.name[:-len(SESSION_SUFFIX)] + TEMP_SUFFIX)
        try:
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(record, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            temp_file.replace(path)
        except OSError:
            temp_file.unlink(missing_ok=True)
            raise

    def _stored_retention_days(self, session_id: str) -> int:
        try:
            record = self.read_record(self.path_for(session_id))
            days = record.get('_metadata', {}).get('retentionDays')
            if isinstance(days, int) and days > 0:
                return days
        except (OSError, ValueError):
            pass
        return DEFAULT_RETENTION_DAYS

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def session_files(self) -> List[Path]:
        """All final session files (temp files excluded), sorted by name"""
        if not self.sessions_dir.exists():
            return []
        return sorted(p for p in self.sessions_dir.glob(f"*{SESSION_SUFFIX}") if p.is_file())

    @staticmethod
    def read_record(path: Path) -> Dict[str, Any]:
        """
        Read one raw record.

        Raises:
            OSError if unreadable, ValueError if not a JSON object
        """
        with open(path, 'r', encoding='utf-8') as f:
            record = json.load(f)
        if not isinstance(record, dict):
            raise ValueError(f"{path.name} does not contain a JSON object")
        return record

    def iter_records(self) -> Iterator[Tuple[Path, Dict[str, Any]]]:
        """Yield (path, record) for every readable file, skipping corrupt ones"""
        for path in self.session_files():
            try:
                yield path, self.read_record(path)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load session {path.name}: {e}")

    def load_all(self) -> List[Session]:
        """
        Load every persisted session.

        Files that cannot be read or parsed are logged and skipped.
        """
        sessions = []
        for path, record in self.iter_records():
            try:
                sessions.append(Session.from_dict(record))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Failed to parse session {path.name}: {e}")
        return sessions

    def load(self, session_id: str) -> Optional[Session]:
        """
        Load one session by id.

        Returns:
            Session, or None if no file exists

        Raises:
            SessionStoreError if the file exists but cannot be parsed
        """
        path = self.path_for(session_id)
        try:
            record = self.read_record(path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise SessionStoreError(f"Cannot read session {session_id}: {e}") from e

        try:
            return Session.from_dict(record)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SessionStoreError(f"Corrupt session {session_id}: {e}") from e

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    # -------------------------------------------------------------------------
    # Deletion and retention
    # -------------------------------------------------------------------------

    def delete(self, session_id: str):
        """Delete a session file. A missing file counts as success."""
        path = self.path_for(session_id)
        with self.session_lock(session_id):
            try:
                path.unlink()
                logger.debug(f"Deleted session {session_id}")
            except FileNotFoundError:
                pass

    def get_expired(self, now: Optional[int] = None) -> List[Session]:
        """Sessions whose persistedUntil is at or before now"""
        if now is None:
            now = now_ms()
        return [s for s in self.load_all()
                if s.persisted_until is not None and s.persisted_until <= now]

    def cleanup_expired(self, retention_days: int) -> int:
        """
        Delete expired sessions directly (no trash).

        Sessions without persistedUntil expire retention_days after start.

        Returns:
            Number of sessions deleted
        """
        now = now_ms()
        deleted = 0

        for session in self.load_all():
            persisted_until = session.persisted_until
            if persisted_until is None:
                persisted_until = session.start_time + retention_days * MS_PER_DAY
            if persisted_until <= now:
                try:
                    self.delete(session.id)
                    deleted += 1
                except OSError as e:
                    logger.error(f"Failed to delete expired session {session.id}: {e}")

        if deleted:
            logger.info(f"Deleted {deleted} expired sessions")
        return deleted

    # -------------------------------------------------------------------------
    # Submission bookkeeping
    # -------------------------------------------------------------------------

    def mark_for_retry(self, session_id: str) -> bool:
        """Reset a session to pending so the submission worker picks it up again"""
        session = self.load(session_id)
        if session is None:
            return False

        session.submission_status = SubmissionStatus.PENDING
        session.submission_attempts = 0
        session.submission_error = None
        if self.update(session) is None:
            return False
        logger.info(f"Session {session_id} queued for resubmission")
        return True

    def mark_ignored(self, session_id: str) -> bool:
        """Exclude a session from submission"""
        session = self.load(session_id)
        if session is None:
            return False

        session.submission_status = SubmissionStatus.IGNORED
        if self.update(session) is None:
            return False
        logger.info(f"Session {session_id} marked as ignored")
        return True

    # -------------------------------------------------------------------------
    # Crash recovery
    # -------------------------------------------------------------------------

    def find_orphaned_temp_files(self) -> List[str]:
        """Names of temp files left behind by interrupted writes"""
        if not self.sessions_dir.exists():
            return []
        return sorted(p.name for p in self.sessions_dir.glob(f"*{TEMP_SUFFIX}"))

    def recover_temp_file(self, temp_name: str) -> str:
        """
        Resolve one orphaned temp file.

        - Final file exists: the rename happened, drop the temp file
        - Temp file holds a complete JSON object: finish the rename
        - Otherwise the write is lost: delete the temp file

        Returns:
            "recovered" or "cleaned"
        """
        temp_file = self.sessions_dir / temp_name
        final_file = self.sessions_dir / (temp_name[:-len(TEMP_SUFFIX)] + SESSION_SUFFIX)

        if final_file.exists():
            temp_file.unlink(missing_ok=True)
            return "recovered"

        try:
            self.read_record(temp_file)
            temp_file.replace(final_file)
            logger.info(f"Recovered interrupted write: {final_file.name}")
            return "recovered"
        except (OSError, ValueError) as e:
            logger.warning(f"Discarding incomplete write {temp_name}: {e}")

        try:
            temp_file.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to remove {temp_name}: {e}")
        return "cleaned"

    def perform_crash_recovery(self) -> RecoveryStats:
        """Resolve every orphaned temp file; run once at startup"""
        stats = RecoveryStats()

        for temp_name in self.find_orphaned_temp_files():
            if self.recover_temp_file(temp_name) == "recovered":
                stats.recovered += 1
            else:
                stats.cleaned += 1

        if stats.recovered or stats.cleaned:
            logger.info(f"Crash recovery: {stats.recovered} recovered, {stats.cleaned} cleaned")
        return stats

    # -------------------------------------------------------------------------
    # Schema migration
    # -------------------------------------------------------------------------

    def load_and_migrate_all(self) -> List[Session]:
        """
        Load all sessions, adding a metadata block to legacy records.

        Legacy records (no _metadata) are rewritten with the default
        retention period. Records from another format version are loaded
        as-is with a warning.
        """
        sessions = []

        for path, record in self.iter_records():
            try:
                session = Session.from_dict(record)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Failed to parse session {path.name}: {e}")
                continue

            metadata = record.get('_metadata')
            if not isinstance(metadata, dict):
                try:
                    self.save(session, DEFAULT_RETENTION_DAYS)
                    logger.info(f"Migrated legacy session {session.id}")
                except OSError as e:
                    logger.error(f"Failed to migrate session {session.id}: {e}")
            elif metadata.get('formatVersion', FORMAT_VERSION) != FORMAT_VERSION:
                logger.warning(f"Session {session.id} format version mismatch: "
                               f"stored={metadata.get('formatVersion')}, current={FORMAT_VERSION}")

            sessions.append(session)

        return sessions
