#!/usr/bin/env python3
"""
HL7 Session Submission Worker

Delivers persisted sessions to a collection endpoint over HTTP.

Each cycle (on start(), then every submission_interval_minutes):
1. Discover persisted sessions with submissionStatus == pending
2. Queue the ones not already queued or in flight
3. Dispatch while in_flight < concurrency; each session is POSTed on the
   executor with its own retry loop
4. Emit a SubmissionProgress snapshot

Retry policy per session:
- Up to max_retries attempts, each abandoned after 30s overall
- Backoff before attempt n > 1: 1s, 2s, 4s, 4s, ...
- 4xx responses stop immediately (non-retryable)
- 5xx, other non-2xx responses and network errors are retried

The outcome is written back to the session file (submitted / failed) so a
session is never silently dropped: failed sessions stay on disk until an
operator retries or ignores them.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Deque, Dict, Optional, Set

import requests

from .interfaces.data_models import (
    Session, SubmissionProgress, SubmissionResult, SubmissionStatus, now_ms
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)

RETRY_DELAYS_SEC = (1, 2, 4)
REQUEST_TIMEOUT_SEC = 30
MAX_CONCURRENCY = 10


class SubmissionWorker:
    """
    Timer-driven HTTP delivery of pending sessions.

    Example:
        worker = SubmissionWorker(store, endpoint='https://lis.example/api/hl7',
                                  on_result=lambda r: print(r))
        worker.start()
        ...
        worker.stop()
    """

    def __init__(
        self,
        store: SessionStore,
        endpoint: str = "",
        auth_header: str = "",
        concurrency: int = 2,
        max_retries: int = 3,
        submission_interval_minutes: int = 1,
        on_result: Optional[Callable[[SubmissionResult], None]] = None,
        on_progress: Optional[Callable[[SubmissionProgress], None]] = None,
        http_session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize submission worker.

        Args:
            store: Session store to discover and update sessions in
            endpoint: Collection URL; empty disables delivery
            auth_header: Value of the Authorization header (optional)
            concurrency: Max sessions in flight (1-10)
            max_retries: Max attempts per session (1-10)
            submission_interval_minutes: Cycle interval (1-60)
            on_result: Called with a SubmissionResult per finished session
            on_progress: Called with a SubmissionProgress per cycle
            http_session: requests.Session to POST with
            sleep: Backoff sleep function (seconds)
            clock: Epoch-millisecond time source
        """
        self.store = store
        self.on_result = on_result
        self.on_progress = on_progress
        self.http = http_session or requests.Session()
        self.sleep = sleep
        self.clock = clock

        self.endpoint = ""
        self.auth_header = ""
        self.concurrency = 2
        self.max_retries = 3
        self.submission_interval_minutes = 1
        self.update_config(
            endpoint=endpoint,
            auth_header=auth_header,
            concurrency=concurrency,
            max_retries=max_retries,
            submission_interval_minutes=submission_interval_minutes,
        )

        # Queue state (guarded by _state)
        self.queue: Deque[Session] = deque()
        self.in_flight = 0
        self._in_flight_ids: Set[str] = set()
        self._state = threading.Condition()

        self._cycle_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        # HTTP requests; one abandoned at its deadline holds a thread until its socket gives up
        self._requests = ThreadPoolExecutor(max_workers=MAX_CONCURRENCY * 2,
                                            thread_name_prefix='hl7-http')

        self.is_running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self):
        """Run one cycle now, then schedule periodic cycles"""
        if self.is_running:
            logger.warning("Submission worker already running")
            return

        self.is_running = True
        logger.info(f"Starting submission worker (endpoint: {self.endpoint or '<none>'}, "
                    f"concurrency: {self.concurrency}, max retries: {self.max_retries}, "
                    f"interval: {self.submission_interval_minutes}m)")

        self.run_cycle()

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._timer_loop, name='hl7-submit', daemon=True)
        self._thread.start()

    def stop(self):
        """Cancel the timer and drop queued sessions. Requests in flight finish."""
        if not self.is_running:
            return

        self.is_running = False
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

        with self._state:
            self.queue.clear()
            self._state.notify_all()

        logger.info("Submission worker stopped")

    def shutdown(self, timeout: Optional[float] = 35.0):
        """Stop, wait for in-flight requests and release the executor"""
        self.stop()
        self.wait_idle(timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._requests.shutdown(wait=False)

    def trigger_now(self):
        """Run a cycle immediately (only while started)"""
        if not self.is_running:
            logger.debug("Submission worker not running; trigger ignored")
            return
        self.run_cycle()

    def update_config(self, endpoint: Optional[str] = None, auth_header: Optional[str] = None,
                      concurrency: Optional[int] = None, max_retries: Optional[int] = None,
                      submission_interval_minutes: Optional[int] = None):
        if endpoint is not None:
            self.endpoint = endpoint.strip()
        if auth_header is not None:
            self.auth_header = auth_header
        if concurrency is not None:
            self.concurrency = max(1, min(MAX_CONCURRENCY, int(concurrency)))
        if max_retries is not None:
            self.max_retries = max(1, min(10, int(max_retries)))
        if submission_interval_minutes is not None:
            self.submission_interval_minutes = max(1, min(60, int(submission_interval_minutes)))

    def get_config(self) -> Dict[str, Any]:
        return {
            'endpoint': self.endpoint,
            'auth_header': self.auth_header,
            'concurrency': self.concurrency,
            'max_retries': self.max_retries,
            'submission_interval_minutes': self.submission_interval_minutes,
        }

    def _timer_loop(self):
        while not self._stop_event.wait(self.submission_interval_minutes * 60):
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Periodic submission failed: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run_cycle(self) -> SubmissionProgress:
        """
        Discover pending sessions and dispatch up to the concurrency limit.

        Single-flight: a cycle triggered while another is running returns a
        snapshot of the current state without doing anything.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Submission cycle already in progress")
            return self.get_progress()

        try:
            if not self.endpoint:
                progress = SubmissionProgress(in_flight=0, queue_size=0, active_worker=False)
            else:
                self._discover_pending()
                self._dispatch()
                progress = self.get_progress()
        finally:
            self._cycle_lock.release()

        self._emit_progress(progress)
        return progress

    def get_progress(self) -> SubmissionProgress:
        with self._state:
            return SubmissionProgress(
                in_flight=self.in_flight,
                queue_size=len(self.queue),
                active_worker=self.is_running,
            )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the queue is drained and nothing is in flight.

        Returns:
            True if idle, False on timeout
        """
        with self._state:
            return self._state.wait_for(lambda: not self.queue and self.in_flight == 0, timeout)

    def _discover_pending(self):
        pending = [s for s in self.store.load_all()
                   if s.submission_status == SubmissionStatus.PENDING]

        added = 0
        with self._state:
            known = {s.id for s in self.queue} | self._in_flight_ids
            for session in pending:
                if session.id not in known:
                    self.queue.append(session)
                    known.add(session.id)
                    added += 1

        if added:
            logger.info(f"Queued {added} pending sessions for submission")

    def _dispatch(self):
        """Start queued sessions while below the concurrency limit"""
        while True:
            with self._state:
                if not self.queue or self.in_flight >= self.concurrency:
                    return
                session = self.queue.popleft()
                self.in_flight += 1
                self._in_flight_ids.add(session.id)

            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=MAX_CONCURRENCY,
                                                    thread_name_prefix='hl7-submit')
            self._executor.submit(self._run_one, session)

    def _run_one(self, session: Session):
        try:
            self.submit_session(session)
        except Exception as e:
            logger.error(f"Submission of {session.id} failed unexpectedly: {e}", exc_info=True)
        finally:
            with self._state:
                self.in_flight -= 1
                self._in_flight_ids.discard(session.id)
                self._state.notify_all()
            if self.endpoint:
                self._dispatch()

    # -------------------------------------------------------------------------
    # Per-session delivery
    # -------------------------------------------------------------------------

    def submit_session(self, session: Session) -> SubmissionResult:
        """
        Deliver one session with retries and record the outcome on disk.

        Returns:
            SubmissionResult (also passed to on_result)
        """
        attempts = session.submission_attempts
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            if attempt > 0:
                delay = RETRY_DELAYS_SEC[min(attempt - 1, len(RETRY_DELAYS_SEC) - 1)]
                logger.debug(f"Retrying {session.id} in {delay}s")
                self.sleep(delay)

            attempts += 1
            try:
                response = self._post(session)
            except requests.RequestException as e:
                last_error = str(e)
                logger.warning(f"Submission attempt {attempt + 1}/{self.max_retries} "
                               f"for {session.id} failed: {last_error}")
                continue

            status = response.status_code
            if 200 <= status < 300:
                session.submission_status = SubmissionStatus.SUBMITTED
                session.submitted_at = self.clock()
                session.submission_attempts = attempts
                session.submission_error = None
                self._persist(session)

                logger.info(f"✅ Submitted session {session.id} (attempts: {attempts})")
                result = SubmissionResult(session.id, True, attempts,
                                          submitted_at=session.submitted_at)
                self._emit_result(result)
                return result

            last_error = f"HTTP {status}"
            if 400 <= status < 500:
                logger.error(f"Submission of {session.id} rejected: {last_error} (not retrying)")
                break
            logger.warning(f"Submission attempt {attempt + 1}/{self.max_retries} "
                           f"for {session.id} failed: {last_error}")

        session.submission_status = SubmissionStatus.FAILED
        session.submission_attempts = attempts
        session.submission_error = last_error
        self._persist(session)

        logger.error(f"Submission of {session.id} failed after {attempts} attempts: {last_error}")
        result = SubmissionResult(session.id, False, attempts, error=last_error)
        self._emit_result(result)
        return result

    def _post(self, session: Session) -> requests.Response:
        """
        POST one attempt, bounded by REQUEST_TIMEOUT_SEC overall.

        The requests timeout applies to each socket operation, so a server
        trickling its body could hold an attempt open far longer. The request
        and body read run on the request pool and are abandoned once the
        deadline passes.

        Raises:
            requests.Timeout if the deadline passes
            requests.RequestException on network errors
        """
        timeout = REQUEST_TIMEOUT_SEC
        headers = {'Content-Type': 'application/json'}
        if self.auth_header:
            headers['Authorization'] = self.auth_header

        future = self._requests.submit(self._send, self.endpoint,
                                       session.submission_payload(), headers, timeout)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            future.add_done_callback(_close_abandoned)
            raise requests.Timeout(f"Request exceeded {timeout}s deadline") from None

    def _send(self, endpoint: str, payload: Dict[str, Any], headers: Dict[str, str],
              timeout: float) -> requests.Response:
        response = self.http.post(endpoint, json=payload, headers=headers, timeout=timeout)
        _ = response.content  # the body read counts against the deadline
        return response

    def _persist(self, session: Session):
        try:
            if self.store.update(session) is None:
                logger.warning(f"Session {session.id} left the store before its "
                               f"submission state could be recorded")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to record submission state for {session.id}: {e}")

    def _emit_result(self, result: SubmissionResult):
        if self.on_result is None:
            return
        try:
            self.on_result(result)
        except Exception as e:
            logger.error(f"Submission result callback failed: {e}")

    def _emit_progress(self, progress: SubmissionProgress):
        if self.on_progress is None:
            return
        try:
            self.on_progress(progress)
        except Exception as e:
            logger.error(f"Submission progress callback failed: {e}")


def _close_abandoned(future: Future):
    if not future.cancelled() and future.exception() is None:
        future.result().close()
