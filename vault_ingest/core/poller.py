"""
Polling engine for processing jobs.

One JobPoller per job id. It fetches status sequentially (never more than
one request in flight), sleeps for whatever interval the last response
suggested, and stops for good once the job reaches a terminal status.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from vault_ingest.core.constants import (
    ErrorCode,
    DEFAULT_POLL_INTERVAL_MS, MAX_POLL_INTERVAL_MS, POLL_BACKOFF_MULTIPLIER,
    MAX_CONSECUTIVE_POLL_FAILURES, SLOW_WARNING_AFTER_MS, MAX_POLL_COUNT,
)
from vault_ingest.core.error_codes import ProcessingError
from vault_ingest.core.models import ProcessingJob

logger = logging.getLogger(__name__)


class PollEventKind:
    UPDATE = "update"
    ERROR = "error"
    SLOW = "slow"
    STALLED = "stalled"
    TERMINAL = "terminal"


@dataclass
class PollEvent:
    kind: str
    job_id: str
    job: Optional[ProcessingJob] = None
    error: Optional[ProcessingError] = None
    consecutive_failures: int = 0
    elapsed_ms: int = 0


class JobPoller:
    """Drives one job from its current server state to a terminal status."""

    def __init__(self, job_id: str,
                 fetch_status: Callable[[str], ProcessingJob],
                 default_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
                 max_consecutive_failures: int = MAX_CONSECUTIVE_POLL_FAILURES,
                 slow_warning_after_ms: int = SLOW_WARNING_AFTER_MS,
                 sleep: Callable[[float], None] | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.job_id = job_id
        self._fetch_status = fetch_status
        self.default_interval_ms = default_interval_ms
        self.max_consecutive_failures = max(1, max_consecutive_failures)
        self.slow_warning_after_ms = slow_warning_after_ms
        self._clock = clock

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._done = threading.Event()
        self._done.set()
        self._running = False
        self._sleep = sleep or self._stop_event.wait

        self.last_job: Optional[ProcessingJob] = None
        self.last_error: Optional[ProcessingError] = None
        self.poll_count = 0
        self.consecutive_failures = 0
        self.stalled = False
        self.slow_warned = False
        self._listeners: list[Callable[[PollEvent], None]] = []

    # ── Listeners ─────────────────────────────────────────────────────

    def add_listener(self, callback: Callable[[PollEvent], None]):
        with self._lock:
            if callback not in self._listeners:
                self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[PollEvent], None]):
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _emit(self, event: PollEvent):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error("Poll listener failed for job %s: %s", self.job_id, e,
                             exc_info=True)

    # ── State ─────────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.last_job is not None and self.last_job.is_terminal

    def is_running(self) -> bool:
        return self._running

    def stop(self):
        """Stop observing. The remote job keeps running."""
        self._stop_event.set()

    def next_interval_ms(self) -> int:
        """Delay before the next poll after a successful response."""
        if self.last_job and self.last_job.poll_interval_ms and self.last_job.poll_interval_ms > 0:
            return self.last_job.poll_interval_ms
        return self.default_interval_ms

    def _backoff_interval_ms(self) -> int:
        base = self.next_interval_ms()
        delay = base * (POLL_BACKOFF_MULTIPLIER ** self.consecutive_failures)
        return int(min(delay, max(MAX_POLL_INTERVAL_MS, base)))

    # ── Loop ──────────────────────────────────────────────────────────

    def run(self) -> Optional[ProcessingJob]:
        """
        Poll until terminal, stalled, or stopped. Returns the last job seen.
        A concurrent call waits for the running loop instead of polling twice.
        """
        with self._lock:
            if self.is_terminal:
                return self.last_job
            if self._running:
                owner = False
            else:
                owner = True
                self._running = True
                self._done.clear()
                self._stop_event.clear()
                self.stalled = False
                self.consecutive_failures = 0

        if not owner:
            self._done.wait()
            return self.last_job

        try:
            return self._loop()
        finally:
            with self._lock:
                self._running = False
                self._done.set()

    def _loop(self) -> Optional[ProcessingJob]:
        started = self._clock()
        while not self._stop_event.is_set():
            self.poll_count += 1
            job = error = None
            try:
                job = self._fetch_status(self.job_id)
            except ProcessingError as e:
                error = e
            except Exception as e:
                logger.error("Unexpected error polling job %s: %s", self.job_id, e, exc_info=True)
                error = ProcessingError(ErrorCode.INTERNAL_ERROR,
                                        f"Unexpected error while checking status: {e}"[:500],
                                        retryable=False)

            if error is not None:
                self.consecutive_failures += 1
                self.last_error = error
                logger.warning("Poll %d for job %s failed (%d in a row): %s",
                               self.poll_count, self.job_id, self.consecutive_failures, error)
                self._emit(PollEvent(PollEventKind.ERROR, self.job_id, error=error,
                                     consecutive_failures=self.consecutive_failures))
                if not error.retryable or self.consecutive_failures >= self.max_consecutive_failures:
                    self.stalled = True
                    logger.warning("Stopped polling job %s after %d failure(s)",
                                   self.job_id, self.consecutive_failures)
                    self._emit(PollEvent(PollEventKind.STALLED, self.job_id, job=self.last_job,
                                         error=error, consecutive_failures=self.consecutive_failures))
                    return self.last_job
                delay_ms = self._backoff_interval_ms()
            else:
                self.consecutive_failures = 0
                self.last_error = None
                self.last_job = job
                self._emit(PollEvent(PollEventKind.UPDATE, self.job_id, job=job))
                if job.is_terminal:
                    logger.info("Job %s reached terminal status %s after %d poll(s)",
                                self.job_id, job.status, self.poll_count)
                    self._emit(PollEvent(PollEventKind.TERMINAL, self.job_id, job=job))
                    return job
                delay_ms = self.next_interval_ms()

            self._check_slow(started)
            if self._stop_event.is_set():
                break
            self._sleep(delay_ms / 1000.0)

        logger.info("Stopped observing job %s", self.job_id)
        return self.last_job

    def _check_slow(self, started: float):
        if self.slow_warned:
            return
        elapsed_ms = int((self._clock() - started) * 1000)
        max_polls = (self.last_job.max_poll_count if self.last_job and self.last_job.max_poll_count
                     else MAX_POLL_COUNT)
        if elapsed_ms >= self.slow_warning_after_ms or self.poll_count >= max_polls:
            self.slow_warned = True
            logger.info("Job %s is taking longer than expected (%d ms, %d polls)",
                        self.job_id, elapsed_ms, self.poll_count)
            self._emit(PollEvent(PollEventKind.SLOW, self.job_id, job=self.last_job,
                                 elapsed_ms=elapsed_ms))


class PollerRegistry:
    """Session-scoped pollers keyed by job id, so a recreated view resumes the same poll."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pollers: dict[str, JobPoller] = {}

    def acquire(self, job_id: str, factory: Callable[[str], JobPoller]) -> JobPoller:
        with self._lock:
            poller = self._pollers.get(job_id)
            if poller is None:
                poller = factory(job_id)
                self._pollers[job_id] = poller
            return poller

    def release(self, job_id: str):
        with self._lock:
            poller = self._pollers.pop(job_id, None)
        if poller:
            poller.stop()

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._pollers
