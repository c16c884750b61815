"""
Processing controller: recovery → submission → polling → completion.

One OrchestrationSession lives for the whole logical session (a tab, a CLI
run). Controllers are cheap and may be created and thrown away repeatedly
for the same URL; everything that must survive that (the recovery gate,
the auto-submit gate, pollers, completion outcomes) lives in the session.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from vault_ingest.core.constants import (
    ProcessingStatus, STATUS_LABELS, DEFAULT_POLL_INTERVAL_MS,
    MAX_CONSECUTIVE_POLL_FAILURES, SLOW_WARNING_AFTER_MS,
)
from vault_ingest.core.api_client import ShortFormApiClient
from vault_ingest.core.completion import CompletionHandler, CompletionOutcome, OutcomeKind
from vault_ingest.core.error_codes import (
    ErrorInfo, ErrorKind, ProcessingError, describe_next_action,
)
from vault_ingest.core.models import LocalOrchestrationState, NormalizedUrlResult, ProcessingJob
from vault_ingest.core.poller import JobPoller, PollerRegistry, PollEvent, PollEventKind
from vault_ingest.core.storage import ResourceStorage
from vault_ingest.core.url_detect import detect

logger = logging.getLogger(__name__)


class Phase:
    IDLE = "idle"
    RECOVERING = "recovering"
    SUBMITTING = "submitting"
    POLLING = "polling"
    STALLED = "stalled"
    ALREADY_PROCESSED = "already_processed"
    COMPLETED = "completed"
    FAILED = "failed"


class Action:
    RETRY = "retry"
    REPROCESS = "reprocess"
    RESUME_POLLING = "resume_polling"
    RETRY_SAVE = "retry_save"
    IMPORT_EXISTING = "import_existing"
    OPEN_RESOURCE = "open_resource"
    CREATE_MANUALLY = "create_manually"


@dataclass
class ControllerSnapshot:
    """Everything a view needs to render the current state."""
    phase: str = Phase.IDLE
    raw_url: str = ""
    normalized_url: str = ""
    platform: Optional[str] = None
    job_id: Optional[str] = None
    status: Optional[str] = None
    current_step: Optional[str] = None
    progress: int = 0
    progress_label: str = ""
    is_polling: bool = False
    message: str = ""
    error: Optional[ErrorInfo] = None
    error_kind: Optional[str] = None
    next_action: str = ""
    slow_warning: bool = False
    resource_id: Optional[str] = None
    existing_resource_id: Optional[str] = None
    actions: list[str] = field(default_factory=list)


def progress_label(status: str | None, step: str | None = None) -> str:
    if status in STATUS_LABELS:
        return STATUS_LABELS[status]
    return step or "Processing..."


class OrchestrationSession:
    """Session-wide state shared by every controller."""

    def __init__(self, storage: ResourceStorage):
        self.storage = storage
        self.completion = CompletionHandler(storage)
        self.pollers = PollerRegistry()
        self._lock = threading.Lock()
        self._states: dict[str, LocalOrchestrationState] = {}
        self._url_locks: dict[str, threading.RLock] = {}

    def state_for(self, normalized_url: str) -> LocalOrchestrationState:
        with self._lock:
            state = self._states.get(normalized_url)
            if state is None:
                state = LocalOrchestrationState(normalized_url=normalized_url)
                self._states[normalized_url] = state
            return state

    def url_lock(self, normalized_url: str) -> threading.RLock:
        """Serialises the recovery/submission decision for one URL."""
        with self._lock:
            lock = self._url_locks.get(normalized_url)
            if lock is None:
                lock = threading.RLock()
                self._url_locks[normalized_url] = lock
            return lock


class ProcessingController:
    """
    Drives one URL through the processing lifecycle.
    Emits snapshots via on_state_changed for UI updates.
    """

    def __init__(self, session: OrchestrationSession, client: ShortFormApiClient,
                 config: dict | None = None,
                 sleep: Callable[[float], None] | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.client = client
        self.config = config or {}
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._worker_thread: Optional[threading.Thread] = None
        self._detection: Optional[NormalizedUrlResult] = None
        self._poller: Optional[JobPoller] = None
        self._snapshot = ControllerSnapshot()

        # Callbacks
        self.on_state_changed: Optional[Callable[[ControllerSnapshot], None]] = None
        self.on_navigate: Optional[Callable[[str], None]] = None
        self.on_notice: Optional[Callable[[str, str], None]] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def include_transcript(self) -> bool:
        return self.config.get('include_transcript', True)

    @property
    def default_poll_interval_ms(self) -> int:
        return self.config.get('default_poll_interval_ms', DEFAULT_POLL_INTERVAL_MS)

    @property
    def max_consecutive_poll_failures(self) -> int:
        return self.config.get('max_consecutive_poll_failures', MAX_CONSECUTIVE_POLL_FAILURES)

    @property
    def slow_warning_after_ms(self) -> int:
        return self.config.get('slow_warning_after_ms', SLOW_WARNING_AFTER_MS)

    # ── Observable state ──────────────────────────────────────────────

    @property
    def snapshot(self) -> ControllerSnapshot:
        with self._lock:
            return self._snapshot

    def _update(self, **changes) -> ControllerSnapshot:
        with self._lock:
            self._snapshot = replace(self._snapshot, **changes)
            snap = self._snapshot
        if self.on_state_changed:
            self.on_state_changed(snap)
        return snap

    def _notify(self, title: str, message: str):
        logger.info("%s: %s", title, message)
        if self.on_notice:
            self.on_notice(title, message)

    def _fail(self, kind: str, error: ErrorInfo, actions: list[str], **extra) -> ControllerSnapshot:
        return self._update(
            phase=Phase.FAILED,
            is_polling=False,
            error=error,
            error_kind=kind,
            message=error.message,
            next_action=describe_next_action(error, kind),
            actions=actions,
            **extra,
        )

    def _state(self) -> LocalOrchestrationState | None:
        if not self._detection or not self._detection.is_supported:
            return None
        return self.session.state_for(self._detection.normalized_url)

    # ── Input ─────────────────────────────────────────────────────────

    def set_url(self, raw_url: str) -> NormalizedUrlResult:
        """Classify input. Unsupported input is reported here, before any network call."""
        result = detect(raw_url)
        self._detection = result
        base = ControllerSnapshot(
            raw_url=raw_url or "",
            normalized_url=result.normalized_url,
            platform=result.platform,
        )
        with self._lock:
            self._snapshot = base

        if result.is_supported:
            self._update(phase=Phase.IDLE)
        elif not (raw_url or "").strip():
            self._update(phase=Phase.IDLE, message=result.error_message or "")
        else:
            error = ErrorInfo(
                code="invalid_url" if not result.is_valid else "unsupported_platform",
                message=result.error_message or "Unsupported URL",
                fallback_suggestion=("You can still create a video resource manually with this URL"
                                     if result.is_valid else None),
            )
            self._fail(ErrorKind.INPUT, error, [Action.CREATE_MANUALLY])
        return result

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Run the lifecycle on a worker thread."""
        if self._worker_thread and self._worker_thread.is_alive():
            return
        self._worker_thread = threading.Thread(target=self._run_safely, daemon=True)
        self._worker_thread.start()

    def join(self, timeout: float | None = None):
        if self._worker_thread:
            self._worker_thread.join(timeout)

    def _run_safely(self):
        try:
            self.run()
        except Exception as e:
            logger.error("Controller error: %s", e, exc_info=True)
            self._fail(ErrorKind.JOB, ErrorInfo("internal_error", str(e)[:500]),
                       [Action.RETRY, Action.CREATE_MANUALLY])

    def run(self) -> ControllerSnapshot:
        """
        Bring the current URL as far as it can go without user input.
        Safe to call repeatedly: recovery runs once per URL per session and
        at most one automatic submission is ever made.
        """
        state = self._state()
        if state is None:
            return self.snapshot

        with self.session.url_lock(state.normalized_url):
            if not state.recovery_checked:
                self._recover(state)
            should_poll = self._decide(state)

        if should_poll:
            self._poll(state)
        return self.snapshot

    def _recover(self, state: LocalOrchestrationState):
        self._update(phase=Phase.RECOVERING, message="Checking for an existing job...")
        try:
            state.recovered_job = self.client.find_existing_job(state.normalized_url)
        except ProcessingError as e:
            logger.warning("Recovery lookup failed for %s, continuing without it: %s",
                           state.normalized_url, e)
            state.recovered_job = None
            self._notify("Could not check for earlier processing",
                         "Starting a new processing job instead.")
        state.recovery_checked = True

    def _decide(self, state: LocalOrchestrationState) -> bool:
        """Pick the next step once recovery has run. True means: poll state.job_id."""
        if state.job_id:
            outcome = self.session.completion.outcome_for(state.job_id)
            if outcome is None:
                return True
            self._update(job_id=state.job_id)
            self._show_outcome(replace(outcome, duplicate=True))
            return False

        job = state.recovered_job
        if job is not None:
            if not job.is_terminal:
                state.job_id = job.job_id
                state.is_polling = True
                self._apply_job(job)
                self._notify("Processing already underway",
                             "Resuming the job that was started earlier.")
                return True
            if job.status == ProcessingStatus.COMPLETED:
                self._show_already_processed(job)
                return False
            error = job.error or ErrorInfo("internal_error", "Processing could not be completed")
            self._apply_job(job)
            self._fail(ErrorKind.JOB, error, [Action.RETRY, Action.CREATE_MANUALLY])
            return False

        if state.auto_submit_attempted:
            if state.last_error is not None:
                self._fail(ErrorKind.SUBMISSION, state.last_error,
                           [Action.RETRY, Action.CREATE_MANUALLY])
            return False

        state.auto_submit_attempted = True
        return self._submit(state, force_refresh=False)

    def _submit(self, state: LocalOrchestrationState, force_refresh: bool) -> bool:
        self._update(phase=Phase.SUBMITTING, message="Starting processing...",
                     error=None, error_kind=None, next_action="", actions=[])
        try:
            result = self.client.submit(state.normalized_url,
                                        include_transcript=self.include_transcript,
                                        force_refresh=force_refresh)
        except ProcessingError as e:
            logger.warning("Submission failed for %s: %s", state.normalized_url, e)
            state.last_error = e.info
            self._fail(ErrorKind.SUBMISSION, e.info, [Action.RETRY, Action.CREATE_MANUALLY])
            return False

        state.last_error = None
        state.job_id = result.job_id
        state.poll_interval_ms = result.poll_interval_ms
        state.is_polling = True
        self._update(job_id=result.job_id, status=result.status,
                     progress_label=progress_label(result.status),
                     message=result.message or "Your video is being processed.")
        self._notify("Processing started", result.message or
                     "Your video is being processed. This may take a few moments.")
        return True

    def _poller_for(self, state: LocalOrchestrationState) -> JobPoller:
        # the submit response's interval applies until a status response suggests another
        interval_ms = state.poll_interval_ms or self.default_poll_interval_ms

        def factory(jid: str) -> JobPoller:
            return JobPoller(
                jid, self.client.get_job_status,
                default_interval_ms=interval_ms,
                max_consecutive_failures=self.max_consecutive_poll_failures,
                slow_warning_after_ms=self.slow_warning_after_ms,
                sleep=self._sleep,
                clock=self._clock,
            )
        return self.session.pollers.acquire(state.job_id, factory)

    def _poll(self, state: LocalOrchestrationState):
        job_id = state.job_id
        poller = self._poller_for(state)
        self._poller = poller
        self._update(phase=Phase.POLLING, job_id=job_id, is_polling=True,
                     error=None, error_kind=None, next_action="", actions=[])

        poller.add_listener(self._on_poll_event)
        try:
            poller.run()
        finally:
            poller.remove_listener(self._on_poll_event)
            self._poller = None
            if not poller.is_terminal:
                state.is_polling = False

        if poller.is_terminal:
            self._finish(state, poller.last_job)
        elif poller.stalled:
            error = poller.last_error.info if poller.last_error else ErrorInfo(
                "network_error", "Lost connection to the processing service")
            self._update(phase=Phase.STALLED, is_polling=False, error=error,
                         error_kind=ErrorKind.POLLING,
                         message="Connection problem while tracking progress.",
                         next_action=describe_next_action(error, ErrorKind.POLLING),
                         actions=[Action.RESUME_POLLING])
        else:
            self._update(phase=Phase.IDLE, is_polling=False,
                         message="Stopped tracking. Processing continues on the server.")

    def _on_poll_event(self, event: PollEvent):
        if event.kind == PollEventKind.UPDATE and event.job is not None:
            self._apply_job(event.job)
        elif event.kind == PollEventKind.ERROR:
            self._update(message="Connection problem, retrying...")
        elif event.kind == PollEventKind.SLOW:
            self._update(slow_warning=True)
            self._notify("Still processing",
                         "This is taking longer than usual. You can keep waiting or come back later.")

    def _apply_job(self, job: ProcessingJob):
        self._update(job_id=job.job_id, status=job.status,
                     current_step=job.current_step, progress=job.progress,
                     progress_label=progress_label(job.status, job.current_step))

    def _finish(self, state: LocalOrchestrationState, job: ProcessingJob):
        with self.session.url_lock(state.normalized_url):
            state.is_polling = False
            self._update(is_polling=False)
            outcome = self.session.completion.handle(job)
            self.session.pollers.release(job.job_id)
        self._apply_job(job)
        self._show_outcome(outcome)

    def _show_outcome(self, outcome: CompletionOutcome):
        if outcome.kind == OutcomeKind.CREATED:
            resource_id = outcome.resource.id
            self._update(phase=Phase.COMPLETED, is_polling=False, resource_id=resource_id,
                         error=None, error_kind=None, next_action="",
                         message="Your short-form video has been added to your knowledge vault",
                         actions=[Action.OPEN_RESOURCE])
            if not outcome.duplicate:
                self._notify("Video added", outcome.resource.title)
                if self.on_navigate:
                    self.on_navigate(resource_id)
        elif outcome.kind == OutcomeKind.SAVE_FAILED:
            self._fail(ErrorKind.PERSISTENCE, outcome.error,
                       [Action.RETRY_SAVE, Action.CREATE_MANUALLY])
        else:
            self._fail(ErrorKind.JOB, outcome.error, [Action.RETRY, Action.CREATE_MANUALLY])

    def _show_already_processed(self, job: ProcessingJob):
        existing = None
        try:
            existing = self.session.storage.find_by_url(self._detection.normalized_url)
        except Exception as e:
            logger.warning("Duplicate lookup failed: %s", e)
        actions = [Action.REPROCESS]
        actions.append(Action.OPEN_RESOURCE if existing else Action.IMPORT_EXISTING)
        self._apply_job(job)
        self._update(phase=Phase.ALREADY_PROCESSED, is_polling=False,
                     existing_resource_id=existing.id if existing else None,
                     message="This video has already been processed.",
                     actions=actions)

    # ── User actions ──────────────────────────────────────────────────

    def retry(self) -> ControllerSnapshot:
        """Explicit resubmission after a failed submission or a failed job."""
        snap = self.snapshot
        if snap.error_kind == ErrorKind.PERSISTENCE:
            return self.retry_save()
        if snap.error_kind == ErrorKind.POLLING:
            return self.resume_polling()
        return self._resubmit()

    def reprocess(self) -> ControllerSnapshot:
        """Process an already-processed URL again."""
        return self._resubmit(force=True)

    def _resubmit(self, force: bool = False) -> ControllerSnapshot:
        state = self._state()
        if state is None:
            return self.snapshot

        with self.session.url_lock(state.normalized_url):
            if not state.recovery_checked:
                self._recover(state)
            if state.is_polling:
                logger.info("Job %s is still being tracked; not resubmitting", state.job_id)
                return self.snapshot
            # a job on the server for this URL has to be refreshed, not re-created
            prior_job_id = state.job_id or (state.recovered_job.job_id
                                            if state.recovered_job else None)
            if prior_job_id:
                self.session.completion.forget(prior_job_id)
                self.session.pollers.release(prior_job_id)
            state.job_id = None
            state.recovered_job = None
            state.auto_submit_attempted = True
            self._update(resource_id=None, slow_warning=False, progress=0)
            should_poll = self._submit(state, force_refresh=force or prior_job_id is not None)

        if should_poll:
            self._poll(state)
        return self.snapshot

    def resume_polling(self) -> ControllerSnapshot:
        """Pick tracking back up after a connectivity stall or stop."""
        state = self._state()
        if state is None or not state.job_id:
            return self.snapshot
        state.is_polling = True
        self._poll(state)
        return self.snapshot

    def retry_save(self) -> ControllerSnapshot:
        """Save the processed result again without reprocessing."""
        state = self._state()
        if state is None or not state.job_id:
            return self.snapshot
        outcome = self.session.completion.retry_save(state.job_id)
        self._show_outcome(outcome)
        return self.snapshot

    def import_existing(self) -> ControllerSnapshot:
        """Save the result of a job that had already completed before this session."""
        state = self._state()
        if state is None or state.recovered_job is None:
            return self.snapshot
        job = state.recovered_job
        if job.status != ProcessingStatus.COMPLETED:
            return self.snapshot
        state.job_id = job.job_id
        self._finish(state, job)
        return self.snapshot

    def stop_observing(self):
        """Stop polling (e.g. the view went away). The server-side job continues."""
        poller = self._poller
        if poller:
            poller.stop()
