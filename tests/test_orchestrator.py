#!/usr/bin/env python3
"""
Lifecycle tests for the processing controller.
A scripted client stands in for the processing service and a fake clock
replaces real sleeping.
"""

import sys
import json
import threading
import time
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from vault_ingest.core.api_client import ShortFormApiClient
from vault_ingest.core.constants import ErrorCode, Platform
from vault_ingest.core.error_codes import ErrorKind, ProcessingError
from vault_ingest.core.models import ProcessingJob, Resource, SubmitResult
from vault_ingest.core.orchestrator import (
    OrchestrationSession, ProcessingController, Phase, Action, progress_label,
)
from vault_ingest.core.storage import ResourceStorage

SHORTS_URL = "https://www.youtube.com/shorts/abc123?feature=share"
NORMALIZED = "https://youtube.com/shorts/abc123"


def status(status_value: str, job_id: str = "job-1", **extra) -> ProcessingJob:
    payload = {"success": True, "jobId": job_id, "status": status_value}
    payload.update(extra)
    return ProcessingJob.from_payload(payload)


def completed(job_id: str = "job-1", title: str = "Test") -> ProcessingJob:
    return status("completed", job_id, progress=100, metadata={
        "platform": "youtube-short",
        "sourceUrl": NORMALIZED,
        "normalizedUrl": NORMALIZED,
        "title": title,
        "duration": 45,
        "creator": {"name": "Creator"},
        "content": {"hashtags": ["tag"]},
        "extraction": {"method": "api"},
    })


class ScriptedClient:
    """Records every call; status responses are consumed in order, the last one repeats."""

    def __init__(self, existing=None, recovery_error=None, submit_error=None,
                 statuses=None, submit_status="created", submit_interval_ms=2000):
        self.existing = existing
        self.recovery_error = recovery_error
        self.submit_error = submit_error
        self.submit_status = submit_status
        self.submit_interval_ms = submit_interval_ms
        self.statuses = list(statuses or [])
        self.calls = []

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def find_existing_job(self, normalized_url):
        self.calls.append(("find", normalized_url))
        if self.recovery_error:
            raise self.recovery_error
        return self.existing

    def submit(self, normalized_url, include_transcript=True, force_refresh=False):
        self.calls.append(("submit", normalized_url, force_refresh))
        if self.submit_error:
            raise self.submit_error
        return SubmitResult(job_id="job-1", status=self.submit_status, poll_interval_ms=self.submit_interval_ms,
                            message="Processing started")

    def get_job_status(self, job_id):
        self.calls.append(("status", job_id))
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item


class BlockingStatusClient(ScriptedClient):
    """Holds every status call until `release` is set, counting overlapping calls."""

    def __init__(self):
        super().__init__(statuses=[completed()])
        self.entered = threading.Event()
        self.release = threading.Event()
        self._in_flight_lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def get_job_status(self, job_id):
        with self._in_flight_lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.entered.set()
        try:
            self.release.wait(5)
            return super().get_job_status(job_id)
        finally:
            with self._in_flight_lock:
                self.in_flight -= 1


def _response(status_code: int, payload: dict):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.json.return_value = payload
    resp.text = json.dumps(payload)
    return resp


class MemoryStorage(ResourceStorage):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.resources = []

    def add_resource(self, resource: Resource) -> Resource:
        if self.fail:
            raise OSError("database is locked")
        self.resources.append(resource)
        return resource

    def find_by_url(self, url):
        for resource in self.resources:
            if resource.url == url:
                return resource
        return None


class ControllerTestCase(unittest.TestCase):

    def setUp(self):
        self.storage = MemoryStorage()
        self.session = OrchestrationSession(self.storage)
        self.now = 0.0
        self.sleeps = []

    def _clock(self):
        return self.now

    def _sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def controller(self, client, url: str = SHORTS_URL, config=None) -> ProcessingController:
        ctl = ProcessingController(self.session, client, config=config,
                                   sleep=self._sleep, clock=self._clock)
        ctl.snapshots = []
        ctl.navigations = []
        ctl.notices = []
        ctl.on_state_changed = ctl.snapshots.append
        ctl.on_navigate = ctl.navigations.append
        ctl.on_notice = lambda title, message: ctl.notices.append(title)
        ctl.set_url(url)
        return ctl


class TestHappyPath(ControllerTestCase):

    def test_new_url_is_recovered_submitted_polled_and_saved(self):
        client = ScriptedClient(statuses=[status("detecting"), status("metadata"), completed()])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual([c[0] for c in client.calls],
                         ["find", "submit", "status", "status", "status"])
        self.assertEqual(client.calls[0], ("find", NORMALIZED))
        self.assertEqual(client.calls[1], ("submit", NORMALIZED, False))

        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertEqual(snap.platform, Platform.YOUTUBE_SHORT)
        self.assertFalse(snap.is_polling)
        self.assertEqual(len(self.storage.resources), 1)
        resource = self.storage.resources[0]
        self.assertEqual(resource.title, "Test")
        self.assertEqual(resource.duration, "0:45")
        self.assertEqual(ctl.navigations, [resource.id])
        self.assertEqual(snap.resource_id, resource.id)
        self.assertEqual(self.sleeps, [2.0, 2.0])

        labels = [s.progress_label for s in ctl.snapshots]
        self.assertIn("Analyzing URL...", labels)
        self.assertIn("Extracting metadata...", labels)
        phases = [s.phase for s in ctl.snapshots]
        self.assertLess(phases.index(Phase.RECOVERING), phases.index(Phase.SUBMITTING))

    def test_remount_does_not_recover_submit_or_save_again(self):
        client = ScriptedClient(statuses=[status("detecting"), completed()])
        self.controller(client).run()
        calls_after_first = list(client.calls)

        again = self.controller(client)
        snap = again.run()

        self.assertEqual(client.calls, calls_after_first)
        self.assertEqual(client.count("find"), 1)
        self.assertEqual(client.count("submit"), 1)
        self.assertEqual(len(self.storage.resources), 1)
        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertEqual(again.navigations, [])

    def test_finished_job_releases_its_poller(self):
        client = ScriptedClient(statuses=[completed()])
        self.controller(client).run()
        self.assertNotIn("job-1", self.session.pollers)

    def test_submit_interval_paces_polling(self):
        client = ScriptedClient(submit_interval_ms=3000,
                                statuses=[status("detecting"), status("metadata"), completed()])
        self.controller(client).run()
        self.assertEqual(self.sleeps, [3.0, 3.0])

    def test_status_interval_overrides_submit_interval(self):
        client = ScriptedClient(submit_interval_ms=3000,
                                statuses=[status("detecting", pollIntervalMs=1000), completed()])
        self.controller(client).run()
        self.assertEqual(self.sleeps, [1.0])

    def test_include_transcript_from_config(self):
        client = ScriptedClient(statuses=[completed()])
        received = {}
        original = client.submit

        def submit(url, include_transcript=True, force_refresh=False):
            received['include_transcript'] = include_transcript
            return original(url, include_transcript, force_refresh)

        client.submit = submit
        self.controller(client, config={'include_transcript': False}).run()
        self.assertFalse(received['include_transcript'])

    def test_progress_label_fallbacks(self):
        self.assertEqual(progress_label("transcript"), "Processing transcript...")
        self.assertEqual(progress_label("other", "custom_step"), "custom_step")
        self.assertEqual(progress_label(None), "Processing...")


class TestRecovery(ControllerTestCase):

    def test_in_progress_job_is_resumed_without_submission(self):
        client = ScriptedClient(existing=status("metadata", progress=40),
                                statuses=[status("transcript"), completed()])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual(client.count("submit"), 0)
        self.assertEqual(client.count("status"), 2)
        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertIn("Processing already underway", ctl.notices)
        self.assertEqual(len(self.storage.resources), 1)

    def test_completed_job_is_already_processed(self):
        client = ScriptedClient(existing=completed(), statuses=[completed()])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual(snap.phase, Phase.ALREADY_PROCESSED)
        self.assertEqual(client.count("submit"), 0)
        self.assertEqual(client.count("status"), 0)
        self.assertEqual(self.storage.resources, [])
        self.assertIn(Action.REPROCESS, snap.actions)
        self.assertIn(Action.IMPORT_EXISTING, snap.actions)
        self.assertIsNone(snap.existing_resource_id)

    def test_already_processed_links_saved_resource(self):
        client = ScriptedClient(existing=completed(), statuses=[completed()])
        ctl = self.controller(client)
        ctl.run()
        ctl.import_existing()
        self.assertEqual(len(self.storage.resources), 1)

        other_session = OrchestrationSession(self.storage)
        again = ProcessingController(other_session, client)
        again.set_url(SHORTS_URL)
        snap = again.run()
        self.assertEqual(snap.phase, Phase.ALREADY_PROCESSED)
        self.assertEqual(snap.existing_resource_id, self.storage.resources[0].id)
        self.assertIn(Action.OPEN_RESOURCE, snap.actions)

    def test_reprocess_forces_refresh_and_saves_again(self):
        client = ScriptedClient(existing=completed(), statuses=[status("detecting"),
                                                                completed(title="Fresh")])
        ctl = self.controller(client)
        ctl.run()
        snap = ctl.reprocess()

        self.assertEqual(client.calls[1], ("submit", NORMALIZED, True))
        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertEqual(self.storage.resources[0].title, "Fresh")

    def test_failed_job_found_in_recovery(self):
        failed = status("failed", error={"code": "extraction_failed", "message": "Could not extract"})
        client = ScriptedClient(existing=failed, statuses=[completed()])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual(snap.phase, Phase.FAILED)
        self.assertEqual(snap.error_kind, ErrorKind.JOB)
        self.assertEqual(client.count("submit"), 0)

        snap = ctl.retry()
        self.assertEqual(client.calls[1], ("submit", NORMALIZED, True))
        self.assertEqual(snap.phase, Phase.COMPLETED)

    def test_recovery_error_falls_through_to_submission(self):
        client = ScriptedClient(recovery_error=ProcessingError(ErrorCode.NETWORK_ERROR, "offline"),
                                statuses=[completed()])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual([c[0] for c in client.calls[:2]], ["find", "submit"])
        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertIn("Could not check for earlier processing", ctl.notices)

        self.controller(client).run()
        self.assertEqual(client.count("find"), 1)


class TestFailures(ControllerTestCase):

    def test_invalid_input_makes_no_calls(self):
        client = ScriptedClient()
        ctl = self.controller(client, url="not a url")
        snap = ctl.run()
        self.assertEqual(client.calls, [])
        self.assertEqual(snap.phase, Phase.FAILED)
        self.assertEqual(snap.error_kind, ErrorKind.INPUT)
        self.assertEqual(snap.error.code, ErrorCode.INVALID_URL)

    def test_unsupported_platform_offers_manual_creation(self):
        client = ScriptedClient()
        snap = self.controller(client, url="https://vimeo.com/123").run()
        self.assertEqual(client.calls, [])
        self.assertEqual(snap.error.code, ErrorCode.UNSUPPORTED_PLATFORM)
        self.assertEqual(snap.actions, [Action.CREATE_MANUALLY])

    def test_privacy_blocked_job(self):
        blocked = status("failed", error={
            "code": "privacy_blocked", "message": "This video is private",
            "fallbackSuggestion": "Create the resource manually"})
        client = ScriptedClient(statuses=[status("detecting"), blocked])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual(snap.phase, Phase.FAILED)
        self.assertEqual(snap.error_kind, ErrorKind.JOB)
        self.assertEqual(snap.error.code, ErrorCode.PRIVACY_BLOCKED)
        self.assertEqual(snap.next_action, "Create the resource manually")
        self.assertEqual(self.storage.resources, [])
        self.assertEqual(ctl.navigations, [])
        self.assertIn(Action.RETRY, snap.actions)

    def test_submission_failure_is_not_retried_automatically(self):
        client = ScriptedClient(
            submit_error=ProcessingError(ErrorCode.RATE_LIMITED, "Slow down", retry_after_ms=30000),
            statuses=[completed()])
        snap = self.controller(client).run()

        self.assertEqual(snap.phase, Phase.FAILED)
        self.assertEqual(snap.error_kind, ErrorKind.SUBMISSION)
        self.assertEqual(snap.next_action, "Try again in 30 seconds.")

        remount = self.controller(client)
        snap = remount.run()
        self.assertEqual(client.count("submit"), 1)
        self.assertEqual(snap.phase, Phase.FAILED)

        client.submit_error = None
        snap = remount.retry()
        self.assertEqual(client.count("submit"), 2)
        self.assertEqual(client.calls[-2], ("submit", NORMALIZED, False))
        self.assertEqual(snap.phase, Phase.COMPLETED)

    def test_poll_stall_and_resume(self):
        offline = ProcessingError(ErrorCode.NETWORK_ERROR, "offline")
        client = ScriptedClient(statuses=[status("detecting"), offline])
        ctl = self.controller(client, config={'max_consecutive_poll_failures': 2})
        snap = ctl.run()

        self.assertEqual(snap.phase, Phase.STALLED)
        self.assertEqual(snap.error_kind, ErrorKind.POLLING)
        self.assertEqual(snap.actions, [Action.RESUME_POLLING])
        self.assertEqual(client.count("status"), 3)
        self.assertEqual(client.count("submit"), 1)

        client.statuses = [completed()]
        snap = ctl.retry()
        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertEqual(client.count("submit"), 1)
        self.assertEqual(len(self.storage.resources), 1)

    def test_unexpected_status_error_stalls_and_resumes(self):
        client = ScriptedClient(statuses=[status("detecting"), RuntimeError("decoder bug")])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual(snap.phase, Phase.STALLED)
        self.assertEqual(snap.error.code, ErrorCode.INTERNAL_ERROR)
        self.assertFalse(self.session.state_for(NORMALIZED).is_polling)

        client.statuses = [completed()]
        snap = ctl.retry()
        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertEqual(client.count("submit"), 1)

    def test_error_escaping_poll_clears_polling_flag(self):
        client = ScriptedClient(statuses=[status("detecting"), completed()])
        ctl = self.controller(client)

        def broken_sleep(seconds):
            raise RuntimeError("sleep interrupted")

        ctl._sleep = broken_sleep
        ctl.start()
        ctl.join(timeout=5)
        self.assertEqual(ctl.snapshot.phase, Phase.FAILED)
        self.assertFalse(self.session.state_for(NORMALIZED).is_polling)

        ctl._sleep = self._sleep
        snap = ctl.retry()
        self.assertEqual(client.count("submit"), 2)
        self.assertEqual(client.calls[-2], ("submit", NORMALIZED, True))
        self.assertEqual(snap.phase, Phase.COMPLETED)

    def test_wrong_shaped_metadata_from_service_still_completes(self):
        session = mock.Mock()

        def request(method, url, **kwargs):
            if method == "POST":
                return _response(200, {"success": True, "jobId": "job-1", "status": "created"})
            if "normalizedUrl" in kwargs.get("params", {}):
                return _response(404, {"success": False})
            return _response(200, {"success": True, "jobId": "job-1", "status": "completed",
                                   "metadata": {"title": "T", "creator": "someone"}})

        session.request.side_effect = request
        client = ShortFormApiClient("https://abc.functions.supabase.co", "token-123456789",
                                    session=session)
        snap = self.controller(client).run()

        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertEqual(len(self.storage.resources), 1)
        self.assertEqual(self.storage.resources[0].title, "T")
        self.assertFalse(self.session.state_for(NORMALIZED).is_polling)

    def test_save_failure_then_retry_save(self):
        self.storage.fail = True
        client = ScriptedClient(statuses=[completed()])
        ctl = self.controller(client)
        snap = ctl.run()

        self.assertEqual(snap.phase, Phase.FAILED)
        self.assertEqual(snap.error_kind, ErrorKind.PERSISTENCE)
        self.assertIn(Action.RETRY_SAVE, snap.actions)
        self.assertEqual(ctl.navigations, [])

        self.storage.fail = False
        snap = ctl.retry()
        self.assertEqual(snap.phase, Phase.COMPLETED)
        self.assertEqual(len(self.storage.resources), 1)
        self.assertEqual(len(ctl.navigations), 1)
        self.assertEqual(client.count("submit"), 1)

    def test_slow_job_warns_once(self):
        client = ScriptedClient(statuses=[status("metadata")] * 5 + [completed()])
        ctl = self.controller(client, config={'slow_warning_after_ms': 5000})
        snap = ctl.run()
        self.assertEqual(ctl.notices.count("Still processing"), 1)
        self.assertTrue(snap.slow_warning)
        self.assertEqual(snap.phase, Phase.COMPLETED)


class TestBackgroundRun(ControllerTestCase):

    def test_start_runs_on_worker_thread(self):
        client = ScriptedClient(statuses=[completed()])
        ctl = self.controller(client)
        ctl.start()
        ctl.join(timeout=5)
        self.assertEqual(ctl.snapshot.phase, Phase.COMPLETED)
        self.assertEqual(len(self.storage.resources), 1)

    def test_second_controller_joins_the_outstanding_poll(self):
        client = BlockingStatusClient()
        first = self.controller(client)
        first.start()
        self.assertTrue(client.entered.wait(5))

        second = self.controller(client)
        worker = threading.Thread(target=second.run, daemon=True)
        worker.start()
        deadline = time.monotonic() + 5
        while second.snapshot.phase != Phase.POLLING and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(second.snapshot.phase, Phase.POLLING)
        time.sleep(0.05)

        client.release.set()
        first.join(timeout=5)
        worker.join(timeout=5)

        self.assertEqual(client.max_in_flight, 1)
        self.assertEqual(client.count("submit"), 1)
        self.assertEqual(client.count("status"), 1)
        self.assertEqual(len(self.storage.resources), 1)
        self.assertEqual(first.snapshot.phase, Phase.COMPLETED)
        self.assertEqual(second.snapshot.phase, Phase.COMPLETED)
        self.assertEqual(len(first.navigations) + len(second.navigations), 1)


if __name__ == "__main__":
    unittest.main()
