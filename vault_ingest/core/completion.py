"""
Turns a terminal processing job into a saved resource, or a user-facing failure.
Each job id is handled once; repeat calls get the first outcome back.
"""

import logging
import math
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from vault_ingest.core.constants import (
    ErrorCode, ProcessingStatus, DEFAULT_RESOURCE_TITLE, RESOURCE_TYPE_SHORT_VIDEO,
)
from vault_ingest.core.error_codes import ErrorInfo, ErrorKind
from vault_ingest.core.models import ProcessingJob, Resource
from vault_ingest.core.storage import ResourceStorage

logger = logging.getLogger(__name__)


class OutcomeKind:
    CREATED = "created"
    SAVE_FAILED = "save_failed"
    JOB_FAILED = "job_failed"


@dataclass
class CompletionOutcome:
    kind: str
    job_id: str
    resource: Optional[Resource] = None
    error: Optional[ErrorInfo] = None
    error_kind: Optional[str] = None
    duplicate: bool = False

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.CREATED


def format_duration(seconds) -> str:
    """45 -> '0:45', 125.7 -> '2:05'. Empty string for unusable input."""
    if seconds is None or isinstance(seconds, bool):
        return ""
    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        return ""
    if not math.isfinite(seconds) or seconds < 0:
        return ""
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}:{secs:02d}"


def build_resource(job: ProcessingJob) -> Resource:
    """Map a completed job's metadata onto the local resource shape."""
    metadata = job.metadata
    now = datetime.now(timezone.utc).isoformat()
    hashtags = list(metadata.content.hashtags)
    return Resource(
        id=str(uuid.uuid4()),
        type=RESOURCE_TYPE_SHORT_VIDEO,
        title=metadata.title or DEFAULT_RESOURCE_TITLE,
        description=metadata.description or "",
        notes="",
        tags=hashtags,
        url=metadata.source_url or metadata.normalized_url or job.normalized_url,
        platform=metadata.platform,
        creator=metadata.creator.name or metadata.creator.handle,
        duration=format_duration(metadata.duration) or None,
        transcript=job.transcript or None,
        channel_name=metadata.creator.channel_name,
        handle=metadata.creator.handle,
        view_count=metadata.content.view_count,
        hashtags=hashtags,
        extracted_at=metadata.extraction.extracted_at or now,
        extraction_method=metadata.extraction.method,
        source_job_id=job.job_id,
        created_at=now,
        updated_at=now,
    )


class CompletionHandler:
    """Performs the one-time side effect for terminal jobs."""

    def __init__(self, storage: ResourceStorage):
        self.storage = storage
        self._lock = threading.Lock()
        self._outcomes: dict[str, CompletionOutcome] = {}
        self._pending: dict[str, Resource] = {}

    def outcome_for(self, job_id: str) -> CompletionOutcome | None:
        with self._lock:
            return self._outcomes.get(job_id)

    def handle(self, job: ProcessingJob) -> CompletionOutcome:
        if not job.is_terminal:
            raise ValueError(f"Job {job.job_id} is not terminal (status={job.status})")

        with self._lock:
            previous = self._outcomes.get(job.job_id)
            if previous is not None:
                logger.debug("Job %s already handled (%s)", job.job_id, previous.kind)
                return replace(previous, duplicate=True)

            if job.status != ProcessingStatus.COMPLETED:
                outcome = self._job_failed(job)
            elif job.metadata is None:
                logger.error("Job %s completed without metadata", job.job_id)
                outcome = CompletionOutcome(
                    kind=OutcomeKind.JOB_FAILED,
                    job_id=job.job_id,
                    error=ErrorInfo(ErrorCode.METADATA_MISSING,
                                    "Processing completed without metadata",
                                    fallback_suggestion="You can create the resource manually with this URL."),
                    error_kind=ErrorKind.JOB,
                )
            else:
                self._pending[job.job_id] = build_resource(job)
                outcome = self._save(job.job_id)

            self._outcomes[job.job_id] = outcome
            return outcome

    def retry_save(self, job_id: str) -> CompletionOutcome:
        """Retry only the save step for a job whose resource was not stored."""
        with self._lock:
            previous = self._outcomes.get(job_id)
            if previous is None or previous.kind != OutcomeKind.SAVE_FAILED:
                raise ValueError(f"Job {job_id} has no failed save to retry")
            outcome = self._save(job_id)
            self._outcomes[job_id] = outcome
            return outcome

    def forget(self, job_id: str):
        """
        Drop the memoised outcome for a job id. Only for an explicit user
        reprocess, where the service reuses the job id for the new run.
        """
        with self._lock:
            self._outcomes.pop(job_id, None)
            self._pending.pop(job_id, None)

    # ── Internals (called with the lock held) ─────────────────────────

    @staticmethod
    def _job_failed(job: ProcessingJob) -> CompletionOutcome:
        error = job.error or ErrorInfo(ErrorCode.INTERNAL_ERROR,
                                       "Processing could not be completed")
        logger.info("Job %s ended %s: [%s] %s", job.job_id, job.status,
                    error.code, error.message)
        return CompletionOutcome(kind=OutcomeKind.JOB_FAILED, job_id=job.job_id,
                                 error=error, error_kind=ErrorKind.JOB)

    def _save(self, job_id: str) -> CompletionOutcome:
        resource = self._pending[job_id]
        try:
            saved = self.storage.add_resource(resource)
        except Exception as e:
            logger.error("Saving resource for job %s failed: %s", job_id, e, exc_info=True)
            return CompletionOutcome(
                kind=OutcomeKind.SAVE_FAILED,
                job_id=job_id,
                resource=resource,
                error=ErrorInfo(ErrorCode.STORAGE_FAILED,
                                "The video was processed but could not be saved",
                                details=str(e)[:500]),
                error_kind=ErrorKind.PERSISTENCE,
            )
        self._pending.pop(job_id, None)
        saved = saved or resource
        logger.info("Created resource %s from job %s", saved.id, job_id)
        return CompletionOutcome(kind=OutcomeKind.CREATED, job_id=job_id, resource=saved)
