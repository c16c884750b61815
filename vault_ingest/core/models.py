"""
Data models (plain dataclasses) for VaultIngest.
"""

import math
from dataclasses import dataclass, field
from typing import Optional

from vault_ingest.core.constants import (
    ErrorCode, ProcessingStatus, TERMINAL_STATUSES, FAILED_STATUSES,
    RESOURCE_TYPE_SHORT_VIDEO,
)
from vault_ingest.core.error_codes import ErrorInfo, ProcessingError


def _require(payload: dict, key: str):
    value = payload.get(key)
    if value is None or value == "":
        raise ProcessingError(ErrorCode.INVALID_RESPONSE,
                              f"Response is missing required field '{key}'")
    return value


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _list(value) -> list:
    return list(value) if isinstance(value, list) else []


def _optional_float(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _optional_int(value) -> Optional[int]:
    value = _optional_float(value)
    return int(value) if value is not None else None


@dataclass
class NormalizedUrlResult:
    raw_url: str
    normalized_url: str = ""
    platform: Optional[str] = None
    is_supported: bool = False
    is_valid: bool = False
    video_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class Creator:
    name: Optional[str] = None
    handle: Optional[str] = None
    channel_id: Optional[str] = None
    channel_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class ContentInfo:
    hashtags: list[str] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)
    upload_date: Optional[str] = None
    view_count: Optional[int] = None
    language: Optional[str] = None


@dataclass
class ExtractionInfo:
    method: str = "auto"
    extracted_at: Optional[str] = None
    api_version: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class ShortFormMetadata:
    platform: Optional[str] = None
    source_url: Optional[str] = None
    normalized_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[float] = None       # seconds
    thumbnail_url: Optional[str] = None
    creator: Creator = field(default_factory=Creator)
    content: ContentInfo = field(default_factory=ContentInfo)
    extraction: ExtractionInfo = field(default_factory=ExtractionInfo)

    @classmethod
    def from_payload(cls, payload: dict) -> "ShortFormMetadata":
        creator = _dict(payload.get('creator'))
        content = _dict(payload.get('content'))
        extraction = _dict(payload.get('extraction'))
        return cls(
            platform=payload.get('platform'),
            source_url=payload.get('sourceUrl'),
            normalized_url=payload.get('normalizedUrl'),
            title=payload.get('title'),
            description=payload.get('description'),
            duration=_optional_float(payload.get('duration')),
            thumbnail_url=payload.get('thumbnailUrl'),
            creator=Creator(
                name=creator.get('name'),
                handle=creator.get('handle'),
                channel_id=creator.get('channelId'),
                channel_name=creator.get('channelName'),
                avatar_url=creator.get('avatarUrl'),
            ),
            content=ContentInfo(
                hashtags=_list(content.get('hashtags')),
                mentions=_list(content.get('mentions')),
                upload_date=content.get('uploadDate'),
                view_count=_optional_int(content.get('viewCount')),
                language=content.get('language'),
            ),
            extraction=ExtractionInfo(
                method=extraction.get('method') or "auto",
                extracted_at=extraction.get('extractedAt'),
                api_version=extraction.get('apiVersion'),
                warnings=_list(extraction.get('warnings')),
            ),
        )


@dataclass
class ProcessingJob:
    """Local read model of a job owned by the processing service."""
    job_id: str
    status: str
    normalized_url: Optional[str] = None
    current_step: Optional[str] = None
    progress: int = 0
    metadata: Optional[ShortFormMetadata] = None
    transcript: Optional[str] = None
    error: Optional[ErrorInfo] = None
    poll_interval_ms: Optional[int] = None
    max_poll_count: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_failed(self) -> bool:
        return self.status in FAILED_STATUSES

    @classmethod
    def from_payload(cls, payload: dict, normalized_url: str | None = None) -> "ProcessingJob":
        """Build from a `{success: true, ...}` status response."""
        status = _require(payload, 'status')
        progress = _optional_int(payload.get('progress')) or 0

        metadata = None
        raw_meta = payload.get('metadata')
        # metadata only ever accompanies a completed job
        if status == ProcessingStatus.COMPLETED and isinstance(raw_meta, dict):
            metadata = ShortFormMetadata.from_payload(raw_meta)

        error = None
        if status in FAILED_STATUSES:
            error = ErrorInfo.from_payload(payload.get('error'), "Processing could not be completed")

        if normalized_url is None and metadata is not None:
            normalized_url = metadata.normalized_url

        return cls(
            job_id=str(_require(payload, 'jobId')),
            status=status,
            normalized_url=normalized_url,
            current_step=payload.get('currentStep'),
            progress=max(0, min(100, progress)),
            metadata=metadata,
            transcript=payload.get('transcript') or None,
            error=error,
            poll_interval_ms=_optional_int(payload.get('pollIntervalMs')),
            max_poll_count=_optional_int(payload.get('maxPollCount')),
            created_at=payload.get('createdAt'),
            updated_at=payload.get('updatedAt'),
            completed_at=payload.get('completedAt'),
        )


@dataclass
class SubmitResult:
    job_id: str
    status: str
    poll_interval_ms: Optional[int] = None
    estimated_time_ms: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_payload(cls, payload: dict) -> "SubmitResult":
        return cls(
            job_id=str(_require(payload, 'jobId')),
            status=_require(payload, 'status'),
            poll_interval_ms=_optional_int(payload.get('pollIntervalMs')),
            estimated_time_ms=_optional_int(payload.get('estimatedTimeMs')),
            message=payload.get('message'),
        )


@dataclass
class Resource:
    id: str
    title: str
    type: str = RESOURCE_TYPE_SHORT_VIDEO
    description: str = ""
    notes: str = ""
    tags: list[str] = field(default_factory=list)
    url: Optional[str] = None
    platform: Optional[str] = None
    creator: Optional[str] = None
    duration: Optional[str] = None         # "m:ss"
    transcript: Optional[str] = None
    channel_name: Optional[str] = None
    handle: Optional[str] = None
    view_count: Optional[int] = None
    hashtags: list[str] = field(default_factory=list)
    extracted_at: Optional[str] = None
    extraction_method: Optional[str] = None
    source_job_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class LocalOrchestrationState:
    """Per-URL client state for the current session. Never persisted."""
    normalized_url: str
    job_id: Optional[str] = None
    is_polling: bool = False
    recovery_checked: bool = False
    auto_submit_attempted: bool = False
    recovered_job: Optional[ProcessingJob] = None
    last_error: Optional[ErrorInfo] = None
    poll_interval_ms: Optional[int] = None
