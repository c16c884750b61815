"""
Standardised error handling for VaultIngest.
"""

import math
from dataclasses import dataclass
from typing import Optional

from vault_ingest.core.constants import ErrorCode, RETRYABLE_ERRORS


class ErrorKind:
    """Where in the lifecycle a failure happened."""
    INPUT = "input"
    SUBMISSION = "submission"
    POLLING = "polling"
    JOB = "job"
    PERSISTENCE = "persistence"


@dataclass
class ErrorInfo:
    code: str
    message: str
    details: Optional[str] = None
    retry_after_ms: Optional[int] = None
    fallback_suggestion: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict | None, default_message: str = "Processing failed"):
        if not isinstance(payload, dict):
            return None
        retry_after = payload.get('retryAfterMs')
        return cls(
            code=str(payload.get('code') or ErrorCode.INTERNAL_ERROR),
            message=str(payload.get('message') or default_message),
            details=payload.get('details'),
            retry_after_ms=(int(retry_after) if isinstance(retry_after, (int, float))
                            and not isinstance(retry_after, bool)
                            and math.isfinite(retry_after) else None),
            fallback_suggestion=payload.get('fallbackSuggestion'),
        )


class ProcessingError(Exception):
    """Raised when talking to the processing service or storage goes wrong."""

    def __init__(self, code: str, message: str, details: str | None = None,
                 retry_after_ms: int | None = None,
                 fallback_suggestion: str | None = None,
                 http_status: int | None = None,
                 retryable: bool | None = None):
        self.code = code
        self.message = message
        self.details = details
        self.retry_after_ms = retry_after_ms
        self.fallback_suggestion = fallback_suggestion
        self.http_status = http_status
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")

    @property
    def info(self) -> ErrorInfo:
        return ErrorInfo(
            code=self.code,
            message=self.message,
            details=self.details,
            retry_after_ms=self.retry_after_ms,
            fallback_suggestion=self.fallback_suggestion,
        )

    @classmethod
    def from_info(cls, info: ErrorInfo, http_status: int | None = None):
        return cls(info.code, info.message, details=info.details,
                   retry_after_ms=info.retry_after_ms,
                   fallback_suggestion=info.fallback_suggestion,
                   http_status=http_status)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def describe_next_action(info: ErrorInfo | None, kind: str | None = None) -> str:
    """
    Human-readable next step for a failure.
    A retry-after hint wins over a fallback suggestion.
    """
    if info is None:
        return ""
    if kind == ErrorKind.PERSISTENCE:
        return "The video was processed but could not be saved. Retry saving, or create it manually."
    if info.code == ErrorCode.MISSING_CREDENTIALS or info.code == ErrorCode.UNAUTHORIZED:
        return "Sign in again, then retry."
    if info.retry_after_ms:
        seconds = max(1, round(info.retry_after_ms / 1000))
        return f"Try again in {seconds} seconds."
    if info.fallback_suggestion:
        return info.fallback_suggestion
    if kind == ErrorKind.POLLING:
        return "Check your connection, then resume tracking. The job keeps running on the server."
    if kind == ErrorKind.INPUT:
        return "Check the URL, or create the resource manually."
    return "Retry, or create the resource manually."
