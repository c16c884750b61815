"""
HTTP client for the short-form processing service.
Two endpoints: POST /short-form/process and GET /short-form/status.
Every network or decoding failure leaves this module as a ProcessingError.
"""

import json
import logging
import requests

from vault_ingest.core.constants import (
    ErrorCode, PROCESS_PATH, STATUS_PATH, REQUEST_TIMEOUT_SEC,
)
from vault_ingest.core.error_codes import ErrorInfo, ProcessingError
from vault_ingest.core.models import ProcessingJob, SubmitResult

logger = logging.getLogger(__name__)


class ShortFormApiClient:
    """Credential-bearing client; the access token is passed in explicitly."""

    def __init__(self, base_url: str | None, access_token: str | None,
                 session: requests.Session | None = None,
                 timeout: float = REQUEST_TIMEOUT_SEC):
        self.base_url = (base_url or "").rstrip('/')
        self.access_token = access_token
        self.session = session or requests.Session()
        self.timeout = timeout

    # ── Helpers ───────────────────────────────────────────────────────

    def _headers(self) -> dict:
        if not self.access_token:
            raise ProcessingError(ErrorCode.MISSING_CREDENTIALS,
                                  "You must be signed in to process short-form videos")
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise ProcessingError(ErrorCode.NOT_CONFIGURED,
                                  "Processing service URL is not configured")
        return f"{self.base_url}{path}"

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self._url(path)
        headers = self._headers()
        try:
            return self.session.request(method, url, headers=headers,
                                        timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise ProcessingError(ErrorCode.TIMEOUT,
                                  "The processing service did not respond in time")
        except requests.exceptions.ConnectionError:
            raise ProcessingError(ErrorCode.NETWORK_ERROR,
                                  "Network error connecting to the processing service")
        except requests.exceptions.RequestException as e:
            raise ProcessingError(ErrorCode.NETWORK_ERROR, f"Request failed: {e}")

    @staticmethod
    def _decode(resp: requests.Response) -> dict:
        try:
            payload = resp.json()
        except (json.JSONDecodeError, ValueError):
            body = resp.text[:300] if resp.text else "No response body"
            raise ProcessingError(ErrorCode.INVALID_RESPONSE,
                                  f"Processing service returned {resp.status_code}: {body}",
                                  http_status=resp.status_code)
        if not isinstance(payload, dict):
            raise ProcessingError(ErrorCode.INVALID_RESPONSE,
                                  "Processing service returned an unexpected payload",
                                  http_status=resp.status_code)
        return payload

    @staticmethod
    def _parse(parser, payload: dict, **kwargs):
        """Run a payload decoder; malformed fields become invalid_response."""
        try:
            return parser(payload, **kwargs)
        except ProcessingError:
            raise
        except (AttributeError, TypeError, ValueError, OverflowError) as e:
            logger.warning("Malformed response payload: %s", e)
            raise ProcessingError(ErrorCode.INVALID_RESPONSE,
                                  "Processing service returned a malformed response",
                                  details=str(e)[:500])

    @staticmethod
    def _raise_for_payload(resp: requests.Response, payload: dict, fallback: str):
        """Raise unless the response is a 2xx `{success: true}` payload."""
        if resp.ok and payload.get('success') is True:
            return

        info = ErrorInfo.from_payload(payload.get('error'), fallback)
        if info is None:
            code = ErrorCode.INTERNAL_ERROR
            if resp.status_code in (401, 403):
                code = ErrorCode.UNAUTHORIZED
            elif resp.status_code == 429:
                code = ErrorCode.RATE_LIMITED
            info = ErrorInfo(code=code, message=fallback)
        elif resp.status_code in (401, 403) and info.code == ErrorCode.INTERNAL_ERROR:
            info.code = ErrorCode.UNAUTHORIZED
        raise ProcessingError.from_info(info, http_status=resp.status_code)

    # ── Endpoints ─────────────────────────────────────────────────────

    def submit(self, normalized_url: str, include_transcript: bool = True,
               force_refresh: bool = False) -> SubmitResult:
        """Start processing a URL. Returns the job handle used for polling."""
        body = {
            "url": normalized_url,
            "options": {"includeTranscript": include_transcript},
        }
        if force_refresh:
            body["options"]["forceRefresh"] = True

        logger.info("Submitting %s (force_refresh=%s)", normalized_url, force_refresh)
        resp = self._send("POST", PROCESS_PATH, json=body)
        payload = self._decode(resp)
        self._raise_for_payload(resp, payload, "Failed to start processing")

        result = self._parse(SubmitResult.from_payload, payload)
        logger.info("Submitted %s as job %s (status=%s)",
                    normalized_url, result.job_id, result.status)
        return result

    def find_existing_job(self, normalized_url: str) -> ProcessingJob | None:
        """
        Look up a job for this URL. "Not found" is a normal answer and
        returns None; every other failure raises ProcessingError.
        """
        resp = self._send("GET", STATUS_PATH, params={"normalizedUrl": normalized_url})
        if resp.status_code == 404:
            logger.debug("No existing job for %s", normalized_url)
            return None

        payload = self._decode(resp)
        if payload.get('success') is not True:
            error = payload.get('error') or {}
            if isinstance(error, dict) and error.get('code') == ErrorCode.JOB_NOT_FOUND:
                return None
        self._raise_for_payload(resp, payload, "Failed to look up existing job")

        job = self._parse(ProcessingJob.from_payload, payload, normalized_url=normalized_url)
        logger.info("Found existing job %s for %s (status=%s)",
                    job.job_id, normalized_url, job.status)
        return job

    def get_job_status(self, job_id: str) -> ProcessingJob:
        """Current server-side state of a job."""
        resp = self._send("GET", STATUS_PATH, params={"jobId": job_id})
        if resp.status_code == 404:
            raise ProcessingError(ErrorCode.JOB_NOT_FOUND, "Processing job not found",
                                  http_status=404)

        payload = self._decode(resp)
        self._raise_for_payload(resp, payload, "Failed to get job status")
        return self._parse(ProcessingJob.from_payload, payload)
