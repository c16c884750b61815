"""
Shared constants for VaultIngest.
Imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "VaultIngest"
APP_DISPLAY_NAME = "Knowledge Vault Ingest"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".local" / "share" / "vault-ingest"
LOG_DIR = HOME / ".local" / "state" / "vault-ingest"
DB_PATH = APP_SUPPORT_DIR / "resources.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE = "VaultIngest:Session"
KEYCHAIN_ACCOUNT = "default"

# ── Remote endpoints ──────────────────────────────────────────────────
PROCESS_PATH = "/short-form/process"
STATUS_PATH = "/short-form/status"
REQUEST_TIMEOUT_SEC = 15


# ── Platforms ─────────────────────────────────────────────────────────
class Platform:
    TIKTOK = "tiktok"
    YOUTUBE_SHORT = "youtube-short"
    INSTAGRAM_REEL = "instagram-reel"

PLATFORM_DISPLAY_NAMES = {
    Platform.YOUTUBE_SHORT: "YouTube Shorts",
    Platform.TIKTOK: "TikTok",
    Platform.INSTAGRAM_REEL: "Instagram Reels",
}

PLATFORM_FEATURES = {
    Platform.YOUTUBE_SHORT: {'metadata': True, 'transcript': True, 'thumbnails': True},
    Platform.TIKTOK: {'metadata': True, 'transcript': False, 'thumbnails': True},
    Platform.INSTAGRAM_REEL: {'metadata': True, 'transcript': False, 'thumbnails': True},
}


# ── Job status values (ordered pipeline) ─────────────────────────────
class ProcessingStatus:
    CREATED = "created"
    DETECTING = "detecting"
    METADATA = "metadata"
    TRANSCRIPT = "transcript"
    COMPLETED = "completed"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"

TERMINAL_STATUSES = frozenset({
    ProcessingStatus.COMPLETED,
    ProcessingStatus.FAILED,
    ProcessingStatus.UNSUPPORTED,
})

FAILED_STATUSES = frozenset({ProcessingStatus.FAILED, ProcessingStatus.UNSUPPORTED})

STATUS_LABELS = {
    ProcessingStatus.CREATED: "Initializing...",
    ProcessingStatus.DETECTING: "Analyzing URL...",
    ProcessingStatus.METADATA: "Extracting metadata...",
    ProcessingStatus.TRANSCRIPT: "Processing transcript...",
    ProcessingStatus.COMPLETED: "Complete!",
    ProcessingStatus.FAILED: "Failed",
    ProcessingStatus.UNSUPPORTED: "Not supported",
}


# ── Processing steps (sub-stage within a status) ──────────────────────
# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Reported by the processing service
    INVALID_URL = "invalid_url"
    UNSUPPORTED_PLATFORM = "unsupported_platform"
    UNSUPPORTED_CONTENT = "unsupported_content"
    PRIVACY_BLOCKED = "privacy_blocked"
    NOT_FOUND = "not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    API_ERROR = "api_error"
    RATE_LIMITED = "rate_limited"
    EXTRACTION_FAILED = "extraction_failed"
    TRANSCRIPT_FAILED = "transcript_failed"
    INTERNAL_ERROR = "internal_error"

    # Status endpoint
    JOB_NOT_FOUND = "job_not_found"
    INVALID_JOB_ID = "invalid_job_id"
    UNAUTHORIZED = "unauthorized"

    # Raised on this side of the wire
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    MISSING_CREDENTIALS = "missing_credentials"
    NOT_CONFIGURED = "not_configured"
    STORAGE_FAILED = "storage_failed"
    METADATA_MISSING = "metadata_missing"

# Poll failures with these codes are retried; anything else stalls the poller.
RETRYABLE_ERRORS = {
    ErrorCode.NETWORK_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.INVALID_RESPONSE,
    ErrorCode.INTERNAL_ERROR,
    ErrorCode.RATE_LIMITED,
    ErrorCode.API_ERROR,
}


# ── Polling defaults ──────────────────────────────────────────────────
DEFAULT_POLL_INTERVAL_MS = 2000
MAX_POLL_INTERVAL_MS = 30000
POLL_BACKOFF_MULTIPLIER = 1.5
MAX_POLL_COUNT = 150
RETRY_AFTER_DEFAULT_MS = 5000

MAX_CONSECUTIVE_POLL_FAILURES = 3
SLOW_WARNING_AFTER_MS = 60000


# ── URL normalization ─────────────────────────────────────────────────
TRACKING_PARAMS = (
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
    'fbclid', 'gclid', 'ref', 'source', 'campaign', 'si', 'feature',
    'igshid', 'igsh', 'is_from_webapp', 'sender_device', '_r', '_t',
)

# Matched against the normalized URL. First capture group is the video id.
PLATFORM_URL_PATTERNS = {
    Platform.YOUTUBE_SHORT: [
        r'^https://youtube\.com/shorts/([\w-]+)$',
    ],
    Platform.TIKTOK: [
        r'^https://tiktok\.com/@[\w.-]+/video/(\d+)$',
        r'^https://v[mt]\.tiktok\.com/([\w-]+)$',
    ],
    Platform.INSTAGRAM_REEL: [
        r'^https://instagram\.com/reel/([\w-]+)$',
        r'^https://instagram\.com/p/([\w-]+)$',
    ],
}

# ── Resources ─────────────────────────────────────────────────────────
RESOURCE_TYPE_SHORT_VIDEO = "short-video"
DEFAULT_RESOURCE_TITLE = "Short-form Video"
