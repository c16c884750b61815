"""
Application configuration manager.
Stores settings in a JSON file under the app support directory.
"""

import json
import logging
from pathlib import Path
from urllib.parse import urlsplit

from vault_ingest.core.constants import (
    CONFIG_PATH, DB_PATH, DEFAULT_POLL_INTERVAL_MS, MAX_POLL_INTERVAL_MS,
    MAX_CONSECUTIVE_POLL_FAILURES, SLOW_WARNING_AFTER_MS, REQUEST_TIMEOUT_SEC,
)

# Validation bounds
_POLL_INTERVAL_MIN = 250
_FAILURES_MIN = 1
_FAILURES_MAX = 20
_SLOW_WARNING_MIN = 5000        # 5 seconds
_SLOW_WARNING_MAX = 1800000     # 30 minutes
_TIMEOUT_MIN = 1
_TIMEOUT_MAX = 120

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'functions_base_url': None,
    'supabase_url': None,
    'include_transcript': True,
    'default_poll_interval_ms': DEFAULT_POLL_INTERVAL_MS,
    'max_consecutive_poll_failures': MAX_CONSECUTIVE_POLL_FAILURES,
    'slow_warning_after_ms': SLOW_WARNING_AFTER_MS,
    'request_timeout_sec': REQUEST_TIMEOUT_SEC,
    'db_path': str(DB_PATH),
}


def derive_functions_base_url(explicit_url: str | None, supabase_url: str | None) -> str | None:
    """
    Base URL of the edge functions host.
    An explicit URL wins; otherwise https://<ref>.supabase.co maps to
    https://<ref>.functions.supabase.co.
    """
    if explicit_url:
        return explicit_url.rstrip('/')
    if not supabase_url:
        return None
    try:
        parts = urlsplit(supabase_url)
    except ValueError:
        return None
    host = parts.hostname or ""
    suffix = '.supabase.co'
    if not host.endswith(suffix) or host == suffix[1:]:
        return None
    project_ref = host[:-len(suffix)]
    return f"{parts.scheme or 'https'}://{project_ref}.functions.supabase.co"


def _clamp_int(key: str, value, lo: int, hi: int, default: int) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using default", key, value)
        return default
    return max(lo, min(hi, value))


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, ValueError, AttributeError) as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def override(self, key: str, value):
        """Set a value for this run only, without saving it."""
        self._data[key] = self._validate(key, value)

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'default_poll_interval_ms':
            return _clamp_int(key, value, _POLL_INTERVAL_MIN, MAX_POLL_INTERVAL_MS,
                              DEFAULT_POLL_INTERVAL_MS)

        if key == 'max_consecutive_poll_failures':
            return _clamp_int(key, value, _FAILURES_MIN, _FAILURES_MAX,
                              MAX_CONSECUTIVE_POLL_FAILURES)

        if key == 'slow_warning_after_ms':
            return _clamp_int(key, value, _SLOW_WARNING_MIN, _SLOW_WARNING_MAX,
                              SLOW_WARNING_AFTER_MS)

        if key == 'request_timeout_sec':
            return _clamp_int(key, value, _TIMEOUT_MIN, _TIMEOUT_MAX, REQUEST_TIMEOUT_SEC)

        if key == 'include_transcript':
            return bool(value)

        if key in ('functions_base_url', 'supabase_url'):
            if value in (None, ""):
                return None
            value = str(value).strip()
            if not value.startswith(('http://', 'https://')):
                logger.warning("Invalid %s %r, ignoring", key, value)
                return None

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def functions_base_url(self) -> str | None:
        return derive_functions_base_url(self._data.get('functions_base_url'),
                                         self._data.get('supabase_url'))

    @property
    def include_transcript(self) -> bool:
        return self._data.get('include_transcript', True)

    @property
    def db_path(self) -> Path:
        return Path(self._data.get('db_path') or DB_PATH)
