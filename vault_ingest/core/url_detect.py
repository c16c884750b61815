"""
Short-form video URL normalization and platform detection.
Pure functions: no network access, never raise on bad input.
"""

import re
import logging
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from vault_ingest.core.constants import (
    Platform, PLATFORM_URL_PATTERNS, PLATFORM_DISPLAY_NAMES, PLATFORM_FEATURES,
    TRACKING_PARAMS,
)
from vault_ingest.core.models import NormalizedUrlResult

logger = logging.getLogger(__name__)

_YOUTUBE_HOSTS = ('youtube.com', 'youtu.be', 'youtube-nocookie.com')
_INSTAGRAM_HOSTS = ('instagram.com', 'instagr.am')
_TIKTOK_SHORT_HOSTS = ('vm.tiktok.com', 'vt.tiktok.com')


def is_valid_url(url: str) -> bool:
    """True for an absolute http(s) URL with a host."""
    try:
        parts = urlsplit(url.strip())
    except (ValueError, AttributeError):
        return False
    return parts.scheme.lower() in ('http', 'https') and bool(parts.hostname)


def _strip_host(hostname: str) -> str:
    host = hostname.lower().rstrip('.')
    for prefix in ('www.', 'm.'):
        if host.startswith(prefix):
            host = host[len(prefix):]
    return host


def _path_segments(path: str) -> list[str]:
    return [seg for seg in path.split('/') if seg]


def _normalize_youtube(host: str, path: str, query: str) -> str | None:
    segments = _path_segments(path)
    if host == 'youtu.be':
        if segments:
            return f"https://youtube.com/shorts/{segments[0]}"
        return None
    if len(segments) >= 2 and segments[0] == 'shorts':
        return f"https://youtube.com/shorts/{segments[1]}"
    video_id = dict(parse_qsl(query)).get('v')
    if video_id:
        return f"https://youtube.com/watch?v={video_id}"
    return None


def _normalize_tiktok(host: str, path: str) -> str:
    segments = _path_segments(path)
    if host in _TIKTOK_SHORT_HOSTS:
        # short links need a network round-trip to expand; keep the short host
        code = segments[0] if segments else ""
        return f"https://{host}/{code}"
    return "https://tiktok.com/" + "/".join(segments)


def _normalize_instagram(path: str) -> str:
    segments = _path_segments(path)
    if len(segments) >= 2 and segments[0] in ('reel', 'reels', 'tv'):
        return f"https://instagram.com/reel/{segments[1]}"
    if len(segments) >= 2 and segments[0] == 'p':
        return f"https://instagram.com/p/{segments[1]}"
    return "https://instagram.com/" + "/".join(segments)


def normalize_url(url: str) -> str:
    """
    Canonical form of a URL, used as the idempotency key for job lookup.
    Returns the trimmed input unchanged if it is not a valid http(s) URL.
    """
    url = url.strip()
    if not is_valid_url(url):
        return url

    try:
        parts = urlsplit(url)
        host = _strip_host(parts.hostname or "")

        if host in _YOUTUBE_HOSTS:
            canonical = _normalize_youtube(host, parts.path, parts.query)
            if canonical:
                return canonical
            host = 'youtube.com'
        elif host == 'tiktok.com' or host.endswith('.tiktok.com'):
            full_host = (parts.hostname or "").lower()
            return _normalize_tiktok(full_host if full_host in _TIKTOK_SHORT_HOSTS else host,
                                     parts.path)
        elif host in _INSTAGRAM_HOSTS:
            return _normalize_instagram(parts.path)

        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                 if k.lower() not in TRACKING_PARAMS]
        netloc = host
        if parts.port and parts.port not in (80, 443):
            netloc = f"{host}:{parts.port}"
        path = parts.path or "/"
        return urlunsplit(('https', netloc, path, urlencode(query), ''))
    except ValueError as e:
        logger.warning("Failed to normalize URL %r: %s", url, e)
        return url


def detect_platform(normalized_url: str) -> str | None:
    """Platform whose canonical URL pattern matches, else None."""
    for platform, patterns in PLATFORM_URL_PATTERNS.items():
        for pattern in patterns:
            if re.match(pattern, normalized_url):
                return platform
    return None


def extract_video_id(url: str, platform: str | None = None) -> str | None:
    """Platform-specific content id from any spelling of a supported URL."""
    normalized = normalize_url(url)
    platforms = [platform] if platform else list(PLATFORM_URL_PATTERNS)
    for p in platforms:
        for pattern in PLATFORM_URL_PATTERNS.get(p, []):
            m = re.match(pattern, normalized)
            if m:
                return m.group(1)
    return None


def detect(raw_url: str) -> NormalizedUrlResult:
    """
    Classify raw user input.
    Empty or malformed input yields is_supported=False; this never raises.
    """
    if not isinstance(raw_url, str):
        return NormalizedUrlResult(raw_url="", error_message="URL cannot be empty")

    trimmed = raw_url.strip()
    if not trimmed:
        return NormalizedUrlResult(raw_url=raw_url, error_message="URL cannot be empty")

    if not is_valid_url(trimmed):
        return NormalizedUrlResult(raw_url=raw_url, normalized_url=trimmed,
                                   error_message="Invalid URL format")

    normalized = normalize_url(trimmed)
    platform = detect_platform(normalized)
    if not platform:
        return NormalizedUrlResult(
            raw_url=raw_url,
            normalized_url=normalized,
            is_valid=True,
            error_message="This platform is not supported for automatic processing",
        )

    return NormalizedUrlResult(
        raw_url=raw_url,
        normalized_url=normalized,
        platform=platform,
        is_supported=True,
        is_valid=True,
        video_id=extract_video_id(normalized, platform),
    )


def format_platform_display(platform: str) -> str:
    return PLATFORM_DISPLAY_NAMES.get(platform, platform)


def suggested_actions(result: NormalizedUrlResult) -> list[dict]:
    """What the user can do with a detection result."""
    if not result.is_valid:
        return [{
            'action': 'invalid',
            'label': 'Check URL',
            'description': 'Please verify the URL format and try again',
        }]

    if result.is_supported and result.platform:
        display = format_platform_display(result.platform)
        extras = " and transcript" if PLATFORM_FEATURES[result.platform]['transcript'] else ""
        return [
            {
                'action': 'process',
                'label': f"Process {display} Video",
                'description': f"Automatically extract metadata{extras}",
            },
            {
                'action': 'manual',
                'label': 'Create Manually',
                'description': 'Add video details yourself with this URL',
            },
        ]

    return [{
        'action': 'manual',
        'label': 'Create Video Resource',
        'description': ('This platform is not supported for automatic processing, '
                        'but you can create a video resource manually'),
    }]


def parse_input_lines(text: str) -> list[str]:
    """
    Parse pasted text into a list of supported short-form URLs.
    - Trims whitespace
    - Ignores empty lines
    - Skips unsupported URLs
    """
    urls = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if detect(line).is_supported:
            urls.append(line)
    return urls
