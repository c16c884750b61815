"""
Security utilities for VaultIngest.
- Token redaction for logs
- Safe subprocess execution (argument arrays only)
- Keychain storage for the session access token (macOS)
"""

import subprocess
import logging

from vault_ingest.core.constants import KEYCHAIN_SERVICE, KEYCHAIN_ACCOUNT

logger = logging.getLogger(__name__)


# ── Token safety ──────────────────────────────────────────────────────

def redact_token(token: str | None) -> str:
    """Mask a bearer token, keeping only the last 4 characters."""
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "****"
    return f"****{token[-4:]}"


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # shell is always False
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", args[0] if args else "")
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 30, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


# ── Keychain integration (macOS) ──────────────────────────────────────

def keychain_get_token() -> str | None:
    """Retrieve the stored access token, or None if there is none."""
    try:
        result = run_subprocess_capture([
            "security", "find-generic-password",
            "-s", KEYCHAIN_SERVICE,
            "-a", KEYCHAIN_ACCOUNT,
            "-w",  # print password only
        ], timeout=10)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    except OSError as e:
        logger.warning("Keychain read failed: %s", type(e).__name__)
    return None


def keychain_set_token(token: str) -> bool:
    """Store or update the access token."""
    try:
        result = run_subprocess_capture([
            "security", "add-generic-password",
            "-s", KEYCHAIN_SERVICE,
            "-a", KEYCHAIN_ACCOUNT,
            "-w", token,
            "-U",  # update if exists
        ], timeout=10)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.error("Keychain write failed: %s", type(e).__name__)
        return False


def keychain_delete_token() -> bool:
    """Forget the stored access token."""
    try:
        result = run_subprocess_capture([
            "security", "delete-generic-password",
            "-s", KEYCHAIN_SERVICE,
            "-a", KEYCHAIN_ACCOUNT,
        ], timeout=10)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False
