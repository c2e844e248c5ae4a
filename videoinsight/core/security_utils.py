"""
Security utilities for VideoInsight.
- Safe subprocess execution (argument arrays only)
- Keychain integration (macOS) for cloud provider API keys
"""

import pathlib
import re
import subprocess
import logging

from videoinsight.core.constants import (
    KEYCHAIN_SERVICE_PREFIX, KEYCHAIN_ACCOUNT, UNSAFE_FILENAME_CHARS, MAX_FILENAME_LEN,
)

logger = logging.getLogger(__name__)


# ── Path safety ───────────────────────────────────────────────────────

def sanitize_filename(name: str) -> str:
    """Make a video title safe to use as a file name."""
    if not name:
        return ""
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', name)
    safe = safe.replace('..', '')
    safe = re.sub(r'[_\s]+', ' ', safe).strip()
    if len(safe) > MAX_FILENAME_LEN:
        safe = safe[:MAX_FILENAME_LEN].rstrip()
    # Leading dots would make a hidden file
    return safe.strip('.')


def safe_export_path(export_dir: pathlib.Path, title: str | None, task_id: str,
                     extension: str) -> pathlib.Path:
    """
    Build <export_dir>/<sanitized title>.<ext>, falling back to
    'task_<id>' if the title is empty or would escape export_dir.
    """
    stem = sanitize_filename(title or "") or f"task_{task_id}"
    candidate = export_dir / f"{stem}.{extension}"
    real_root = export_dir.resolve(strict=False)
    if real_root not in candidate.resolve(strict=False).parents:
        candidate = export_dir / f"task_{task_id}.{extension}"
    return candidate


# ── Subprocess safety ─────────────────────────────────────────────────

def check_args(args) -> list[str]:
    """Reject shell strings; every command must be an argument array."""
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")
    return [str(a) for a in args]


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    args = check_args(args)

    # Caller-supplied shell is dropped; shell=False is passed once below
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


def redact(secret: str | None) -> str:
    """Short, log-safe fingerprint of a secret."""
    if not secret:
        return "<none>"
    return f"{secret[:3]}…({len(secret)} chars)"


# ── Keychain integration (macOS) ──────────────────────────────────────

def _keychain_service(provider: str) -> str:
    return f"{KEYCHAIN_SERVICE_PREFIX}:{provider}"


def keychain_get_api_key(provider: str) -> str | None:
    """Retrieve a provider API key from macOS Keychain."""
    try:
        result = run_subprocess_capture([
            "security", "find-generic-password",
            "-s", _keychain_service(provider),
            "-a", KEYCHAIN_ACCOUNT,
            "-w",  # print password only
        ], timeout=10)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    except Exception as e:
        logger.warning("Keychain read failed: %s", type(e).__name__)
    return None


def keychain_set_api_key(provider: str, api_key: str) -> bool:
    """Store or update a provider API key in macOS Keychain."""
    try:
        result = run_subprocess_capture([
            "security", "add-generic-password",
            "-s", _keychain_service(provider),
            "-a", KEYCHAIN_ACCOUNT,
            "-w", api_key,
            "-U",  # update if exists
        ], timeout=10)
        return result.returncode == 0
    except Exception as e:
        logger.error("Keychain write failed: %s", type(e).__name__)
        return False


def keychain_delete_api_key(provider: str) -> bool:
    """Delete a provider API key from macOS Keychain."""
    try:
        result = run_subprocess_capture([
            "security", "delete-generic-password",
            "-s", _keychain_service(provider),
            "-a", KEYCHAIN_ACCOUNT,
        ], timeout=10)
        return result.returncode == 0
    except Exception as e:
        logger.warning("Keychain delete failed: %s", type(e).__name__)
        return False
