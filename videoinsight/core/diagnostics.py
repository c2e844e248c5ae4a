"""
Diagnostics: external tool detection and system checks.
"""

import logging
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path

from videoinsight.core.security_utils import run_subprocess_capture
from videoinsight.core.constants import YTDLP_BIN, FFMPEG_BIN, WHISPER_BIN, OLLAMA_BIN

logger = logging.getLogger(__name__)


def _tool_version(args: list[str], first_line_only: bool = True) -> str:
    try:
        result = run_subprocess_capture(args, timeout=15)
    except FileNotFoundError:
        return "Not installed"
    except subprocess.TimeoutExpired:
        return "Error: timed out"
    except OSError as e:
        return f"Error: {e}"
    if result.returncode != 0:
        return f"Error (rc={result.returncode})"
    output = (result.stdout or result.stderr).strip()
    if first_line_only and output:
        return output.splitlines()[0]
    return output


def get_ytdlp_version(binary: str = YTDLP_BIN) -> str:
    """Return yt-dlp version string, or error message."""
    return _tool_version([binary, "--version"])


def get_ffmpeg_version(binary: str = FFMPEG_BIN) -> str:
    """Return the first line of `ffmpeg -version`, or error message."""
    return _tool_version([binary, "-version"])


def get_whisper_status(binary: str = WHISPER_BIN) -> str:
    # whisper has no --version flag; being on PATH is all we can check cheaply
    path = shutil.which(binary)
    return f"Installed ({path})" if path else "Not installed"


def get_ollama_version(binary: str = OLLAMA_BIN) -> str:
    return _tool_version([binary, "--version"])


def list_ollama_models(binary: str = OLLAMA_BIN) -> list[str]:
    """Names of locally installed ollama models (empty if ollama is unavailable)."""
    try:
        result = run_subprocess_capture([binary, "list"], timeout=15)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Could not list ollama models: %s", e)
        return []
    if result.returncode != 0:
        logger.warning("ollama list failed (rc=%s): %s",
                       result.returncode, result.stderr.strip()[-300:])
        return []
    return parse_ollama_list(result.stdout)


def parse_ollama_list(output: str) -> list[str]:
    """Parse the NAME column of `ollama list` output."""
    models = []
    for line in output.splitlines()[1:]:
        fields = line.split()
        if fields:
            models.append(fields[0])
    return models


def check_cookies_file(cookies_path: str | Path | None) -> dict:
    """Check if a cookie file exists and return info."""
    info = {"detected": False, "path": str(cookies_path or ""), "last_modified": None}
    if not cookies_path:
        return info
    path = Path(cookies_path).expanduser()
    info["path"] = str(path)
    if path.is_file():
        info["detected"] = True
        info["last_modified"] = datetime.fromtimestamp(
            path.stat().st_mtime, tz=timezone.utc
        ).isoformat()
    return info


def get_diagnostics(cookies_path: str | Path | None = None) -> dict:
    """Gather all diagnostic information."""
    return {
        "ytdlp_version": get_ytdlp_version(),
        "ffmpeg_version": get_ffmpeg_version(),
        "whisper": get_whisper_status(),
        "ollama_version": get_ollama_version(),
        "ollama_models": list_ollama_models(),
        "cookies": check_cookies_file(cookies_path),
    }
