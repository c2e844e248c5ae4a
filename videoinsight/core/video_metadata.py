"""
Video metadata lookup via yt-dlp.
Best-effort: a failed lookup never aborts the download stage.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from videoinsight.core.constants import YTDLP_BIN, METADATA_TIMEOUT_SEC
from videoinsight.core.process_runner import CancelScope, run_process

logger = logging.getLogger(__name__)


@dataclass
class VideoMetadata:
    title: Optional[str] = None
    duration: Optional[float] = None
    raw: dict = field(default_factory=dict)


def cookie_args(cookies_file: str | Path | None) -> list[str]:
    """['--cookies', path] if a cookie file was supplied and exists."""
    if not cookies_file or not str(cookies_file).strip():
        logger.info("No cookies file provided")
        return []
    path = Path(str(cookies_file).strip()).expanduser()
    if not path.exists():
        logger.warning("Cookies file does not exist: %s", path)
        return []
    logger.info("Using cookies file: %s", path)
    return ["--cookies", str(path)]


def parse_metadata_json(text: str) -> VideoMetadata:
    """Parse yt-dlp --dump-single-json output; malformed input gives empty metadata."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning("Failed to parse video info: %s", e)
        return VideoMetadata()
    if not isinstance(data, dict):
        logger.warning("Unexpected video info payload: %s", type(data).__name__)
        return VideoMetadata()

    duration = data.get('duration')
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None

    title = data.get('title')
    return VideoMetadata(title=str(title) if title else None, duration=duration, raw=data)


def fetch_metadata(video_url: str, cookies_file: str | None = None,
                   scope: CancelScope | None = None,
                   binary: str = YTDLP_BIN,
                   timeout: float = METADATA_TIMEOUT_SEC) -> VideoMetadata:
    """
    Resolve title/duration with yt-dlp --dump-single-json.
    Only a spawn failure (yt-dlp missing) or cancellation propagates.
    """
    args = ["--dump-single-json", "--no-playlist"]
    args.extend(cookie_args(cookies_file))
    args.append(video_url)

    result = run_process(binary, args, timeout=timeout, scope=scope)

    if not result.ok:
        logger.warning("Metadata lookup failed (rc=%s%s): %s", result.exit_code,
                       ", timed out" if result.timed_out else "",
                       result.stderr_tail())
        return VideoMetadata()

    meta = parse_metadata_json(result.stdout)
    logger.info("Video info: title=%r duration=%s", meta.title, meta.duration)
    return meta
