"""
Video download via yt-dlp.

Two attempts at most:  primary (best up to 1080p, stepping down to 720p and
then anything) → on a non-zero exit, one fallback with a sort-by-height
preference that continues past non-fatal errors → fail.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from videoinsight.core.constants import (
    ErrorCode, Stage, YTDLP_BIN, PRIMARY_FORMAT, FALLBACK_FORMAT_SORT,
    PARTIAL_DOWNLOAD_SUFFIXES,
)
from videoinsight.core.error_codes import TaskError
from videoinsight.core.process_runner import CancelScope, run_process
from videoinsight.core.progress_parse import DownloadProgressParser, ProgressEvent
from videoinsight.core.video_metadata import cookie_args, fetch_metadata

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class DownloadResult:
    video_path: str
    title: Optional[str] = None
    duration: Optional[float] = None
    file_size: Optional[int] = None


@dataclass(frozen=True)
class DownloadAttempt:
    name: str
    format_args: tuple
    message: str


PRIMARY_ATTEMPT = DownloadAttempt(
    name="primary",
    format_args=("-f", PRIMARY_FORMAT),
    message="Downloading video...",
)
FALLBACK_ATTEMPT = DownloadAttempt(
    name="fallback",
    format_args=("--format-sort", FALLBACK_FORMAT_SORT, "--ignore-errors"),
    message="Retrying with fallback format...",
)
DOWNLOAD_ATTEMPTS = (PRIMARY_ATTEMPT, FALLBACK_ATTEMPT)


def build_download_args(attempt: DownloadAttempt, output_template: str,
                        video_url: str, cookies_file: str | None = None) -> list[str]:
    args = list(attempt.format_args)
    args.extend([
        "--newline",
        "--no-playlist",
        "--no-check-certificate",
        "-o", output_template,
    ])
    args.extend(cookie_args(cookies_file))
    args.append(video_url)
    return args


def find_downloaded_file(work_dir: Path, prefix: str) -> Path | None:
    """Scan the work dir for a finished file named <prefix>*."""
    if not work_dir.exists():
        return None
    candidates = [
        p for p in sorted(work_dir.iterdir())
        if p.is_file()
        and p.name.startswith(prefix)
        and not p.name.endswith(PARTIAL_DOWNLOAD_SUFFIXES)
    ]
    return candidates[0] if candidates else None


def _resolve_video_path(reported: str | None, work_dir: Path, prefix: str) -> Path | None:
    if reported:
        path = Path(reported)
        if path.exists():
            return path
        logger.warning("yt-dlp reported %s but it does not exist — scanning %s",
                       reported, work_dir)
    return find_downloaded_file(work_dir, prefix)


def download_video(video_url: str, work_dir: Path,
                   cookies_file: str | None = None,
                   on_progress: ProgressCallback | None = None,
                   scope: CancelScope | None = None,
                   binary: str = YTDLP_BIN,
                   timestamp: int | None = None) -> DownloadResult:
    """
    Download a video into work_dir.
    Raises TaskError on failure; the fallback attempt runs at most once.
    """
    def emit(event: ProgressEvent):
        if on_progress:
            on_progress(event)

    work_dir.mkdir(parents=True, exist_ok=True)

    meta = fetch_metadata(video_url, cookies_file, scope=scope, binary=binary)
    if meta.title or meta.duration:
        emit(ProgressEvent(stage=Stage.DOWNLOAD, phase="info", duration=meta.duration,
                           message=f"Found: {meta.title or 'video'}",
                           extra={'title': meta.title}))

    prefix = f"video_{timestamp or int(time.time() * 1000)}"
    output_template = str(work_dir / f"{prefix}_%(id)s.%(ext)s")

    last_exit = None
    for index, attempt in enumerate(DOWNLOAD_ATTEMPTS):
        if index > 0:
            logger.info("Retrying download with fallback format selection")
            # The stage restarts, so its percent does too
            emit(ProgressEvent(stage=Stage.DOWNLOAD, percent=0.0, reset=True,
                               phase="retry", message=attempt.message))

        parser = DownloadProgressParser()

        def on_output(stream: str, text: str, parser=parser, attempt=attempt):
            logger.debug("yt-dlp %s %s: %s", attempt.name, stream, text.rstrip())
            for event in parser.feed(text, stream):
                if attempt is not PRIMARY_ATTEMPT:
                    event.extra['attempt'] = attempt.name
                emit(event)

        args = build_download_args(attempt, output_template, video_url, cookies_file)
        result = run_process(binary, args, on_output=on_output, scope=scope)
        for event in parser.flush():
            emit(event)

        if result.exit_code != 0:
            last_exit = result.exit_code
            logger.error("yt-dlp %s attempt failed (rc=%s): %s",
                         attempt.name, result.exit_code, result.stderr_tail())
            continue

        video_path = _resolve_video_path(parser.resolved_path, work_dir, prefix)
        if video_path is None:
            raise TaskError(ErrorCode.DOWNLOAD_FILE_MISSING,
                            "Downloaded file not found" if attempt is PRIMARY_ATTEMPT
                            else "Fallback download failed: file not found")

        file_size = video_path.stat().st_size
        logger.info("Downloaded video (%s attempt): %s (%d bytes)",
                    attempt.name, video_path, file_size)
        emit(ProgressEvent(stage=Stage.DOWNLOAD, percent=100.0, complete=True,
                           path=str(video_path), message="Download complete"))
        return DownloadResult(
            video_path=str(video_path),
            title=meta.title,
            duration=meta.duration,
            file_size=file_size,
        )

    raise TaskError(
        ErrorCode.DOWNLOAD_FAILED,
        f"Both primary and fallback downloads failed. Last exit code: {last_exit}. "
        "Try using cookies or check if the video is available.",
    )
