"""
Audio extraction with ffmpeg: mono 16 kHz PCM WAV, the input whisper expects.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from videoinsight.core.constants import (
    ErrorCode, Stage, FFMPEG_BIN,
    AUDIO_CHANNELS, AUDIO_SAMPLE_RATE, AUDIO_CODEC, AUDIO_FORMAT,
)
from videoinsight.core.error_codes import TaskError
from videoinsight.core.process_runner import CancelScope, run_process
from videoinsight.core.progress_parse import ExtractionProgressParser, ProgressEvent

logger = logging.getLogger(__name__)


@dataclass
class ExtractResult:
    audio_path: str


def build_extract_args(video_path: str, audio_path: str) -> list[str]:
    return [
        "-i", video_path,
        "-vn",
        "-acodec", AUDIO_CODEC,
        "-ar", str(AUDIO_SAMPLE_RATE),
        "-ac", str(AUDIO_CHANNELS),
        "-y",
        audio_path,
    ]


def extract_audio(video_path: str, work_dir: Path,
                  on_progress: Callable[[ProgressEvent], None] | None = None,
                  scope: CancelScope | None = None,
                  binary: str = FFMPEG_BIN,
                  timestamp: int | None = None) -> ExtractResult:
    """Extract the audio track of video_path into work_dir/audio_<timestamp>.wav."""
    if not video_path or not Path(video_path).is_file():
        raise TaskError(ErrorCode.FFMPEG_EXTRACT, f"Video file not found: {video_path}")

    work_dir.mkdir(parents=True, exist_ok=True)
    audio_path = work_dir / f"audio_{timestamp or int(time.time() * 1000)}.{AUDIO_FORMAT}"

    parser = ExtractionProgressParser()

    def on_output(stream: str, text: str):
        for event in parser.feed(text, stream):
            if on_progress:
                on_progress(event)

    result = run_process(binary, build_extract_args(str(video_path), str(audio_path)),
                         on_output=on_output, scope=scope)
    if on_progress:
        for event in parser.flush():
            on_progress(event)

    if result.exit_code != 0:
        logger.error("ffmpeg failed (rc=%s): %s", result.exit_code, result.stderr_tail())
        raise TaskError(ErrorCode.FFMPEG_EXTRACT,
                        f"FFmpeg failed with code {result.exit_code}: {result.stderr_tail()}")

    if not audio_path.exists():
        raise TaskError(ErrorCode.AUDIO_MISSING, "Audio file was not created")

    logger.info("Extracted audio: %s (%d bytes)", audio_path, audio_path.stat().st_size)
    return ExtractResult(audio_path=str(audio_path))
