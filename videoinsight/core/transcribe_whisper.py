"""
Speech-to-text via the whisper CLI.

whisper writes <output_dir>/<audio stem>.txt; the text is read back and the
file removed so the scratch directory only holds the audio artifact.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from videoinsight.core.constants import (
    ErrorCode, WHISPER_BIN, WHISPER_MODELS, DEFAULT_WHISPER_MODEL,
)
from videoinsight.core.error_codes import TaskError
from videoinsight.core.process_runner import CancelScope, run_process
from videoinsight.core.progress_parse import ProgressEvent, TranscriptionProgressParser

logger = logging.getLogger(__name__)


@dataclass
class TranscribeResult:
    text: str


def build_whisper_args(audio_path: str, model: str, output_dir: str) -> list[str]:
    return [
        audio_path,
        "--model", model,
        "--output_format", "txt",
        "--output_dir", output_dir,
        "--verbose", "False",
    ]


def transcribe_audio(audio_path: str, model: str = DEFAULT_WHISPER_MODEL,
                     output_dir: Path | None = None,
                     on_progress: Callable[[ProgressEvent], None] | None = None,
                     scope: CancelScope | None = None,
                     binary: str = WHISPER_BIN) -> TranscribeResult:
    """Transcribe an audio file; output_dir defaults to the audio's directory."""
    if model not in WHISPER_MODELS:
        raise TaskError(ErrorCode.INVALID_SETTINGS,
                        f"Unknown whisper model '{model}'. "
                        f"Choose one of: {', '.join(WHISPER_MODELS)}")

    audio = Path(audio_path)
    out_dir = Path(output_dir) if output_dir else audio.parent
    out_dir.mkdir(parents=True, exist_ok=True)

    parser = TranscriptionProgressParser()

    def on_output(stream: str, text: str):
        for event in parser.feed(text, stream):
            if on_progress:
                on_progress(event)

    result = run_process(binary, build_whisper_args(str(audio), model, str(out_dir)),
                         on_output=on_output, scope=scope)
    if on_progress:
        for event in parser.flush():
            on_progress(event)

    if result.exit_code != 0:
        logger.error("whisper failed (rc=%s): %s", result.exit_code, result.stderr_tail())
        raise TaskError(ErrorCode.WHISPER_FAILED,
                        f"Whisper failed with code {result.exit_code}: {result.stderr_tail()}")

    transcript_file = out_dir / f"{audio.stem}.txt"
    if not transcript_file.exists():
        raise TaskError(ErrorCode.TRANSCRIPT_MISSING,
                        f"Transcript file not found: {transcript_file}")

    text = transcript_file.read_text(encoding="utf-8", errors="replace").strip()

    try:
        transcript_file.unlink()
    except OSError as e:
        logger.warning("Could not remove transcript file %s: %s", transcript_file, e)

    logger.info("Transcribed %s with model %s (%d chars)", audio.name, model, len(text))
    return TranscribeResult(text=text)
