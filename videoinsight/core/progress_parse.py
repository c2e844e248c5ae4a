"""
Progress parsers for the external tools.

Each parser turns raw output chunks into ProgressEvent objects.  Chunks may
split lines anywhere and stdout/stderr may interleave, so every parser keeps
a line buffer per stream.  Lines are terminated by '\\n' or '\\r' (ffmpeg and
tqdm redraw their status line with a bare carriage return).

Malformed or unrelated lines are ignored; nothing here raises on bad input.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from videoinsight.core.constants import Stage

_LINE_SPLIT = re.compile(r'\r\n|\r|\n')

_DOWNLOAD_PERCENT = re.compile(r'\[download\]\s+(\d+(?:\.\d+)?)%')
_DOWNLOAD_ALREADY = re.compile(r'\[download\] (.+) has already been downloaded')
_DOWNLOAD_DEST = re.compile(r'\[download\] Destination: (.+)')
_MERGER = re.compile(r'\[Merger\] Merging formats into "(.+)"')

_FFMPEG_DURATION = re.compile(r'Duration: (\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)')
_FFMPEG_TIME = re.compile(r'time=(\d{2}):(\d{2}):(\d{2}(?:\.\d+)?)')

_BARE_PERCENT = re.compile(r'(\d{1,3})%')


@dataclass
class ProgressEvent:
    """One structured progress update derived from tool output."""
    stage: str
    percent: Optional[float] = None
    message: str = ""
    path: Optional[str] = None
    complete: bool = False
    duration: Optional[float] = None
    position: Optional[float] = None
    phase: Optional[str] = None
    reset: bool = False
    extra: dict = field(default_factory=dict)


def parse_timecode(hours: str, minutes: str, seconds: str) -> Optional[float]:
    """HH, MM, SS(.ff) strings → seconds; None if not numeric."""
    try:
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    except (TypeError, ValueError):
        return None


def clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


class LineBufferedParser:
    """Base class: splits chunks into complete lines per stream."""

    stage = ""

    def __init__(self):
        self._buffers: dict[str, str] = {}

    def feed(self, chunk: str, stream: str = "stdout") -> list[ProgressEvent]:
        if not chunk:
            return []
        data = self._buffers.get(stream, "") + chunk
        parts = _LINE_SPLIT.split(data)
        # The last element is an unterminated line (possibly empty)
        self._buffers[stream] = parts.pop()
        events = []
        for line in parts:
            events.extend(self._line(line, stream))
        return events

    def flush(self) -> list[ProgressEvent]:
        """Parse whatever unterminated text is left in the buffers."""
        events = []
        for stream in list(self._buffers):
            pending = self._buffers.pop(stream)
            if pending:
                events.extend(self._line(pending, stream))
        return events

    def _line(self, line: str, stream: str) -> list[ProgressEvent]:
        event = self.parse_line(line, stream)
        return [event] if event is not None else []

    def parse_line(self, line: str, stream: str) -> Optional[ProgressEvent]:
        raise NotImplementedError


# ── Download (yt-dlp) ─────────────────────────────────────────────────

def parse_download_line(line: str) -> Optional[ProgressEvent]:
    """Parse one yt-dlp output line."""
    if not line or '[' not in line:
        return None

    m = _DOWNLOAD_ALREADY.search(line)
    if m:
        path = m.group(1).strip()
        return ProgressEvent(stage=Stage.DOWNLOAD, percent=100.0, path=path,
                             complete=True, message="Already downloaded")

    m = _MERGER.search(line)
    if m:
        return ProgressEvent(stage=Stage.DOWNLOAD, path=m.group(1).strip(),
                             message="Merging formats")

    m = _DOWNLOAD_DEST.search(line)
    if m:
        return ProgressEvent(stage=Stage.DOWNLOAD, path=m.group(1).strip(),
                             message="Downloading")

    m = _DOWNLOAD_PERCENT.search(line)
    if m:
        try:
            percent = clamp_percent(float(m.group(1)))
        except ValueError:
            return None
        return ProgressEvent(stage=Stage.DOWNLOAD, percent=percent,
                             complete=percent >= 100.0,
                             message=f"Downloading {percent:.1f}%")
    return None


class DownloadProgressParser(LineBufferedParser):
    """
    yt-dlp progress.  Tracks the last resolved artifact path and whether the
    download has completed (percent reached 100 or an already-downloaded
    message was seen).
    """

    stage = Stage.DOWNLOAD

    def __init__(self):
        super().__init__()
        self.resolved_path: str | None = None
        self.complete = False

    def parse_line(self, line: str, stream: str) -> Optional[ProgressEvent]:
        event = parse_download_line(line)
        if event is None:
            return None
        if event.path:
            self.resolved_path = event.path
        if event.complete:
            self.complete = True
        return event


# ── Extraction (ffmpeg) ───────────────────────────────────────────────

class ExtractionProgressParser(LineBufferedParser):
    """
    ffmpeg progress.  The first 'Duration:' fixes the total; every later
    'time=' gives position/duration as a percent.  No percent is reported
    until the duration is known.
    """

    stage = Stage.EXTRACT

    def __init__(self):
        super().__init__()
        self.duration: float | None = None
        self.position: float | None = None
        self._duration_seen = False

    def _line(self, line: str, stream: str) -> list[ProgressEvent]:
        # Overrides _line rather than parse_line: ffmpeg can print Duration
        # and time= on the same line, giving two events
        events = []
        if not self._duration_seen:
            m = _FFMPEG_DURATION.search(line)
            if m:
                # Only the first Duration counts, even an unusable one
                self._duration_seen = True
                duration = parse_timecode(*m.groups())
                if duration and duration > 0:
                    self.duration = duration
                    events.append(ProgressEvent(stage=self.stage, duration=duration,
                                                message="Reading media"))
        for m in _FFMPEG_TIME.finditer(line):
            event = self._position_event(m)
            if event is not None:
                events.append(event)
        return events

    def _position_event(self, match) -> Optional[ProgressEvent]:
        position = parse_timecode(*match.groups())
        if position is None:
            return None
        self.position = position
        if not self.duration:
            return None
        percent = clamp_percent(position / self.duration * 100.0)
        return ProgressEvent(stage=self.stage, percent=percent,
                             position=position, duration=self.duration,
                             message=f"Extracting audio {percent:.0f}%")


# ── Transcription (whisper) ───────────────────────────────────────────

class TranscriptionProgressParser(LineBufferedParser):
    """whisper reports progress only as a bare 'NN%' on stderr."""

    stage = Stage.TRANSCRIBE

    def parse_line(self, line: str, stream: str) -> Optional[ProgressEvent]:
        if stream != "stderr" or '%' not in line:
            return None
        m = _BARE_PERCENT.search(line)
        if not m:
            return None
        percent = int(m.group(1))
        if percent > 100:
            return None
        return ProgressEvent(stage=self.stage, percent=float(percent),
                             message=f"Transcribing {percent}%")
