"""
SQLite data models (plain dataclasses) for VideoInsight.
"""

from dataclasses import dataclass
from typing import Optional

from videoinsight.core.constants import (
    TaskStatus, STATUS_ORDER, TERMINAL_STATUSES,
)


@dataclass
class Task:
    id: str                          # UUID
    url: str
    title: Optional[str] = None
    status: str = TaskStatus.PENDING
    progress: float = 0.0
    video_path: Optional[str] = None
    audio_path: Optional[str] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    cookies_file: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration: Optional[float] = None
    file_size: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class TaskStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0


def is_valid_transition(current: str, new: str) -> bool:
    """
    Forward-only along STATUS_ORDER, one step at a time, or from any
    non-terminal status to FAILED.
    """
    if current in TERMINAL_STATUSES:
        return False
    if new == TaskStatus.FAILED:
        return True
    if current not in STATUS_ORDER or new not in STATUS_ORDER:
        return False
    return STATUS_ORDER.index(new) == STATUS_ORDER.index(current) + 1
