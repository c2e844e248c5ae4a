"""
Standardised error handling for VideoInsight.
"""

from videoinsight.core.constants import ErrorCode, USER_ACTIONABLE_ERRORS


class TaskError(Exception):
    """Raised when a stage or task encounters a known error condition."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")

    @property
    def user_actionable(self) -> bool:
        return is_user_actionable(self.code)


class ProcessSpawnError(TaskError):
    """The external command could not be started at all."""

    def __init__(self, command: str, reason: str):
        self.command = command
        super().__init__(ErrorCode.SPAWN_FAILED,
                         f"Could not start '{command}': {reason}")


class TaskCancelled(TaskError):
    """The task was aborted while a stage was running."""

    def __init__(self, message: str = "Task cancelled by user"):
        super().__init__(ErrorCode.CANCELLED, message)


def is_user_actionable(code: str) -> bool:
    return code in USER_ACTIONABLE_ERRORS
