"""
Output writer: exports a finished task as a Markdown or plain-text report.
"""

import logging
from pathlib import Path

from videoinsight.core.constants import EXPORT_FORMATS, DEFAULT_EXPORT_DIR
from videoinsight.core.models_sqlite import Task
from videoinsight.core.security_utils import safe_export_path

logger = logging.getLogger(__name__)


def _format_duration(seconds: float | None) -> str:
    if not seconds:
        return "unknown"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def render_markdown(task: Task) -> str:
    lines = [
        f"# {task.title or 'Untitled video'}",
        "",
        f"- **URL:** {task.url}",
        f"- **Duration:** {_format_duration(task.duration)}",
        f"- **Processed:** {task.completed_at or task.created_at or ''}",
        "",
        "## Summary",
        "",
        task.summary or "_No summary available._",
        "",
        "## Transcript",
        "",
        task.transcript or "_No transcript available._",
        "",
    ]
    return "\n".join(lines)


def render_text(task: Task) -> str:
    title = task.title or "Untitled video"
    lines = [
        title,
        "=" * len(title),
        "",
        f"URL: {task.url}",
        f"Duration: {_format_duration(task.duration)}",
        f"Processed: {task.completed_at or task.created_at or ''}",
        "",
        "SUMMARY",
        "-------",
        task.summary or "(no summary)",
        "",
        "TRANSCRIPT",
        "----------",
        task.transcript or "(no transcript)",
        "",
    ]
    return "\n".join(lines)


def render_task(task: Task, fmt: str = "md") -> str:
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    return render_markdown(task) if fmt == "md" else render_text(task)


def write_task_report(task: Task, export_dir: Path | None = None, fmt: str = "md") -> Path:
    """
    Write <export_dir>/<sanitized title>.<fmt> and return its path.
    An existing file of the same name is overwritten.
    """
    content = render_task(task, fmt)
    export_dir = export_dir or DEFAULT_EXPORT_DIR
    export_dir.mkdir(parents=True, exist_ok=True)

    output_file = safe_export_path(export_dir, task.title, task.id, fmt)
    output_file.write_text(content, encoding='utf-8')

    logger.info("Wrote report: %s", output_file)
    return output_file
