"""
Cleanup: delete per-task scratch artifacts.  Always best-effort.
"""

import shutil
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def cleanup_task_artifacts(work_dir: Path, keep_artifacts: bool = False):
    """
    Delete a task's scratch directory (downloaded video, extracted audio,
    leftover .part files).  With keep_artifacts only partial downloads go.
    """
    if not work_dir.exists():
        return

    if keep_artifacts:
        for partial in list(work_dir.glob("*.part")) + list(work_dir.glob("*.ytdl")):
            try:
                partial.unlink()
            except OSError as e:
                logger.warning("Failed to delete %s: %s", partial, e)
        return

    try:
        shutil.rmtree(work_dir)
        logger.debug("Deleted: %s", work_dir)
    except Exception as e:
        logger.warning("Failed to delete %s: %s", work_dir, e)
