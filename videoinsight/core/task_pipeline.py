"""
Task pipeline: drives each task through download → extract → transcribe →
summarize on a bounded worker pool.

Each task runs its stages sequentially on one worker thread.  After every
stage the store is updated in a single transition; stage progress is blended
into the task's overall percent and forwarded to subscribers.
"""

import fcntl
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from videoinsight.core.constants import (
    TaskStatus, Stage, ErrorCode, STAGE_STATUS, PROGRESS_RANGES,
    PROGRESS_COMPLETE, MAX_ERROR_MESSAGE_LEN, DEFAULT_TEMP_DIR,
    DEFAULT_LLM_MODEL, DEFAULT_WHISPER_MODEL, DEFAULT_MAX_CONCURRENT_TASKS,
    OLLAMA_TIMEOUT_SEC, HTTP_TIMEOUT_SEC, FAILED_TASK_RETENTION_DAYS,
    YTDLP_BIN, FFMPEG_BIN, WHISPER_BIN, OLLAMA_BIN,
)
from videoinsight.core.db_sqlite import Database
from videoinsight.core.models_sqlite import Task, TaskStats
from videoinsight.core.error_codes import TaskError, TaskCancelled
from videoinsight.core.url_parse import validate_video_url
from videoinsight.core.process_runner import CancelScope
from videoinsight.core.progress_parse import ProgressEvent
from videoinsight.core.download_video import download_video
from videoinsight.core.extract_audio import extract_audio
from videoinsight.core.transcribe_whisper import transcribe_audio
from videoinsight.core.summarize_llm import Provider, parse_model_selector, summarize
from videoinsight.core.cleanup import cleanup_task_artifacts
from videoinsight.core.security_utils import keychain_get_api_key

logger = logging.getLogger(__name__)


@dataclass
class PipelineEvent:
    """What subscribers receive: a status change or forwarded stage progress."""
    task_id: str
    kind: str                        # 'status' | 'progress'
    status: str
    progress: float
    stage_event: Optional[ProgressEvent] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def blend_progress(stage: str, percent: float) -> float:
    """Map a stage-local percent onto the task's overall 0–99 range."""
    start, end = PROGRESS_RANGES[stage]
    percent = max(0.0, min(100.0, percent))
    return start + (end - start) * percent / 100.0


class TaskPipeline:
    """
    Submits, runs and tracks tasks.
    `config` is a settings snapshot (AppConfig.as_dict()); `tools` optionally
    overrides the executable used for each external tool.
    """

    def __init__(self, db: Database, config: dict | None = None,
                 tools: dict | None = None):
        self.db = db
        self.config = config or {}
        self.tools = {
            'yt-dlp': YTDLP_BIN,
            'ffmpeg': FFMPEG_BIN,
            'whisper': WHISPER_BIN,
            'ollama': OLLAMA_BIN,
        }
        self.tools.update(tools or {})

        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent_tasks,
                                            thread_name_prefix="videoinsight-task")
        self._subscribers: list[Callable[[PipelineEvent], None]] = []
        self._subscribers_lock = threading.Lock()
        self._scopes: dict[str, CancelScope] = {}
        self._scopes_lock = threading.Lock()
        self._progress: dict[str, float] = {}
        self._closed = False

        # Every live pipeline on this store holds a shared lock; recovery
        # needs it exclusively
        self.lock_path = Path(f"{db.db_path}.lock")
        self._lock_file = open(self.lock_path, 'a')
        fcntl.flock(self._lock_file, fcntl.LOCK_SH)

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def temp_directory(self) -> Path:
        return Path(self.config.get('temp_directory') or str(DEFAULT_TEMP_DIR))

    @property
    def llm_model(self) -> str:
        return self.config.get('llm_model') or DEFAULT_LLM_MODEL

    @property
    def whisper_model(self) -> str:
        return self.config.get('whisper_model') or DEFAULT_WHISPER_MODEL

    @property
    def cookies_file(self) -> str | None:
        return self.config.get('cookies_file') or None

    @property
    def max_concurrent_tasks(self) -> int:
        return int(self.config.get('max_concurrent_tasks') or DEFAULT_MAX_CONCURRENT_TASKS)

    @property
    def ollama_timeout_sec(self) -> float:
        return float(self.config.get('ollama_timeout_sec') or OLLAMA_TIMEOUT_SEC)

    @property
    def http_timeout_sec(self) -> float:
        return float(self.config.get('http_timeout_sec') or HTTP_TIMEOUT_SEC)

    @property
    def keep_artifacts(self) -> bool:
        return bool(self.config.get('keep_artifacts', False))

    def work_dir_for(self, task_id: str) -> Path:
        return self.temp_directory / task_id

    # ── Subscribers ───────────────────────────────────────────────────

    def subscribe(self, callback: Callable[[PipelineEvent], None]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: PipelineEvent):
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning("Subscriber raised on %s event for task %s",
                               event.kind, event.task_id, exc_info=True)

    def _emit_status(self, task: Task):
        self._emit(PipelineEvent(
            task_id=task.id,
            kind='status',
            status=task.status,
            progress=task.progress,
            error=task.error,
            error_code=task.error_code,
        ))

    # ── Submission / scheduling ───────────────────────────────────────

    def submit(self, url: str, cookies_file: str | None = None) -> Task:
        """Validate and record a URL, then schedule it.  Raises TaskError(ERR_INVALID_URL)."""
        if self._closed:
            raise RuntimeError("Pipeline has been shut down")
        url = validate_video_url(url)
        task = self.db.create_task(url, cookies_file=cookies_file or self.cookies_file)
        self._emit_status(task)
        self._schedule(task.id)
        return task

    def _schedule(self, task_id: str):
        with self._scopes_lock:
            self._scopes.setdefault(task_id, CancelScope())
        self._executor.submit(self._run_scheduled, task_id)

    def _run_scheduled(self, task_id: str):
        try:
            self.run_task(task_id)
        except Exception:
            logger.error("Worker failed on task %s", task_id, exc_info=True)

    # ── Task execution ────────────────────────────────────────────────

    def run_task(self, task_id: str) -> Task | None:
        """Run one pending task through every stage on the calling thread."""
        task = self.db.get_task(task_id)
        if task is None:
            logger.warning("Task %s no longer exists — skipping", task_id)
            return None
        if task.status != TaskStatus.PENDING:
            logger.info("Task %s is %s, not pending — skipping", task_id, task.status)
            self._forget(task_id)
            return task

        with self._scopes_lock:
            scope = self._scopes.setdefault(task_id, CancelScope())
        work_dir = self.work_dir_for(task_id)
        self._progress[task_id] = 0.0

        # Leaving pending is the claim; only one worker can make it
        try:
            task = self._advance(task_id, TaskStatus.DOWNLOADING, Stage.DOWNLOAD, 0.0)
        except TaskError as e:
            logger.info("Task %s was not claimed: %s", task_id, e.message)
            self._forget(task_id)
            return self.db.get_task(task_id)

        try:
            scope.check()
            downloaded = download_video(
                task.url, work_dir,
                cookies_file=task.cookies_file,
                on_progress=self._stage_listener(task_id, Stage.DOWNLOAD),
                scope=scope,
                binary=self.tools['yt-dlp'],
            )

            scope.check()
            self._advance(task_id, TaskStatus.EXTRACTING, Stage.EXTRACT, 0.0,
                          title=downloaded.title,
                          video_path=downloaded.video_path,
                          duration=downloaded.duration,
                          file_size=downloaded.file_size)
            extracted = extract_audio(
                downloaded.video_path, work_dir,
                on_progress=self._stage_listener(task_id, Stage.EXTRACT),
                scope=scope,
                binary=self.tools['ffmpeg'],
            )

            scope.check()
            self._advance(task_id, TaskStatus.TRANSCRIBING, Stage.TRANSCRIBE, 0.0,
                          audio_path=extracted.audio_path)
            transcribed = transcribe_audio(
                extracted.audio_path,
                model=self.whisper_model,
                output_dir=work_dir,
                on_progress=self._stage_listener(task_id, Stage.TRANSCRIBE),
                scope=scope,
                binary=self.tools['whisper'],
            )

            scope.check()
            self._advance(task_id, TaskStatus.SUMMARIZING, Stage.SUMMARIZE, 0.0,
                          transcript=transcribed.text)
            selector = parse_model_selector(self.llm_model)
            summarized = summarize(
                transcribed.text, selector,
                api_keys=self._resolve_api_keys(selector.provider),
                on_progress=self._stage_listener(task_id, Stage.SUMMARIZE),
                scope=scope,
                timeout=self.ollama_timeout_sec,
                http_timeout=self.http_timeout_sec,
                binary=self.tools['ollama'],
            )

            scope.check()
            task = self.db.transition_task(task_id, TaskStatus.COMPLETED,
                                           progress=PROGRESS_COMPLETE,
                                           summary=summarized.summary)
            self._emit_status(task)
            logger.info("Task %s completed", task_id)
            cleanup_task_artifacts(work_dir, self.keep_artifacts)

        except TaskError as e:
            if isinstance(e, TaskCancelled):
                logger.info("Task %s cancelled", task_id)
            else:
                logger.error("Task %s failed: %s", task_id, e)
            task = self._fail(task_id, e.code, e.message)
            cleanup_task_artifacts(work_dir, self.keep_artifacts)
        except Exception as e:
            logger.error("Unexpected error processing task %s: %s", task_id, e, exc_info=True)
            task = self._fail(task_id, ErrorCode.UNEXPECTED, str(e))
            cleanup_task_artifacts(work_dir, self.keep_artifacts)
        finally:
            self._forget(task_id)

        return task

    def _advance(self, task_id: str, status: str, stage: str, stage_percent: float,
                 **fields) -> Task:
        progress = max(blend_progress(stage, stage_percent), self._progress.get(task_id, 0.0))
        task = self.db.transition_task(task_id, status, progress=progress, **fields)
        self._progress[task_id] = progress
        self._emit_status(task)
        return task

    def _fail(self, task_id: str, code: str, message: str) -> Task | None:
        message = (message or code)[:MAX_ERROR_MESSAGE_LEN]
        try:
            task = self.db.transition_task(task_id, TaskStatus.FAILED,
                                           error=message, error_code=code)
        except TaskError as e:
            # Already terminal (e.g. aborted while pending) or deleted
            logger.warning("Could not mark task %s failed: %s", task_id, e.message)
            return self.db.get_task(task_id)
        self._emit_status(task)
        return task

    def _forget(self, task_id: str):
        with self._scopes_lock:
            self._scopes.pop(task_id, None)
        self._progress.pop(task_id, None)

    def _stage_listener(self, task_id: str, stage: str) -> Callable[[ProgressEvent], None]:
        status = STAGE_STATUS[stage]

        def on_progress(event: ProgressEvent):
            last = self._progress.get(task_id, 0.0)
            progress = last
            if event.percent is not None:
                blended = blend_progress(stage, event.percent)
                # Only the download fallback may move progress backwards
                if event.reset or blended > last:
                    progress = blended
            if progress != last:
                self._progress[task_id] = progress
                if event.reset or int(progress) != int(last):
                    self.db.update_task(task_id, progress=round(progress, 1))
            self._emit(PipelineEvent(
                task_id=task_id,
                kind='progress',
                status=status,
                progress=progress,
                stage_event=event,
            ))

        return on_progress

    def _resolve_api_keys(self, provider: Provider) -> dict:
        keys = dict(self.config.get('api_keys') or {})
        if provider is not Provider.OLLAMA and not keys.get(provider.value):
            stored = keychain_get_api_key(provider.value)
            if stored:
                keys[provider.value] = stored
        return keys

    # ── Control ───────────────────────────────────────────────────────

    def abort(self, task_id: str) -> bool:
        """
        Cancel a pending or running task.  The running process is terminated
        and the task ends FAILED/ERR_CANCELLED.  False for unknown or
        finished tasks.
        """
        task = self.db.get_task(task_id)
        if task is None or task.is_terminal:
            return False

        with self._scopes_lock:
            scope = self._scopes.get(task_id)
        if scope is not None:
            scope.cancel("Task cancelled by user")

        # Nothing is running for it: record the failure here
        if task.status == TaskStatus.PENDING or scope is None:
            self._fail(task_id, ErrorCode.CANCELLED, "Task cancelled by user")

        logger.info("Abort requested for task %s", task_id)
        return True

    def recover_interrupted(self) -> tuple[int, int]:
        """
        Called on start.  Tasks left mid-pipeline by a crash or restart are
        failed with ERR_INTERRUPTED; tasks still pending are scheduled again.
        Returns (interrupted, requeued).

        Skipped, returning (0, 0), while another pipeline has the same store
        open: its running and queued tasks are live, not leftovers.
        """
        if not self._lock_exclusive():
            logger.info("Another pipeline is using %s; skipping recovery", self.db.db_path)
            return 0, 0
        try:
            return self._recover()
        finally:
            fcntl.flock(self._lock_file, fcntl.LOCK_SH)

    def _lock_exclusive(self) -> bool:
        try:
            fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            # A failed upgrade can drop the shared lock; take it back
            fcntl.flock(self._lock_file, fcntl.LOCK_SH)
            return False

    def _recover(self) -> tuple[int, int]:
        interrupted = 0
        for task in self.db.get_active_tasks():
            with self._scopes_lock:
                if task.id in self._scopes:
                    continue
            self._fail(task.id, ErrorCode.INTERRUPTED,
                       f"Task was interrupted while {task.status}")
            cleanup_task_artifacts(self.work_dir_for(task.id), self.keep_artifacts)
            interrupted += 1

        requeued = 0
        for task in reversed(self.db.get_tasks_by_status(TaskStatus.PENDING)):
            with self._scopes_lock:
                if task.id in self._scopes:
                    continue
            self._schedule(task.id)
            requeued += 1

        if interrupted or requeued:
            logger.info("Recovered tasks: %d interrupted, %d re-queued", interrupted, requeued)
        return interrupted, requeued

    def shutdown(self, wait: bool = True, cancel_running: bool = False):
        """
        Stop accepting work.  Queued tasks stay pending and are picked up by
        recover_interrupted() next time.
        """
        self._closed = True
        if cancel_running:
            with self._scopes_lock:
                scopes = list(self._scopes.values())
            for scope in scopes:
                scope.cancel("Application shutting down")
        self._executor.shutdown(wait=wait, cancel_futures=True)
        if wait and not self._lock_file.closed:
            # Closing the file releases the flock; without wait, tasks may
            # still be running and keep it until exit
            self._lock_file.close()
        logger.info("Task pipeline shut down")

    # ── Queries / maintenance ─────────────────────────────────────────

    def get_task(self, task_id: str) -> Task | None:
        return self.db.get_task(task_id)

    def list_tasks(self, limit: int | None = None, offset: int | None = None) -> list[Task]:
        return self.db.get_all_tasks(limit=limit, offset=offset)

    def tasks_by_status(self, status: str) -> list[Task]:
        return self.db.get_tasks_by_status(status)

    def search_tasks(self, query: str) -> list[Task]:
        return self.db.search_tasks(query)

    def get_stats(self) -> TaskStats:
        return self.db.get_stats()

    def delete_task(self, task_id: str) -> bool:
        """Delete a task record (aborting it first if it is running) and its scratch dir."""
        self.abort(task_id)
        deleted = self.db.delete_task(task_id)
        cleanup_task_artifacts(self.work_dir_for(task_id))
        return deleted

    def cleanup_old_tasks(self, days: int = FAILED_TASK_RETENTION_DAYS) -> int:
        """Delete FAILED tasks created more than `days` days ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        return self.db.delete_failed_before(cutoff.isoformat())
