"""
SQLite task ledger for VideoInsight.
Thread-safe via check_same_thread=False + explicit locking.  Every write is a
single transaction, so the file always holds the last committed state of a
task even if the process dies mid-pipeline.
"""

import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timezone
from pathlib import Path

from videoinsight.core.constants import (
    DB_PATH, TaskStatus, ErrorCode, TERMINAL_STATUSES, ACTIVE_STATUSES,
)
from videoinsight.core.error_codes import TaskError
from videoinsight.core.models_sqlite import Task, TaskStats, is_valid_transition

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    progress REAL DEFAULT 0,
    video_path TEXT,
    audio_path TEXT,
    transcript TEXT,
    summary TEXT,
    error TEXT,
    error_code TEXT,
    cookies_file TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT,
    duration REAL,
    file_size INTEGER
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_tasks_url ON tasks(url);
"""

# id, url and created_at are immutable once the row exists; status and
# completed_at only change through transition_task
_UPDATABLE_COLUMNS = {
    'title', 'progress', 'video_path', 'audio_path', 'transcript',
    'summary', 'error', 'error_code', 'cookies_file', 'updated_at',
    'duration', 'file_size',
}


class Database:
    """SQLite database wrapper for the task ledger."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._ensure_dirs()
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()
        logger.info("Task database ready: %s", self.db_path)

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            # Set schema version
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        if self.conn:
            with self._lock:
                self.conn.close()
                self.conn = None
            logger.info("Task database closed")

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(**dict(row))

    def _fetch_all(self, sql: str, params: tuple = ()) -> list[Task]:
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    # ── Task CRUD ─────────────────────────────────────────────────────

    def create_task(self, url: str, cookies_file: str | None = None) -> Task:
        now = self._now()
        task = Task(
            id=str(uuid.uuid4()),
            url=url,
            cookies_file=cookies_file or None,
            created_at=now,
            updated_at=now,
        )
        with self._lock, self.conn:
            self.conn.execute(
                """INSERT INTO tasks
                   (id, url, status, progress, cookies_file, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (task.id, task.url, task.status, task.progress,
                 task.cookies_file, task.created_at, task.updated_at),
            )
        logger.info("Task created: %s (%s)", task.id, url)
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def get_all_tasks(self, limit: int | None = None, offset: int | None = None) -> list[Task]:
        sql = "SELECT * FROM tasks ORDER BY created_at DESC, rowid DESC"
        params: tuple = ()
        if limit or offset:
            # LIMIT -1 is SQLite for "no limit"; OFFSET needs a LIMIT clause
            sql += " LIMIT ? OFFSET ?"
            params = (limit or -1, offset or 0)
        return self._fetch_all(sql, params)

    def get_tasks_by_status(self, status: str) -> list[Task]:
        return self._fetch_all(
            "SELECT * FROM tasks WHERE status = ? ORDER BY created_at DESC, rowid DESC",
            (status,),
        )

    def get_active_tasks(self) -> list[Task]:
        placeholders = ', '.join('?' for _ in ACTIVE_STATUSES)
        return self._fetch_all(
            f"SELECT * FROM tasks WHERE status IN ({placeholders}) ORDER BY created_at ASC",
            tuple(sorted(ACTIVE_STATUSES)),
        )

    def search_tasks(self, query: str) -> list[Task]:
        """Substring search over url, title, transcript and summary."""
        escaped = query.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        term = f"%{escaped}%"
        return self._fetch_all(
            """SELECT * FROM tasks
               WHERE url LIKE ? ESCAPE '\\' OR title LIKE ? ESCAPE '\\'
                  OR transcript LIKE ? ESCAPE '\\' OR summary LIKE ? ESCAPE '\\'
               ORDER BY created_at DESC, rowid DESC""",
            (term, term, term, term),
        )

    def update_task(self, task_id: str, **kwargs) -> bool:
        """
        Write whitelisted fields of a non-terminal task in one transaction.
        False if the task is missing or already completed/failed.
        """
        unknown = set(kwargs) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update task columns: {', '.join(sorted(unknown))}")
        if not kwargs:
            logger.warning("No fields to update for task %s", task_id)
            return False
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        terminal = sorted(TERMINAL_STATUSES)
        placeholders = ', '.join('?' for _ in terminal)
        vals = list(kwargs.values()) + [task_id, *terminal]
        with self._lock, self.conn:
            cur = self.conn.execute(
                f"UPDATE tasks SET {sets} WHERE id = ? AND status NOT IN ({placeholders})", vals
            )
        if cur.rowcount == 0:
            logger.warning("No open task found to update: %s", task_id)
            return False
        return True

    def transition_task(self, task_id: str, status: str, **fields) -> Task:
        """
        Atomically move a task to a new status and write accompanying fields.
        Raises TaskError(ERR_INVALID_TRANSITION) if the move is not allowed.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update task columns: {', '.join(sorted(unknown))}")

        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT status FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if row is None:
                raise TaskError(ErrorCode.INVALID_TRANSITION, f"Unknown task {task_id}")

            current = row['status']
            # A repeated move is rejected too: it is how a second worker loses the claim
            if not is_valid_transition(current, status):
                raise TaskError(ErrorCode.INVALID_TRANSITION,
                                f"Task {task_id}: {current} → {status} is not allowed")

            now = self._now()
            fields['status'] = status
            fields['updated_at'] = now
            if status in TERMINAL_STATUSES:
                fields['completed_at'] = now
            sets = ', '.join(f"{k} = ?" for k in fields)
            # Conditional on the status just read: another process sharing the
            # file may have moved the row in between
            cur = self.conn.execute(
                f"UPDATE tasks SET {sets} WHERE id = ? AND status = ?",
                list(fields.values()) + [task_id, current],
            )
            if cur.rowcount == 0:
                raise TaskError(ErrorCode.INVALID_TRANSITION,
                                f"Task {task_id} changed status concurrently")
            row = self.conn.execute(
                "SELECT * FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()

        return self._row_to_task(row)

    def delete_task(self, task_id: str) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        if cur.rowcount == 0:
            logger.warning("No task found to delete: %s", task_id)
            return False
        logger.info("Task deleted: %s", task_id)
        return True

    def delete_failed_before(self, cutoff_iso: str) -> int:
        """Delete FAILED tasks created before the cutoff timestamp."""
        with self._lock, self.conn:
            cur = self.conn.execute(
                "DELETE FROM tasks WHERE status = ? AND created_at < ?",
                (TaskStatus.FAILED, cutoff_iso),
            )
        if cur.rowcount:
            logger.info("Cleaned up %d old failed tasks", cur.rowcount)
        return cur.rowcount

    # ── Aggregates ────────────────────────────────────────────────────

    def get_stats(self) -> TaskStats:
        placeholders = ', '.join('?' for _ in ACTIVE_STATUSES)
        with self._lock:
            row = self.conn.execute(
                f"""SELECT
                      COUNT(*) AS total,
                      SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS completed,
                      SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) AS failed,
                      SUM(CASE WHEN status IN ({placeholders}) THEN 1 ELSE 0 END) AS in_progress
                    FROM tasks""",
                (TaskStatus.COMPLETED, TaskStatus.FAILED, *sorted(ACTIVE_STATUSES)),
            ).fetchone()
        return TaskStats(
            total=row['total'] or 0,
            completed=row['completed'] or 0,
            failed=row['failed'] or 0,
            in_progress=row['in_progress'] or 0,
        )
