#!/usr/bin/env python3
"""
VideoInsight v1.0.0 — Main entry point.

Command-line front end for the task pipeline:
    main.py submit [URL ...] [--file PATH|-] [--cookies FILE]
    main.py list | show ID | search TEXT | delete ID | stats
    main.py export ID [--format md|txt] [--output DIR]
    main.py cleanup [--days N]
    main.py diagnostics
    main.py config show | config set KEY VALUE
    main.py key set PROVIDER [KEY] [--config] | key delete PROVIDER
"""

import argparse
import getpass
import json
import os
import sys
import logging
import shutil
import threading
from pathlib import Path
from datetime import datetime

# ── Ensure Homebrew paths are in PATH ────────────────────────────────
# Launched from a .app bundle, macOS does not source the shell profile, so
# the directories holding yt-dlp, ffmpeg, whisper and ollama are missing.
HOMEBREW_PATHS = [
    "/opt/homebrew/bin",          # Apple Silicon default
    "/opt/homebrew/sbin",
    "/usr/local/bin",             # Intel Mac default
    "/usr/local/sbin",
    os.path.expanduser("~/.local/bin"),  # pipx installs of whisper / yt-dlp
    os.path.expanduser("~/Library/Python/3.12/bin"),
    os.path.expanduser("~/Library/Python/3.11/bin"),
    os.path.expanduser("~/Library/Python/3.13/bin"),
]

current_path = os.environ.get("PATH", "")
for p in HOMEBREW_PATHS:
    if os.path.isdir(p) and p not in current_path.split(os.pathsep):
        current_path = p + os.pathsep + current_path
os.environ["PATH"] = current_path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from videoinsight.core.constants import (  # noqa: E402
    APP_NAME, APP_VERSION, LOG_DIR, DEFAULT_EXPORT_DIR, FAILED_TASK_RETENTION_DAYS,
    TaskStatus, EXPORT_FORMATS, YTDLP_BIN, FFMPEG_BIN, WHISPER_BIN, OLLAMA_BIN,
)

LOG_FILE = LOG_DIR / "app.log"

logger = logging.getLogger("videoinsight")


def setup_logging(verbose: bool = False):
    """File log always; console output only with --verbose."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [logging.FileHandler(LOG_FILE, encoding="utf-8")]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def check_prerequisites() -> list[str]:
    """Return install hints for any required tool missing from PATH."""
    hints = {
        YTDLP_BIN: "yt-dlp (install with: brew install yt-dlp)",
        FFMPEG_BIN: "ffmpeg (install with: brew install ffmpeg)",
        WHISPER_BIN: "whisper (install with: pipx install openai-whisper)",
    }
    missing = []
    for tool, hint in hints.items():
        path = shutil.which(tool)
        if path:
            logger.info("%s found at: %s", tool, path)
        else:
            missing.append(hint)
    if not shutil.which(OLLAMA_BIN):
        logger.info("ollama not found; only cloud summarization models will work")
    if missing:
        logger.error("Missing tools. PATH = %s", os.environ.get("PATH", ""))
    return missing


def _load_config():
    from videoinsight.core.config import AppConfig
    return AppConfig()


def _open_store():
    from videoinsight.core.db_sqlite import Database
    return _load_config(), Database()


def collect_urls(args) -> list[str]:
    """URLs from the command line, then from --file (one per line, '-' is stdin)."""
    from videoinsight.core.url_parse import parse_input_lines

    urls = list(args.urls)
    if args.file:
        if args.file == "-":
            text = sys.stdin.read()
        else:
            text = Path(args.file).expanduser().read_text(encoding="utf-8")
        urls.extend(parse_input_lines(text))
    return urls


def _print_task_line(task):
    title = task.title or task.url
    print(f"{task.id}  {task.status:<12} {task.progress:5.1f}%  {title}")


def _find_task(db, task_id: str):
    """Look a task up by full id or unique prefix."""
    task = db.get_task(task_id)
    if task:
        return task
    matches = [t for t in db.get_all_tasks() if t.id.startswith(task_id)]
    if len(matches) == 1:
        return matches[0]
    print(f"No unique task matches '{task_id}'", file=sys.stderr)
    return None


# ── Commands ──────────────────────────────────────────────────────────

def cmd_submit(args) -> int:
    from videoinsight.core.error_codes import TaskError
    from videoinsight.core.task_pipeline import TaskPipeline

    urls = collect_urls(args)
    if not urls:
        print("No video URLs given", file=sys.stderr)
        return 2

    missing = check_prerequisites()
    if missing:
        print("Missing required tools:\n  " + "\n  ".join(missing), file=sys.stderr)
        return 1

    config, db = _open_store()
    pipeline = TaskPipeline(db, config.as_dict())
    done = threading.Event()
    pending: set[str] = set()
    pending_lock = threading.RLock()
    last_shown: dict[str, int] = {}

    def on_event(event):
        if event.kind == 'status':
            line = f"[{event.task_id[:8]}] {event.status}"
            if event.error:
                line += f": {event.error}"
            print(line, flush=True)
            if event.status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                with pending_lock:
                    pending.discard(event.task_id)
                    if not pending:
                        done.set()
        elif event.progress is not None:
            step = int(event.progress) // 5
            if last_shown.get(event.task_id) != step:
                last_shown[event.task_id] = step
                message = event.stage_event.message if event.stage_event else ""
                print(f"[{event.task_id[:8]}] {event.progress:5.1f}%  {message}", flush=True)

    pipeline.subscribe(on_event)

    status = 0
    submitted: list[str] = []
    with pending_lock:
        # Status events wait on the lock, so nothing can finish before it is tracked
        for task in db.get_tasks_by_status(TaskStatus.PENDING):
            pending.add(task.id)
        interrupted, requeued = pipeline.recover_interrupted()
        if interrupted:
            print(f"{interrupted} interrupted task(s) marked failed")
        if not requeued:
            # Nothing re-queued here, so any pending rows belong to another process
            pending.clear()
        for url in urls:
            try:
                task = pipeline.submit(url, cookies_file=args.cookies)
            except TaskError as e:
                print(f"Skipping {url}: {e.message}", file=sys.stderr)
                status = 1
                continue
            pending.add(task.id)
            submitted.append(task.id)
            print(f"Submitted {task.id}  {task.url}")
        if not pending:
            done.set()

    try:
        while not done.wait(0.5):
            pass
    except KeyboardInterrupt:
        print("Cancelling running tasks...", file=sys.stderr)
        pipeline.shutdown(wait=True, cancel_running=True)
        db.close()
        return 130

    pipeline.shutdown(wait=True)
    for task_id in submitted:
        task = db.get_task(task_id)
        if task and task.status == TaskStatus.FAILED:
            status = 1
    db.close()
    return status


def cmd_list(args) -> int:
    _, db = _open_store()
    tasks = db.get_tasks_by_status(args.status) if args.status else db.get_all_tasks(limit=args.limit)
    for task in tasks:
        _print_task_line(task)
    db.close()
    return 0


def cmd_show(args) -> int:
    _, db = _open_store()
    task = _find_task(db, args.task_id)
    db.close()
    if not task:
        return 1
    print(f"ID:        {task.id}")
    print(f"URL:       {task.url}")
    print(f"Title:     {task.title or ''}")
    print(f"Status:    {task.status} ({task.progress:.1f}%)")
    print(f"Created:   {task.created_at}")
    if task.completed_at:
        print(f"Finished:  {task.completed_at}")
    if task.error:
        print(f"Error:     [{task.error_code}] {task.error}")
    if task.summary:
        print(f"\nSummary:\n{task.summary}")
    if args.transcript and task.transcript:
        print(f"\nTranscript:\n{task.transcript}")
    return 0


def cmd_search(args) -> int:
    _, db = _open_store()
    for task in db.search_tasks(args.query):
        _print_task_line(task)
    db.close()
    return 0


def cmd_delete(args) -> int:
    from videoinsight.core.task_pipeline import TaskPipeline

    config, db = _open_store()
    task = _find_task(db, args.task_id)
    if not task:
        db.close()
        return 1
    pipeline = TaskPipeline(db, config.as_dict())
    deleted = pipeline.delete_task(task.id)
    pipeline.shutdown(wait=False)
    db.close()
    print("Deleted" if deleted else "Nothing deleted")
    return 0 if deleted else 1


def cmd_stats(args) -> int:
    _, db = _open_store()
    stats = db.get_stats()
    db.close()
    print(f"Total:       {stats.total}")
    print(f"Completed:   {stats.completed}")
    print(f"Failed:      {stats.failed}")
    print(f"In progress: {stats.in_progress}")
    return 0


def cmd_export(args) -> int:
    from videoinsight.core.output_writer import write_task_report

    config, db = _open_store()
    task = _find_task(db, args.task_id)
    db.close()
    if not task:
        return 1
    if task.status != TaskStatus.COMPLETED:
        print(f"Task is {task.status}; only completed tasks can be exported", file=sys.stderr)
        return 1
    fmt = args.format or config.get('output_format', 'md')
    path = write_task_report(task, Path(args.output).expanduser() if args.output else None, fmt)
    print(path)
    return 0


def cmd_cleanup(args) -> int:
    from videoinsight.core.task_pipeline import TaskPipeline

    config, db = _open_store()
    pipeline = TaskPipeline(db, config.as_dict())
    removed = pipeline.cleanup_old_tasks(args.days)
    pipeline.shutdown(wait=False)
    db.close()
    print(f"Removed {removed} failed task(s) older than {args.days} days")
    return 0


def cmd_diagnostics(args) -> int:
    from videoinsight.core.diagnostics import get_diagnostics

    config, _db = _open_store()
    _db.close()
    info = get_diagnostics(config.cookies_file or None)
    print(f"{APP_NAME} {APP_VERSION}")
    print(f"yt-dlp:   {info['ytdlp_version']}")
    print(f"ffmpeg:   {info['ffmpeg_version']}")
    print(f"whisper:  {info['whisper']}")
    print(f"ollama:   {info['ollama_version']}")
    if info['ollama_models']:
        print(f"  models: {', '.join(info['ollama_models'])}")
    cookies = info['cookies']
    print(f"cookies:  {cookies['path'] or '(not configured)'}"
          f"{'' if cookies['detected'] or not cookies['path'] else ' (missing)'}")
    print(f"log file: {LOG_FILE}")
    return 0


def _parse_setting(value: str):
    """JSON where it parses (numbers, true/false), otherwise the raw string."""
    try:
        return json.loads(value)
    except ValueError:
        return value


def cmd_config(args) -> int:
    from videoinsight.core.security_utils import redact

    config = _load_config()
    if args.action == "set":
        if args.key not in config.SETTABLE_KEYS:
            print(f"Unknown setting '{args.key}'. Settable: {', '.join(config.SETTABLE_KEYS)}",
                  file=sys.stderr)
            return 1
        config.set(args.key, _parse_setting(args.value))
        # Out-of-range values are coerced, so echo what was stored
        print(f"{args.key} = {json.dumps(config.get(args.key))}")
        return 0

    for key, value in config.as_dict().items():
        if key == 'api_keys':
            value = {provider: redact(secret) for provider, secret in value.items()}
        print(f"{key} = {json.dumps(value, ensure_ascii=False)}")
    return 0


def cmd_key(args) -> int:
    from videoinsight.core.security_utils import (
        redact, keychain_set_api_key, keychain_delete_api_key,
    )

    config = _load_config()
    if args.action == "delete":
        had_config_key = bool(config.get('api_keys', {}).get(args.provider))
        if had_config_key:
            config.set_api_key(args.provider, None)
        removed = keychain_delete_api_key(args.provider) or had_config_key
        print(f"{args.provider} key {'removed' if removed else 'not found'}")
        return 0 if removed else 1

    api_key = (args.api_key or getpass.getpass(f"{args.provider} API key: ")).strip()
    if not api_key:
        print("Empty API key", file=sys.stderr)
        return 1
    if args.config:
        config.set_api_key(args.provider, api_key)
        where = str(config.path)
    elif keychain_set_api_key(args.provider, api_key):
        where = "Keychain"
    else:
        print("Keychain write failed; use --config to store the key in the config file",
              file=sys.stderr)
        return 1
    logger.info("Stored %s API key %s in %s", args.provider, redact(api_key), where)
    print(f"{args.provider} key {redact(api_key)} stored in {where}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="videoinsight",
                                     description="Download, transcribe and summarize videos.")
    parser.add_argument("-v", "--verbose", action="store_true", help="log to the console too")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("submit", help="process one or more video URLs")
    p.add_argument("urls", nargs="*")
    p.add_argument("--file", help="read URLs from a file, one per line (- for stdin)")
    p.add_argument("--cookies", help="Netscape cookie file for yt-dlp")
    p.set_defaults(func=cmd_submit)

    p = sub.add_parser("list", help="list tasks, newest first")
    p.add_argument("--status", choices=[
        TaskStatus.PENDING, TaskStatus.DOWNLOADING, TaskStatus.EXTRACTING,
        TaskStatus.TRANSCRIBING, TaskStatus.SUMMARIZING, TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    ])
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", help="show one task")
    p.add_argument("task_id")
    p.add_argument("--transcript", action="store_true", help="print the full transcript")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("search", help="search url, title, transcript and summary")
    p.add_argument("query")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("delete", help="delete a task and its artifacts")
    p.add_argument("task_id")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("stats", help="task counts")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("export", help="write a completed task as a report")
    p.add_argument("task_id")
    p.add_argument("--format", choices=EXPORT_FORMATS)
    p.add_argument("--output", help=f"output directory (default {DEFAULT_EXPORT_DIR})")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("cleanup", help="delete old failed tasks")
    p.add_argument("--days", type=int, default=FAILED_TASK_RETENTION_DAYS)
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("diagnostics", help="check external tools")
    p.set_defaults(func=cmd_diagnostics)

    p = sub.add_parser("config", help="show or change settings")
    actions = p.add_subparsers(dest="action", required=True)
    actions.add_parser("show", help="print every setting, API keys redacted")
    p_set = actions.add_parser("set", help="change one setting")
    p_set.add_argument("key")
    p_set.add_argument("value", help="JSON value (4, true) or a plain string")
    p.set_defaults(func=cmd_config)

    from videoinsight.core.summarize_llm import Provider
    cloud_providers = [prov.value for prov in Provider if prov is not Provider.OLLAMA]

    p = sub.add_parser("key", help="store or remove a cloud provider API key")
    actions = p.add_subparsers(dest="action", required=True)
    p_set = actions.add_parser("set", help="store a key (prompts when KEY is omitted)")
    p_set.add_argument("provider", choices=cloud_providers)
    p_set.add_argument("api_key", nargs="?")
    p_set.add_argument("--config", action="store_true",
                       help="store in the config file instead of the Keychain")
    p_delete = actions.add_parser("delete", help="remove a key from the Keychain and config file")
    p_delete.add_argument("provider", choices=cloud_providers)
    p.set_defaults(func=cmd_key)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Command: %s", args.command)
    logger.info("PATH: %s", os.environ.get("PATH", ""))
    logger.info("=" * 60)

    try:
        return args.func(args)
    except Exception as e:
        logger.critical("Fatal error: %s: %s", type(e).__name__, e, exc_info=True)
        print(f"Error: {type(e).__name__}: {e}\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
