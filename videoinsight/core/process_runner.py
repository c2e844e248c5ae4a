"""
External process runner.

Spawns a command (argument array only), streams stdout/stderr to an observer
chunk by chunk while accumulating them, and reports the exit code.  Supports a
hard timeout and termination from another thread.  On POSIX the child runs in
its own session so the whole process group is signalled.
"""

import codecs
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from videoinsight.core.constants import TERMINATE_GRACE_SEC, READ_CHUNK_SIZE
from videoinsight.core.error_codes import ProcessSpawnError, TaskCancelled
from videoinsight.core.security_utils import check_args

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1

# (stream_name, text_chunk) where stream_name is "stdout" or "stderr"
OutputObserver = Callable[[str, str], None]


@dataclass
class ProcessResult:
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False
    duration_sec: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    def stderr_tail(self, limit: int = 300) -> str:
        return self.stderr.strip()[-limit:]


class ProcessRunner:
    """Runs one external command to completion."""

    def __init__(self, command: str, args: list[str] | None = None,
                 input_text: str | None = None,
                 on_output: OutputObserver | None = None,
                 timeout: float | None = None,
                 cwd: str | None = None):
        self.command = command
        self.argv = check_args([command] + list(args or []))
        self.input_text = input_text
        self.on_output = on_output
        self.timeout = timeout
        self.cwd = cwd

        self._proc: Optional[subprocess.Popen] = None
        self._state_lock = threading.Lock()
        self._emit_lock = threading.RLock()
        self._terminate_requested = threading.Event()
        self._timed_out = False
        self._parts = {'stdout': [], 'stderr': []}

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def run(self) -> ProcessResult:
        """Spawn, stream and wait.  Raises ProcessSpawnError if the command cannot start."""
        logger.info("Spawning: %s", ' '.join(self.argv))
        started = time.monotonic()

        popen_kwargs = {}
        if os.name == 'posix':
            popen_kwargs['start_new_session'] = True

        try:
            proc = subprocess.Popen(
                self.argv,
                stdin=subprocess.PIPE if self.input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                shell=False,
                **popen_kwargs,
            )
        except OSError as e:
            logger.error("Failed to spawn %s: %s", self.command, e)
            raise ProcessSpawnError(self.command, e.strerror or str(e))

        with self._state_lock:
            self._proc = proc

        readers = [
            threading.Thread(target=self._pump, args=(proc.stdout, 'stdout'), daemon=True),
            threading.Thread(target=self._pump, args=(proc.stderr, 'stderr'), daemon=True),
        ]
        for t in readers:
            t.start()

        if self.input_text is not None:
            threading.Thread(target=self._feed_stdin, args=(proc.stdin,), daemon=True).start()

        # terminate() may have been called before the process existed
        if self._terminate_requested.is_set():
            self._kill(proc)
        else:
            self._wait(proc, started)

        for t in readers:
            t.join(timeout=TERMINATE_GRACE_SEC)
        if any(t.is_alive() for t in readers):
            # A grandchild still holds the pipes open
            logger.warning("%s left output pipes open — killing process group", self.command)
            self._send_kill(proc)
            for t in readers:
                t.join(timeout=TERMINATE_GRACE_SEC)

        with self._emit_lock:
            stdout = ''.join(self._parts['stdout'])
            stderr = ''.join(self._parts['stderr'])

        result = ProcessResult(
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            timed_out=self._timed_out,
            cancelled=self._terminate_requested.is_set() and not self._timed_out,
            duration_sec=time.monotonic() - started,
        )
        logger.info("%s exited (rc=%s, %.1fs%s%s)", self.command, result.exit_code,
                    result.duration_sec,
                    ", timed out" if result.timed_out else "",
                    ", cancelled" if result.cancelled else "")
        return result

    def terminate(self):
        """Request termination from any thread; run() escalates to SIGKILL if needed."""
        self._terminate_requested.set()
        with self._state_lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            logger.info("Terminating %s (pid %s)", self.command, proc.pid)
            self._send_term(proc)

    # ── Internals ─────────────────────────────────────────────────────

    def _wait(self, proc: subprocess.Popen, started: float):
        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL)
                return
            except subprocess.TimeoutExpired:
                pass

            if self._terminate_requested.is_set():
                self._kill(proc)
                return

            if self.timeout is not None and time.monotonic() - started >= self.timeout:
                self._timed_out = True
                logger.warning("%s timed out after %ss — terminating", self.command, self.timeout)
                self._kill(proc)
                return

    def _kill(self, proc: subprocess.Popen):
        """SIGTERM, then SIGKILL after the grace period; always reaps."""
        if proc.poll() is None:
            self._send_term(proc)
            try:
                proc.wait(timeout=TERMINATE_GRACE_SEC)
                return
            except subprocess.TimeoutExpired:
                logger.warning("%s ignored SIGTERM — killing", self.command)
        self._send_kill(proc)
        proc.wait()

    @staticmethod
    def _send_term(proc: subprocess.Popen):
        try:
            if os.name == 'posix':
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
        except (ProcessLookupError, PermissionError):
            pass

    @staticmethod
    def _send_kill(proc: subprocess.Popen):
        try:
            if os.name == 'posix':
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def _feed_stdin(self, stdin):
        try:
            stdin.write(self.input_text.encode('utf-8'))
            stdin.flush()
        except (BrokenPipeError, OSError) as e:
            logger.debug("%s closed stdin early: %s", self.command, e)
        finally:
            try:
                stdin.close()
            except OSError:
                pass

    def _pump(self, stream, name: str):
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        try:
            while True:
                data = stream.read1(READ_CHUNK_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._emit(name, text)
            tail = decoder.decode(b'', final=True)
            if tail:
                self._emit(name, tail)
        except (OSError, ValueError) as e:
            logger.debug("Reader for %s %s stopped: %s", self.command, name, e)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _emit(self, name: str, text: str):
        with self._emit_lock:
            self._parts[name].append(text)
            if self.on_output is None:
                return
            try:
                self.on_output(name, text)
            except Exception:
                logger.warning("Output observer for %s raised", self.command, exc_info=True)


class CancelScope:
    """
    Tracks the process currently running on behalf of one task so that the
    orchestrator can abort it from another thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._runner: Optional[ProcessRunner] = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check(self):
        if self._cancelled.is_set():
            raise TaskCancelled(self.reason or "Task cancelled by user")

    def attach(self, runner: ProcessRunner):
        with self._lock:
            self.check()
            self._runner = runner

    def detach(self, runner: ProcessRunner):
        with self._lock:
            if self._runner is runner:
                self._runner = None

    def cancel(self, reason: str | None = None):
        with self._lock:
            if reason and not self.reason:
                self.reason = reason
            self._cancelled.set()
            runner = self._runner
        if runner is not None:
            runner.terminate()


def run_process(command: str, args: list[str] | None = None, *,
                input_text: str | None = None,
                on_output: OutputObserver | None = None,
                timeout: float | None = None,
                cwd: str | None = None,
                scope: CancelScope | None = None) -> ProcessResult:
    """
    Run a command to completion under an optional cancel scope.
    Raises TaskCancelled if the scope was cancelled before or during the run.
    """
    runner = ProcessRunner(command, args, input_text=input_text,
                           on_output=on_output, timeout=timeout, cwd=cwd)
    return run_in_scope(runner, scope)


def run_in_scope(runner: ProcessRunner, scope: CancelScope | None) -> ProcessResult:
    """Run an already-built runner, registering it with the scope while it runs."""
    if scope is None:
        return runner.run()

    scope.attach(runner)
    try:
        result = runner.run()
    finally:
        scope.detach(runner)

    # A runner terminated by its own caller is not a cancellation of the task
    if scope.cancelled:
        raise TaskCancelled(scope.reason or "Task cancelled by user")
    return result
