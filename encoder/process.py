from __future__ import annotations

import enum
import os
import signal
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence

from logging_utils import get_logger
from pipeline_errors import EncoderProcessError, EncoderStateError
from render_job import Frame
from .progress import ProgressParser
from .runner import pretty_command

logger = get_logger(__name__)

DIAGNOSTIC_TAIL_LINES = 50


class EncoderState(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    INPUT_CLOSED = "input_closed"
    EXITED = "exited"


def _popen_kwargs_for_child() -> dict:
    """Platform-specific kwargs so the whole child tree can be terminated."""
    if os.name == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def _terminate_process_tree(proc: subprocess.Popen, label: str, grace_sec: float) -> None:
    """Graceful terminate, then hard-kill (whole process group on POSIX)."""
    if proc.poll() is not None:
        return

    try:
        if os.name != "nt":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        logger.info("Sent terminate to %s (pid=%s)", label, proc.pid)
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=grace_sec)
        return
    except subprocess.TimeoutExpired:
        pass

    try:
        if os.name != "nt":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
        logger.warning("Killed %s (pid=%s) after %.1fs grace", label, proc.pid, grace_sec)
    except ProcessLookupError:
        return


class EncoderProcessHandle:
    """One supervised encoder invocation.

    Lifecycle: NOT_STARTED -> RUNNING -> INPUT_CLOSED -> EXITED. ``feed`` is
    only valid while RUNNING; ``wait`` always releases the process and its
    pipes before returning or raising. ``on_exit`` fires from the reader
    thread when the process dies while frames are still expected.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        stage: str,
        label: str,
        stream_input: bool = True,
        intermediate_path: Optional[Path] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
        grace_seconds: float = 5.0,
    ) -> None:
        self.command: List[str] = [str(part) for part in command]
        self.stage = stage
        self.label = label
        self.stream_input = stream_input
        self.intermediate_path = intermediate_path
        self.on_progress = on_progress
        self.on_exit = on_exit
        self.grace_seconds = grace_seconds

        self.frames_fed = 0
        self.last_progress = 0
        self.exit_code: Optional[int] = None
        self.started_at: Optional[float] = None

        self._state = EncoderState.NOT_STARTED
        self._lock = threading.RLock()
        self._process: Optional[subprocess.Popen] = None
        self._threads: List[threading.Thread] = []
        self._diagnostics: Deque[str] = deque(maxlen=DIAGNOSTIC_TAIL_LINES)
        self._failure: Optional[EncoderProcessError] = None
        self._cleaned = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> EncoderState:
        return self._state

    @property
    def diagnostics(self) -> List[str]:
        return list(self._diagnostics)

    def start(self) -> "EncoderProcessHandle":
        with self._lock:
            if self._state is not EncoderState.NOT_STARTED:
                raise EncoderStateError(f"{self.label} already started")
            logger.debug("Starting %s: %s", self.label, pretty_command(self.command))
            try:
                self._process = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE if self.stream_input else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                    **_popen_kwargs_for_child(),
                )
            except OSError as exc:
                self._state = EncoderState.EXITED
                raise EncoderProcessError(self.stage, self.label, None, [str(exc)]) from exc

            self.started_at = time.monotonic()
            self._state = EncoderState.RUNNING if self.stream_input else EncoderState.INPUT_CLOSED

        self._threads = [
            threading.Thread(target=self._read_progress, name=f"{self.label}-progress", daemon=True),
            threading.Thread(target=self._read_diagnostics, name=f"{self.label}-stderr", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("%s started (pid=%s)", self.label, self._process.pid)
        return self

    def feed(self, frame: Frame) -> None:
        with self._lock:
            if self._state is not EncoderState.RUNNING:
                raise EncoderStateError(f"Cannot feed {self.label} in state {self._state.value}")
            process = self._process
            assert process is not None and process.stdin is not None

        if process.poll() is not None:
            raise self._failure_after_exit()
        try:
            process.stdin.write(frame.read_bytes())
        except (BrokenPipeError, ValueError, OSError) as exc:
            raise self._failure_after_exit() from exc
        self.frames_fed += 1

    def close_input(self) -> None:
        with self._lock:
            if self._state is EncoderState.INPUT_CLOSED:
                return
            if self._state is not EncoderState.RUNNING:
                raise EncoderStateError(f"Cannot close input of {self.label} in state {self._state.value}")
            self._state = EncoderState.INPUT_CLOSED
            self._close_stdin()
        logger.debug("%s input closed after %d frames", self.label, self.frames_fed)

    def wait(self) -> int:
        """Block until exit; raise ``EncoderProcessError`` on failure."""
        with self._lock:
            if self._state is EncoderState.NOT_STARTED:
                raise EncoderStateError(f"{self.label} was never started")
            if self._state is EncoderState.RUNNING:
                self.close_input()
        self._reap()
        if self._failure is not None:
            raise self._failure
        assert self.exit_code is not None
        return self.exit_code

    def abort(self) -> None:
        """Force the process down without reporting its exit status."""
        with self._lock:
            if self._state in (EncoderState.NOT_STARTED, EncoderState.EXITED):
                return
            self._state = EncoderState.INPUT_CLOSED
            self._close_stdin()
        assert self._process is not None
        _terminate_process_tree(self._process, self.label, self.grace_seconds)
        self._reap()

    def cleanup(self) -> None:
        """Remove the intermediate file, if any. Safe to call repeatedly."""
        if self._cleaned:
            return
        self._cleaned = True
        path = self.intermediate_path
        if path is not None and path.exists():
            path.unlink()
            logger.debug("Removed intermediate %s", path)

    def release(self) -> None:
        self.abort()
        self.cleanup()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _close_stdin(self) -> None:
        if self._process is None or self._process.stdin is None:
            return
        try:
            self._process.stdin.close()
        except (BrokenPipeError, OSError):
            # Process already gone; wait() reports the exit status
            pass

    def _failure_after_exit(self) -> EncoderProcessError:
        with self._lock:
            if self._state is EncoderState.RUNNING:
                self._state = EncoderState.INPUT_CLOSED
                self._close_stdin()
        self._reap()
        if self._failure is not None:
            return self._failure
        return EncoderProcessError(
            self.stage,
            self.label,
            self.exit_code,
            self.diagnostics + [f"exited after {self.frames_fed} frames before input was closed"],
        )

    def _reap(self) -> None:
        process = self._process
        assert process is not None
        code = process.wait()
        for thread in self._threads:
            thread.join()
        with self._lock:
            if self._state is EncoderState.EXITED:
                return
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()
            self.exit_code = code
            self._state = EncoderState.EXITED
            if code != 0:
                for line in self.diagnostics:
                    logger.error("%s: %s", self.label, line)
                self._failure = EncoderProcessError(self.stage, self.label, code, self.diagnostics)
            logger.info("%s exited with code %s", self.label, code)

    def _handle_progress(self, frame: int) -> None:
        self.last_progress = frame
        if self.on_progress is not None:
            self.on_progress(frame)

    def _read_progress(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        parser = ProgressParser(self._handle_progress)
        for raw in iter(self._process.stdout.readline, b""):
            try:
                parser.feed_line(raw.decode("utf-8", errors="replace"))
            except Exception:
                logger.exception("%s progress callback failed", self.label)

        code = self._process.wait()
        with self._lock:
            died_early = self._state is EncoderState.RUNNING
        if died_early and self.on_exit is not None:
            logger.warning("%s exited with code %s while frames were still being fed", self.label, code)
            try:
                self.on_exit(code)
            except Exception:
                logger.exception("%s exit callback failed", self.label)

    def _read_diagnostics(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        for raw in iter(self._process.stderr.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._diagnostics.append(line)
