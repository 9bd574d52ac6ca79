"""Subprocess execution shared by the step executor and the agent client.

Every child runs in its own process group (a new session on POSIX) so a
timeout or cancel request can take down the whole tree: the shell, the
build tool it started, and whatever test host that spawned in turn.
"""

from __future__ import annotations

import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

LineCallback = Callable[[str], None]

_POLL_SECONDS = 0.25
_GRACE_SECONDS = 1.5
_EOF = None


def _new_group_kwargs() -> dict[str, Any]:
    if os.name == "nt":
        flags = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)) | int(
            getattr(subprocess, "CREATE_NO_WINDOW", 0)
        )
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Expand ``~``/env vars, drop wrapping quotes, and look *name* up on PATH.

    Returns the cleaned name unchanged when it is not found, so the spawn
    error names what the user configured.
    """
    cleaned = os.path.expandvars(os.path.expanduser((name or "").strip()))
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "'\"":
        cleaned = cleaned[1:-1].strip()
    if not cleaned:
        return ""
    return shutil.which(cleaned) or cleaned


def coerce_int(value: Any) -> int:
    """Read an integer out of a loosely typed payload value; ``0`` when impossible.

    Accepts ``"1,234"`` and ``"2.5"`` style strings. Non-finite floats and
    anything unparseable become ``0``.
    """
    if value is None:
        return 0
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return 0
        with suppress(ValueError):
            return int(value)
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    return int(number) if math.isfinite(number) else 0


@dataclass(slots=True)
class ProcessResult:
    """What a finished (or killed) subprocess left behind."""

    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def interrupted(self) -> bool:
        """True when the process was killed instead of exiting on its own."""
        return self.timed_out or self.cancelled


class _OutputPump:
    """Drain stdout and stderr on daemon threads into one queue.

    Both pipes must be read concurrently: a child that fills the stderr
    pipe buffer while we block on stdout would otherwise hang forever.
    Lines are handed to the callbacks on the thread that calls
    :meth:`collect`, never on the reader threads.
    """

    def __init__(
        self,
        proc: subprocess.Popen[str],
        *,
        label: str,
        on_stdout: LineCallback | None,
        on_stderr: LineCallback | None,
    ) -> None:
        self._label = label
        self._lines: queue.Queue[tuple[str, str | None]] = queue.Queue()
        self._open = {"stdout", "stderr"}
        self._chunks: dict[str, list[str]] = {"stdout": [], "stderr": []}
        self._callbacks = {"stdout": on_stdout, "stderr": on_stderr}
        self._readers = [
            threading.Thread(target=self._read, args=("stdout", proc.stdout), daemon=True),
            threading.Thread(target=self._read, args=("stderr", proc.stderr), daemon=True),
        ]
        for reader in self._readers:
            reader.start()

    @property
    def finished(self) -> bool:
        return not self._open

    def _read(self, stream_name: str, stream: IO[str] | None) -> None:
        try:
            if stream is not None:
                for line in iter(stream.readline, ""):
                    self._lines.put((stream_name, line))
        except (OSError, ValueError):  # pragma: no cover - pipe closed during kill
            logger.debug("%s %s pipe closed while reading", self._label, stream_name)
        finally:
            self._lines.put((stream_name, _EOF))

    def collect(self, timeout: float) -> None:
        """Handle at most one queued line, waiting up to *timeout* seconds for it."""
        try:
            stream_name, line = self._lines.get(timeout=timeout)
        except queue.Empty:
            return
        self._handle(stream_name, line)

    def drain(self) -> None:
        """Handle everything already queued without waiting."""
        while True:
            try:
                stream_name, line = self._lines.get_nowait()
            except queue.Empty:
                return
            self._handle(stream_name, line)

    def join(self) -> None:
        for reader in self._readers:
            reader.join(timeout=1.0)

    def text(self, stream_name: str) -> str:
        return "".join(self._chunks[stream_name])

    def _handle(self, stream_name: str, line: str | None) -> None:
        if line is _EOF:
            self._open.discard(stream_name)
            return
        self._chunks[stream_name].append(line)
        callback = self._callbacks[stream_name]
        if callback is None:
            return
        try:
            callback(line.rstrip("\r\n"))
        except Exception:
            logger.exception("%s %s callback failed; continuing", self._label, stream_name)


def _feed_stdin(stream: IO[str], text: str, label: str) -> None:
    try:
        stream.write(text)
        stream.flush()
    except (OSError, ValueError):  # pragma: no cover - child exited before reading
        logger.debug("%s stopped reading stdin early", label)
    finally:
        with suppress(OSError, ValueError):
            stream.close()


def run_process(
    cmd: list[str],
    *,
    cwd: str | Path | None = None,
    stdin_text: str | None = None,
    timeout_seconds: float = 120,
    cancel_event: threading.Event | None = None,
    env: dict[str, str] | None = None,
    on_stdout_line: LineCallback | None = None,
    on_stderr_line: LineCallback | None = None,
    process_name: str = "process",
) -> ProcessResult:
    """Run *cmd* to completion, a timeout, or a cancel request.

    ``timeout_seconds`` is a wall-clock limit (``0`` or less disables it).
    *stdin_text*, when given, is written from a helper thread and stdin is
    then closed; otherwise stdin is the null device. Line callbacks receive
    lines without their terminator; exceptions they raise are logged.

    A killed process reports ``exit_code == -1`` with ``timed_out`` or
    ``cancelled`` set. ``OSError`` from spawning propagates.
    """
    started = time.monotonic()
    deadline = started + timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd) if cwd else None,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **_new_group_kwargs(),
    )

    feeder: threading.Thread | None = None
    if stdin_text is not None and proc.stdin is not None:
        feeder = threading.Thread(target=_feed_stdin, args=(proc.stdin, stdin_text, process_name), daemon=True)
        feeder.start()
    pump = _OutputPump(proc, label=process_name, on_stdout=on_stdout_line, on_stderr=on_stderr_line)

    def _stop_reason() -> str | None:
        if cancel_event is not None and cancel_event.is_set():
            return "cancelled"
        if deadline is not None and time.monotonic() >= deadline:
            return "timed_out"
        return None

    reason: str | None = None
    try:
        while not pump.finished:
            reason = _stop_reason()
            if reason:
                break
            wait = _POLL_SECONDS if deadline is None else max(0.01, min(_POLL_SECONDS, deadline - time.monotonic()))
            pump.collect(wait)

        # Pipes can close before the process exits (it may have detached them).
        while reason is None and proc.poll() is None:
            reason = _stop_reason()
            if reason is None:
                with suppress(subprocess.TimeoutExpired):
                    proc.wait(timeout=0.1)

        if reason:
            terminate_process_tree(
                proc,
                process_name=process_name,
                reason="stop request" if reason == "cancelled" else f"timeout after {timeout_seconds}s",
            )
        pump.drain()

        return ProcessResult(
            exit_code=-1 if reason or proc.returncode is None else proc.returncode,
            stdout=pump.text("stdout"),
            stderr=pump.text("stderr"),
            duration_seconds=time.monotonic() - started,
            timed_out=reason == "timed_out",
            cancelled=reason == "cancelled",
        )
    finally:
        if feeder is not None:
            feeder.join(timeout=1.0)
        pump.join()
        for pipe in (proc.stdin, proc.stdout, proc.stderr):
            if pipe is not None:
                with suppress(OSError, ValueError):
                    pipe.close()


# ---------------------------------------------------------------------------
# Killing process trees
# ---------------------------------------------------------------------------


def terminate_process_tree(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    reason: str,
    grace_seconds: float = _GRACE_SECONDS,
) -> None:
    """Terminate *proc* and its process group; force-kill after *grace_seconds*.

    Also sweeps the group when the leader has already exited, since
    grandchildren may still hold the output pipes open.
    """
    if proc.poll() is None:
        logger.info("Terminating %s (%s)", process_name, reason)
        _signal_tree(proc, force=False)
        try:
            proc.wait(timeout=max(0.1, grace_seconds))
        except subprocess.TimeoutExpired:
            logger.warning("%s ignored terminate during %s; killing", process_name, reason)
            _signal_tree(proc, force=True)
            try:
                proc.wait(timeout=5.0)
            except subprocess.TimeoutExpired:  # pragma: no cover - unkillable child
                logger.warning("%s survived kill during %s", process_name, reason)
                return
    if os.name != "nt":
        _kill_group(proc.pid, signal.SIGKILL)


def _signal_tree(proc: subprocess.Popen[str], *, force: bool) -> None:
    if os.name == "nt":  # pragma: no cover - Windows-only runtime branch
        if force:
            # taskkill /T reaches grandchildren that proc.kill() would orphan.
            with suppress(OSError, subprocess.SubprocessError):
                subprocess.run(
                    ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                    capture_output=True,
                    timeout=10,
                    check=False,
                )
    else:
        _kill_group(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
    with suppress(OSError):
        if force:
            proc.kill()
        else:
            proc.terminate()


def _kill_group(pid: int, sig: int) -> None:
    # start_new_session makes the child its group leader, so pgid == pid
    # even after the leader has been reaped.
    if pid > 0:
        with suppress(OSError):
            os.killpg(pid, sig)
