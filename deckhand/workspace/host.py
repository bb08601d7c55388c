"""
DECKHAND Host Bridge

The privileged side of the pipeline: raw filesystem and process
primitives. Everything above this layer makes path and text decisions
only; this layer performs the I/O.

Paths must be VerifiedPath instances. A plain string is a programming
error and raises TypeError before any I/O happens.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import IO, Protocol

from loguru import logger

from deckhand.cancellation import CancelToken
from deckhand.governance import VerifiedPath

TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130


@dataclass
class ProcessOutcome:
    pid: int
    exit_code: int
    output: str = ""
    elapsed: float = 0.0
    cancelled: bool = False
    timed_out: bool = False


class HostBridge(Protocol):
    def read_text(self, path: VerifiedPath) -> str: ...
    def read_bytes(self, path: VerifiedPath) -> bytes: ...
    def write_text(self, path: VerifiedPath, content: str, append: bool = False) -> None: ...
    def make_dirs(self, path: VerifiedPath) -> None: ...
    def exists(self, path: VerifiedPath) -> bool: ...
    def size(self, path: VerifiedPath) -> int: ...
    def list_dir(self, path: VerifiedPath) -> list[str]: ...
    def spawn(self, command: str, cwd: VerifiedPath) -> int: ...
    def write_stdin(self, pid: int, data: str) -> None: ...
    def wait(self, pid: int, token: CancelToken, timeout: float | None = None) -> ProcessOutcome: ...
    def kill(self, pid: int) -> None: ...
    def kill_all(self) -> None: ...
    def run(self, command: str, cwd: VerifiedPath, token: CancelToken,
            timeout: float | None = None) -> ProcessOutcome: ...


def _require_verified(path: object) -> VerifiedPath:
    if not isinstance(path, VerifiedPath):
        raise TypeError(f"host operations require a VerifiedPath, got {type(path).__name__}")
    return path


def truncate_output(text: str, limit: int) -> str:
    """Keep the head and tail of long output."""
    if limit <= 0 or len(text) <= limit:
        return text
    half = limit // 2
    dropped = len(text) - 2 * half
    return f"{text[:half]}\n... [{dropped} characters omitted] ...\n{text[-half:]}"


class LocalHost:
    """HostBridge backed by pathlib and subprocess on this machine."""

    def __init__(self, max_output_chars: int = 8000, kill_grace_seconds: float = 3.0,
                 poll_interval: float = 0.1):
        self.max_output_chars = max_output_chars
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval = poll_interval
        self._procs: dict[int, tuple[subprocess.Popen, IO[bytes], float]] = {}
        self._shell = self._pick_shell()

    # --- Filesystem --------------------------------------------------------

    def read_text(self, path: VerifiedPath) -> str:
        return _require_verified(path).path.read_text(encoding="utf-8", errors="replace")

    def read_bytes(self, path: VerifiedPath) -> bytes:
        return _require_verified(path).path.read_bytes()

    def write_text(self, path: VerifiedPath, content: str, append: bool = False) -> None:
        target = _require_verified(path).path
        with open(target, "a" if append else "w", encoding="utf-8") as f:
            f.write(content)

    def make_dirs(self, path: VerifiedPath) -> None:
        _require_verified(path).path.mkdir(parents=True, exist_ok=True)

    def exists(self, path: VerifiedPath) -> bool:
        return _require_verified(path).path.exists()

    def size(self, path: VerifiedPath) -> int:
        return _require_verified(path).path.stat().st_size

    def list_dir(self, path: VerifiedPath) -> list[str]:
        target = _require_verified(path).path
        return [
            child.name + ("/" if child.is_dir() else "")
            for child in sorted(target.iterdir(), key=lambda c: c.name.lower())
        ]

    # --- Processes ---------------------------------------------------------

    @staticmethod
    def _pick_shell() -> list[str]:
        bash = shutil.which("bash")
        if bash:
            return [bash, "-lc"]
        return [shutil.which("sh") or "/bin/sh", "-c"]

    def spawn(self, command: str, cwd: VerifiedPath) -> int:
        workdir = _require_verified(cwd).path
        sink = tempfile.TemporaryFile()
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}
        proc = subprocess.Popen(
            [*self._shell, command],
            cwd=workdir,
            stdin=subprocess.PIPE,
            stdout=sink,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )
        self._procs[proc.pid] = (proc, sink, time.monotonic())
        logger.debug(f"[HOST] Spawned pid {proc.pid}: {command[:80]}")
        return proc.pid

    def write_stdin(self, pid: int, data: str) -> None:
        proc, _, _ = self._procs[pid]
        if proc.stdin and not proc.stdin.closed:
            proc.stdin.write(data.encode("utf-8"))
            proc.stdin.flush()

    def wait(self, pid: int, token: CancelToken, timeout: float | None = None) -> ProcessOutcome:
        """Wait for exit while watching the token; terminate on cancel or timeout."""
        proc, sink, started = self._procs[pid]
        deadline = started + timeout if timeout else None
        cancelled = timed_out = False

        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if token.cancelled:
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            if cancelled or timed_out:
                logger.warning(
                    f"[HOST] Terminating pid {pid} ({'cancelled' if cancelled else 'timed out'})"
                )
                self._terminate(proc)
                break

        elapsed = time.monotonic() - started
        output = self._collect(pid)
        exit_code = proc.returncode if proc.returncode is not None else -1
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif cancelled:
            exit_code = CANCELLED_EXIT_CODE

        return ProcessOutcome(
            pid=pid,
            exit_code=exit_code,
            output=output,
            elapsed=elapsed,
            cancelled=cancelled,
            timed_out=timed_out,
        )

    def kill(self, pid: int) -> None:
        entry = self._procs.get(pid)
        if entry:
            self._terminate(entry[0])

    def kill_all(self) -> None:
        for pid in list(self._procs):
            self.kill(pid)
            self._collect(pid)

    def run(self, command: str, cwd: VerifiedPath, token: CancelToken,
            timeout: float | None = None) -> ProcessOutcome:
        pid = self.spawn(command, cwd)
        proc, _, _ = self._procs[pid]
        if proc.stdin:
            proc.stdin.close()
        return self.wait(pid, token, timeout)

    # --- Internals ---------------------------------------------------------

    def _terminate(self, proc: subprocess.Popen) -> None:
        self._signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace_seconds)
            return
        except subprocess.TimeoutExpired:
            pass
        self._signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        if proc.poll() is not None:
            return
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except (AttributeError, ProcessLookupError, PermissionError):
            # No process groups on this platform, or the group is already gone.
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()

    def _collect(self, pid: int) -> str:
        proc, sink, _ = self._procs.pop(pid)
        if proc.stdin and not proc.stdin.closed:
            proc.stdin.close()
        sink.seek(0)
        raw = sink.read()
        sink.close()
        return truncate_output(raw.decode("utf-8", errors="replace"), self.max_output_chars)
