"""Blocking external-command execution with timeouts and group kill."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Mapping, Sequence

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command exits non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stdout: str, stderr: str):
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip()
        super().__init__(
            f"command failed (exit {returncode}): {' '.join(self.command[:3])}"
            + (f": {detail}" if detail else "")
        )


class CommandTimeout(CommandError):
    """Raised when an external command outlives its timeout and is killed."""

    def __init__(self, args: Sequence[str], timeout: float, stdout: str, stderr: str):
        self.timeout = timeout
        super().__init__(args, -signal.SIGKILL, stdout, stderr)
        self.args = (f"command timed out after {timeout}s: {' '.join(self.command[:3])}",)


class CommandCancelled(RuntimeError):
    """Raised when a command is started or running after cancellation."""


_LIVE: set[subprocess.Popen] = set()
_LIVE_LOCK = threading.Lock()
_CANCELLED = threading.Event()


def _kill_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.kill()


def cancel_all() -> None:
    """Kill every live child process group and refuse new commands."""
    _CANCELLED.set()
    with _LIVE_LOCK:
        live = list(_LIVE)
    for process in live:
        LOGGER.warning("command_cancelled pid=%s", process.pid)
        _kill_group(process)


def reset_cancellation() -> None:
    _CANCELLED.clear()


def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    if _CANCELLED.is_set():
        raise CommandCancelled(f"run cancelled before: {' '.join(args[:3])}")

    merged_env = None
    if env:
        merged_env = dict(os.environ)
        merged_env.update(env)

    LOGGER.debug("command_start cwd=%s args=%s", cwd, list(args))
    process = subprocess.Popen(
        list(args),
        cwd=str(cwd) if cwd is not None else None,
        env=merged_env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    with _LIVE_LOCK:
        _LIVE.add(process)
    try:
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_group(process)
            stdout, stderr = process.communicate()
            raise CommandTimeout(args, timeout or 0, stdout or "", stderr or "")
    finally:
        with _LIVE_LOCK:
            _LIVE.discard(process)

    if _CANCELLED.is_set() and process.returncode != 0:
        raise CommandCancelled(f"run cancelled during: {' '.join(args[:3])}")

    completed = subprocess.CompletedProcess(list(args), process.returncode, stdout, stderr)
    if check and completed.returncode != 0:
        raise CommandError(args, completed.returncode, stdout, stderr)
    return completed


def run_git(
    repo: Path,
    *args: str,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    return run_command(["git", *args], cwd=repo, timeout=timeout, env=env, check=check)
