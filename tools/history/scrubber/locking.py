"""Single-writer lock for a sanitizer working directory."""

from __future__ import annotations

import getpass
import json
import logging
import os
import socket
from dataclasses import asdict, dataclass
from pathlib import Path

from .framework import utc_now

LOGGER = logging.getLogger(__name__)


class LockContentionError(RuntimeError):
    """Raised when another live process holds the workdir lock."""


@dataclass(frozen=True)
class LockPayload:
    pid: int
    host: str
    user: str
    run_id: str
    phase: str
    acquired_at_utc: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def _pid_active(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def _read_payload(lock_file: Path) -> tuple[str, dict[str, object]]:
    try:
        raw = lock_file.read_text(encoding="utf-8").strip()
    except OSError:
        return "", {}
    try:
        payload = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        payload = {}
    return raw, payload if isinstance(payload, dict) else {}


def acquire_lock(lock_file: Path, run_id: str, phase: str) -> LockPayload:
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    prior_raw, prior = _read_payload(lock_file)
    if prior_raw:
        pid = prior.get("pid", 0)
        prior_pid = pid if isinstance(pid, int) else 0
        # a lock taken on another host cannot be probed; treat it as live
        same_host = prior.get("host") in (None, socket.gethostname())
        if not same_host or _pid_active(prior_pid):
            raise LockContentionError(
                f"active lock at {lock_file}: pid={prior_pid} host={prior.get('host', '?')} "
                f"user={prior.get('user', '?')} phase={prior.get('phase', '?')}"
            )
        LOGGER.warning("stale_lock_replaced payload=%s", prior_raw)

    payload = LockPayload(
        pid=os.getpid(),
        host=socket.gethostname(),
        user=getpass.getuser(),
        run_id=run_id,
        phase=phase,
        acquired_at_utc=utc_now(),
    )
    lock_file.write_text(payload.to_json() + "\n", encoding="utf-8")
    LOGGER.info("lock_acquired pid=%s run_id=%s phase=%s", payload.pid, run_id, phase)
    return payload


def release_lock(lock_file: Path, run_id: str) -> None:
    if not lock_file.exists():
        return
    _, payload = _read_payload(lock_file)
    owner = str(payload.get("run_id", ""))
    if owner and owner != run_id:
        return
    lock_file.unlink(missing_ok=True)
    LOGGER.info("lock_released run_id=%s", run_id)
