"""Durable per-repository state files.

Each repository gets a small shell-style env file recording which Prepare
stages completed, under which policy, and whether it was published. The
Publish phase trusts this file, not the mere existence of a mirror.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .constants import DONE_FLAGS, STAGES
from .framework import utc_now

STATE_SCHEMA_VERSION = "1"

IMMUTABLE_KEYS = ("REPOSITORY", "REMOTE_URL", "MIRROR_PATH")

_WRITE_LOCK = threading.Lock()


class ContractDriftError(RuntimeError):
    """Raised when an immutable state key changes between runs."""


def parse_env(path: Path) -> dict[str, str]:
    data: dict[str, str] = {}
    if not path.exists():
        return data

    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = _unescape(value[1:-1])
        data[key.strip()] = value
    return data


def _unescape(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        out.append("\n" if nxt == "n" else nxt)
    return "".join(out)


def write_env(path: Path, data: dict[str, str]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.parent.mkdir(parents=True, exist_ok=True)

    lines = []
    for key in sorted(data):
        value = "" if data[key] is None else str(data[key])
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        lines.append(f'{key}="{escaped}"')

    with _WRITE_LOCK:
        tmp.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        os.replace(tmp, path)


@dataclass
class RepositoryState:
    path: Path
    values: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> "RepositoryState":
        return cls(path=path, values=parse_env(path))

    @classmethod
    def bootstrap(
        cls, path: Path, *, repository: str, remote_url: str, mirror_path: Path
    ) -> "RepositoryState":
        state = cls.load(path)
        contract = {
            "REPOSITORY": repository,
            "REMOTE_URL": remote_url,
            # relative to the state file, stable across working-directory moves
            "MIRROR_PATH": os.path.relpath(mirror_path, path.parent),
        }
        for key in IMMUTABLE_KEYS:
            prior = state.values.get(key, "")
            if prior and prior != contract[key]:
                raise ContractDriftError(
                    f"immutable state drift for {repository} {key}: {prior} != {contract[key]}"
                )
        state.values.update(contract)
        state.values.setdefault("STATE_SCHEMA_VERSION", STATE_SCHEMA_VERSION)
        state.values.setdefault("PREPARED", "0")
        for stage in STAGES:
            state.values.setdefault(DONE_FLAGS[stage], "0")
        return state

    def save(self) -> None:
        self.values["LAST_UPDATED_AT_UTC"] = utc_now()
        write_env(self.path, self.values)

    @property
    def prepared(self) -> bool:
        return self.values.get("PREPARED", "0") == "1"

    @property
    def policy_checksum(self) -> str:
        return self.values.get("POLICY_CHECKSUM", "")

    def begin_prepare(self, run_id: str) -> None:
        """Invalidate the prepared marker before the mirror is touched again."""
        self.values["PREPARED"] = "0"
        self.values["LAST_RUN_ID"] = run_id
        self.values["LAST_ERROR"] = ""
        self.values["LAST_COMPLETED_STAGE"] = ""
        for stage in STAGES:
            self.values[DONE_FLAGS[stage]] = "0"
        self.save()

    def complete_stage(self, stage: str) -> None:
        self.values[DONE_FLAGS[stage]] = "1"
        self.values["LAST_COMPLETED_STAGE"] = stage
        self.save()

    def mark_prepared(self, *, policy_checksum: str, branch_count: int, signed: bool) -> None:
        missing = [stage for stage in STAGES if self.values.get(DONE_FLAGS[stage]) != "1"]
        if missing:
            raise ContractDriftError(
                f"cannot mark {self.values.get('REPOSITORY')} prepared; incomplete stages: {','.join(missing)}"
            )
        self.values["PREPARED"] = "1"
        self.values["POLICY_CHECKSUM"] = policy_checksum
        self.values["BRANCH_COUNT"] = str(branch_count)
        self.values["SIGNED"] = "1" if signed else "0"
        self.values["PREPARED_AT_UTC"] = utc_now()
        self.save()

    def mark_published(self, run_id: str) -> None:
        self.values["PUBLISHED_AT_UTC"] = utc_now()
        self.values["LAST_RUN_ID"] = run_id
        self.values["LAST_ERROR"] = ""
        self.save()

    def record_error(self, message: str) -> None:
        self.values["LAST_ERROR"] = message
        self.save()
