"""Shared primitives: timestamps, checksums, JSON output and workdir layout."""

from __future__ import annotations

import datetime as dt
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


def utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def canonical_json_checksum(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


@dataclass(frozen=True)
class WorkPaths:
    """On-disk layout of a sanitizer working directory.

    Every per-repository path is derived from the ``org/name`` coordinate, so
    two repositories never share a mirror, backup or state location.
    """

    workdir: Path

    @property
    def repos_root(self) -> Path:
        return self.workdir / "repos"

    @property
    def backups_root(self) -> Path:
        return self.workdir / "backups"

    @property
    def state_root(self) -> Path:
        return self.workdir / "state"

    @property
    def reports_root(self) -> Path:
        return self.workdir / "reports"

    @property
    def lock_file(self) -> Path:
        return self.workdir / "lock" / "active.lock"

    @property
    def run_log(self) -> Path:
        return self.workdir / "run.log"

    def mirror_path(self, repository: str) -> Path:
        org, name = repository.split("/", 1)
        return self.repos_root / org / name

    def repository_backup_path(self, repository: str) -> Path:
        org, name = repository.split("/", 1)
        return self.backups_root / org / f"{name}.tar"

    def branch_backup_path(self, repository: str, branch: str) -> Path:
        org, name = repository.split("/", 1)
        return self.backups_root / org / name / f"{branch}.tar"

    def state_file(self, repository: str) -> Path:
        org, name = repository.split("/", 1)
        return self.state_root / org / f"{name}.env"

    def report_path(self, run_id: str, phase: str) -> Path:
        return self.reports_root / f"{run_id}-{phase}.json"
