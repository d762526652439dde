"""Pre-rewrite tar archives of repository mirrors."""

from __future__ import annotations

import contextlib
import logging
import os
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .framework import sha256_file, utc_now

if TYPE_CHECKING:
    from .stages import RepositoryTask, StageContext

LOGGER = logging.getLogger(__name__)


class BackupError(RuntimeError):
    """Raised when an archive cannot be written and verified."""


@dataclass(frozen=True)
class BackupRecord:
    archive: Path
    source: Path
    scope: str
    branch: str | None
    sha256: str
    created_at_utc: str
    taken_before: str = "rewrite"

    def to_dict(self) -> dict[str, str | None]:
        return {
            "archive": str(self.archive),
            "source": str(self.source),
            "scope": self.scope,
            "branch": self.branch,
            "sha256": self.sha256,
            "created_at_utc": self.created_at_utc,
            "taken_before": self.taken_before,
        }


def _verify_archive(archive: Path) -> None:
    with tarfile.open(archive, "r") as tar:
        if not tar.getmembers():
            raise BackupError(f"archive is empty: {archive}")


def archive_tree(source: Path, archive: Path, *, scope: str, branch: str | None = None) -> BackupRecord:
    """Write ``source`` to ``archive`` and verify it before returning.

    The archive is built beside its destination and only renamed into place
    once it is flushed to disk, so a crash never leaves a truncated archive
    under the final name.
    """
    tmp = archive.with_name(archive.name + ".tmp")
    try:
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(tmp, "w") as tar:
            tar.add(str(source), arcname=source.name)
        with tmp.open("rb") as handle:
            os.fsync(handle.fileno())
        os.replace(tmp, archive)
        _verify_archive(archive)
        digest = sha256_file(archive)
    except (OSError, tarfile.TarError) as exc:
        with contextlib.suppress(OSError):
            tmp.unlink(missing_ok=True)
        raise BackupError(f"unable to write backup {archive}: {exc}") from exc

    record = BackupRecord(
        archive=archive,
        source=source,
        scope=scope,
        branch=branch,
        sha256=digest,
        created_at_utc=utc_now(),
    )
    LOGGER.info("backup_written scope=%s archive=%s sha256=%s", scope, archive, digest[:12])
    return record


def backup_repository(ctx: "StageContext", task: "RepositoryTask") -> BackupRecord:
    record = archive_tree(
        task.mirror_path,
        ctx.paths.repository_backup_path(task.repository),
        scope="repository",
    )
    task.result.backups.append(record)
    return record


def backup_branch(ctx: "StageContext", task: "RepositoryTask", branch: str) -> BackupRecord:
    record = archive_tree(
        task.mirror_path,
        ctx.paths.branch_backup_path(task.repository, branch),
        scope="branch",
        branch=branch,
    )
    task.result.backups.append(record)
    return record


def run_backup_stage(ctx: "StageContext", task: "RepositoryTask") -> None:
    backup_repository(ctx, task)
