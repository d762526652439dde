"""Local mirror management for remote repositories."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .constants import REMOTE_NAME
from .process import CommandError, run_command, run_git

if TYPE_CHECKING:
    from .stages import RepositoryTask, StageContext

LOGGER = logging.getLogger(__name__)


class MirrorError(RuntimeError):
    """Raised when a mirror cannot be cloned, opened or refreshed."""


@dataclass(frozen=True)
class Mirror:
    """Handle on a local work-tree clone used as the rewrite area."""

    path: Path
    timeout: float | None = None

    def git(self, *args: str, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        return run_git(self.path, *args, **kwargs)

    def remote_url(self) -> str:
        return self.git("remote", "get-url", REMOTE_NAME).stdout.strip()

    def remote_branches(self) -> list[str]:
        completed = self.git(
            "for-each-ref", "--format=%(refname)", f"refs/remotes/{REMOTE_NAME}/"
        )
        prefix = f"refs/remotes/{REMOTE_NAME}/"
        names = []
        for line in completed.stdout.splitlines():
            ref = line.strip()
            if ref.startswith(prefix) and ref != f"{prefix}HEAD":
                names.append(ref[len(prefix):])
        return sorted(names)

    def branches(self) -> list[str]:
        completed = self.git("for-each-ref", "--format=%(refname)", "refs/heads/")
        return sorted(
            line.strip()[len("refs/heads/"):]
            for line in completed.stdout.splitlines()
            if line.strip()
        )

    def checkout(self, branch: str) -> None:
        self.git("checkout", "--force", branch)


def _already_exists(exc: CommandError) -> bool:
    return "already exists" in exc.stderr


def _open_existing(task: "RepositoryTask", timeout: float | None) -> Mirror:
    mirror = Mirror(path=task.mirror_path, timeout=timeout)
    try:
        inside = mirror.git("rev-parse", "--is-inside-work-tree").stdout.strip()
        top = Path(mirror.git("rev-parse", "--show-toplevel").stdout.strip())
        url = mirror.remote_url()
    except CommandError as exc:
        raise MirrorError(f"existing path is not a usable mirror: {task.mirror_path}: {exc}") from exc
    if inside != "true" or top.resolve() != task.mirror_path.resolve():
        raise MirrorError(f"existing path is not a repository work tree: {task.mirror_path}")
    if url != task.remote_url:
        raise MirrorError(
            f"existing mirror {task.mirror_path} tracks {url}, expected {task.remote_url}"
        )
    return mirror


def _track_remote_branches(mirror: Mirror) -> list[str]:
    remote_branches = mirror.remote_branches()
    if not remote_branches:
        raise MirrorError(f"remote has no branches: {mirror.path}")
    # the checked-out branch cannot be force-moved, so detach first
    mirror.git("checkout", "--force", "--detach")
    for branch in remote_branches:
        mirror.git("branch", "--force", "--track", branch, f"{REMOTE_NAME}/{branch}")
    remote_set = set(remote_branches)
    for branch in mirror.branches():
        if branch not in remote_set:
            LOGGER.info("stale_branch_deleted path=%s branch=%s", mirror.path, branch)
            mirror.git("branch", "--delete", "--force", branch)
    mirror.checkout(remote_branches[0])
    return remote_branches


def ensure_mirror(task: "RepositoryTask", *, timeout: float | None = None) -> Mirror:
    """Clone or reopen the task's mirror and reset its branches to the remote."""
    task.mirror_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        run_command(
            ["git", "clone", "--origin", REMOTE_NAME, task.remote_url, str(task.mirror_path)],
            cwd=task.mirror_path.parent,
            timeout=timeout,
        )
        LOGGER.info("mirror_cloned repo=%s path=%s", task.repository, task.mirror_path)
        mirror = Mirror(path=task.mirror_path, timeout=timeout)
    except CommandError as exc:
        if not _already_exists(exc):
            raise MirrorError(f"unable to clone {task.remote_url}: {exc}") from exc
        mirror = _open_existing(task, timeout)
        LOGGER.info("mirror_reused repo=%s path=%s", task.repository, task.mirror_path)

    try:
        mirror.git("fetch", "--prune", "--tags", "--force", REMOTE_NAME)
        branches = _track_remote_branches(mirror)
    except CommandError as exc:
        raise MirrorError(f"unable to refresh mirror {task.mirror_path}: {exc}") from exc
    LOGGER.info("mirror_ready repo=%s branches=%s", task.repository, ",".join(branches))
    return mirror


def run_mirror_stage(ctx: "StageContext", task: "RepositoryTask") -> None:
    task.mirror = ensure_mirror(task, timeout=ctx.command_timeout)
