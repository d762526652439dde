"""Per-repository Prepare and Publish pipelines."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .backup import BackupError, BackupRecord, run_backup_stage
from .constants import REMOTE_NAME, STAGES
from .framework import WorkPaths
from .mirror import Mirror, run_mirror_stage
from .policy import SubstitutionPolicy
from .process import CommandError
from .resign import run_resign_stage
from .rewrite import BranchRewriteResult, run_rewrite_stage
from .state import RepositoryState

LOGGER = logging.getLogger(__name__)


class PublishError(RuntimeError):
    """Raised when a repository cannot be, or was not fully, force-pushed."""


@dataclass
class StageContext:
    run_id: str
    paths: WorkPaths
    policy: SubstitutionPolicy
    sign: bool = False
    command_timeout: float | None = None


@dataclass
class TaskResult:
    status: str = "pending"
    branch_count: int = 0
    branches: list[BranchRewriteResult] = field(default_factory=list)
    backups: list[BackupRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    pushed: list[str] = field(default_factory=list)
    resign_eligible: bool = False
    signed: bool = False
    failed_stage: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "branch_count": self.branch_count,
            "branches": [branch.to_dict() for branch in self.branches],
            "backups": [record.to_dict() for record in self.backups],
            "warnings": list(self.warnings),
            "pushed": list(self.pushed),
            "resign_eligible": self.resign_eligible,
            "signed": self.signed,
            "failed_stage": self.failed_stage,
            "last_error": self.last_error,
        }


@dataclass
class RepositoryTask:
    repository: str
    mirror_path: Path
    remote_url: str
    state_path: Path
    result: TaskResult = field(default_factory=TaskResult)
    mirror: Mirror | None = None

    def fail(self, stage: str, exc: BaseException) -> None:
        self.result.status = "failed"
        self.result.failed_stage = stage
        self.result.last_error = str(exc)


HANDLERS: dict[str, Callable[[StageContext, RepositoryTask], None]] = {
    "mirror": run_mirror_stage,
    "backup": run_backup_stage,
    "rewrite": run_rewrite_stage,
    "resign": run_resign_stage,
}


def _bootstrap_state(task: RepositoryTask) -> RepositoryState:
    return RepositoryState.bootstrap(
        task.state_path,
        repository=task.repository,
        remote_url=task.remote_url,
        mirror_path=task.mirror_path,
    )


def run_prepare(ctx: StageContext, task: RepositoryTask) -> TaskResult:
    """Mirror, back up, rewrite and optionally re-sign one repository.

    Stage errors propagate to the caller after being recorded on the task and
    in the repository state file; later stages never run after a failure.
    """
    state = _bootstrap_state(task)
    state.begin_prepare(ctx.run_id)
    for stage in STAGES:
        LOGGER.info("stage_start repo=%s stage=%s", task.repository, stage)
        try:
            HANDLERS[stage](ctx, task)
        except Exception as exc:
            # branch backups are taken inside the rewrite stage
            failed = "backup" if isinstance(exc, BackupError) else stage
            task.fail(failed, exc)
            state.record_error(f"{failed}: {exc}")
            LOGGER.error("stage_failed repo=%s stage=%s error=%s", task.repository, failed, exc)
            raise
        state.complete_stage(stage)

    state.mark_prepared(
        policy_checksum=ctx.policy.checksum(),
        branch_count=task.result.branch_count,
        signed=task.result.signed,
    )
    task.result.status = "prepared"
    LOGGER.info("prepared repo=%s branches=%s", task.repository, task.result.branch_count)
    return task.result


def _check_publishable(ctx: StageContext, task: RepositoryTask) -> RepositoryState:
    if not task.mirror_path.is_dir():
        raise PublishError(
            f"refusing to publish {task.repository}: no local mirror at {task.mirror_path}; run prepare first"
        )
    state = _bootstrap_state(task)
    if not state.prepared:
        last_error = state.values.get("LAST_ERROR", "")
        raise PublishError(
            f"refusing to publish {task.repository}: mirror was not successfully prepared"
            + (f" (last error: {last_error})" if last_error else "")
        )
    if state.policy_checksum != ctx.policy.checksum():
        raise PublishError(
            f"refusing to publish {task.repository}: substitution policy changed since prepare; "
            "run prepare again"
        )
    return state


def run_publish(ctx: StageContext, task: RepositoryTask) -> TaskResult:
    """Force-push every local branch of a prepared mirror to its remote."""
    try:
        state = _check_publishable(ctx, task)
    except PublishError as exc:
        task.fail("publish", exc)
        raise

    mirror = Mirror(path=task.mirror_path, timeout=ctx.command_timeout)
    failures: list[str] = []
    try:
        branches = mirror.branches()
    except CommandError as exc:
        error = PublishError(f"unable to list branches of {task.repository}: {exc}")
        task.fail("publish", error)
        state.record_error(str(error))
        raise error from exc

    for branch in branches:
        refspec = f"refs/heads/{branch}:refs/heads/{branch}"
        try:
            mirror.git("push", "--force", REMOTE_NAME, refspec)
        except CommandError as exc:
            failures.append(branch)
            LOGGER.error("push_failed repo=%s branch=%s error=%s", task.repository, branch, exc)
            continue
        task.result.pushed.append(branch)
        LOGGER.info("pushed repo=%s branch=%s", task.repository, branch)

    if failures:
        error = PublishError(
            f"force-push failed for {task.repository} branches: {', '.join(failures)}"
        )
        task.fail("publish", error)
        state.record_error(str(error))
        raise error

    state.mark_published(ctx.run_id)
    task.result.status = "published"
    return task.result
