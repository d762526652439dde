"""Per-branch identity rewriting through ``git filter-repo``."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .backup import backup_branch
from .process import CommandError

if TYPE_CHECKING:
    from .mirror import Mirror
    from .stages import RepositoryTask, StageContext

LOGGER = logging.getLogger(__name__)

FILTER_REPO = "filter-repo"


class RewriteError(RuntimeError):
    """Raised when the rewrite tool fails on a branch."""


@dataclass
class BranchRewriteResult:
    branch: str
    name_rewritten: bool = False
    email_rewritten: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.name_rewritten and self.email_rewritten

    def to_dict(self) -> dict[str, object]:
        return {
            "branch": self.branch,
            "name_rewritten": self.name_rewritten,
            "email_rewritten": self.email_rewritten,
            "error": self.error,
        }


def filter_repo_args(branch: str, option: str, body: str) -> list[str]:
    return [
        FILTER_REPO,
        "--force",
        "--partial",
        "--refs",
        f"refs/heads/{branch}",
        "--replace-refs",
        "delete-no-add",
        option,
        body,
    ]


def clear_filter_repo_metadata(mirror: "Mirror") -> None:
    """Drop the bookkeeping a previous filter-repo run left in the mirror.

    filter-repo reads its last commit map when started again in the same
    clone, and partial runs over different refs do not agree with it.
    """
    shutil.rmtree(mirror.path / ".git" / "filter-repo", ignore_errors=True)


def _rewrite_branch(
    mirror: "Mirror", branch: str, name_body: str, email_body: str, result: BranchRewriteResult
) -> None:
    try:
        clear_filter_repo_metadata(mirror)
        mirror.git(*filter_repo_args(branch, "--name-callback", name_body))
        result.name_rewritten = True
        clear_filter_repo_metadata(mirror)
        mirror.git(*filter_repo_args(branch, "--email-callback", email_body))
        result.email_rewritten = True
    except CommandError as exc:
        step = "email" if result.name_rewritten else "name"
        result.error = f"{step} rewrite failed: {exc}"
        raise RewriteError(f"{step} rewrite failed on branch {branch}: {exc}") from exc


def collect_garbage(mirror: "Mirror") -> None:
    mirror.git("reflog", "expire", "--expire=now", "--all")
    mirror.git("gc", "--prune=now", "--aggressive", "--quiet")


def rewrite_repository(ctx: "StageContext", task: "RepositoryTask") -> list[BranchRewriteResult]:
    mirror = task.mirror
    if mirror is None:
        raise RewriteError(f"no mirror available for {task.repository}")

    name_body = ctx.policy.name_predicate().callback_body()
    email_body = ctx.policy.email_predicate().callback_body()

    try:
        branches = mirror.branches()
    except CommandError as exc:
        raise RewriteError(f"unable to list branches of {task.repository}: {exc}") from exc

    for branch in branches:
        task.result.branch_count += 1
        result = BranchRewriteResult(branch=branch)
        task.result.branches.append(result)
        try:
            mirror.checkout(branch)
        except CommandError as exc:
            result.error = f"checkout failed: {exc}"
            raise RewriteError(f"unable to check out {branch} in {task.repository}: {exc}") from exc

        backup_branch(ctx, task, branch)
        _rewrite_branch(mirror, branch, name_body, email_body, result)
        LOGGER.info("branch_rewritten repo=%s branch=%s", task.repository, branch)

    try:
        collect_garbage(mirror)
    except CommandError as exc:
        raise RewriteError(f"garbage collection failed for {task.repository}: {exc}") from exc
    task.result.resign_eligible = task.result.branch_count == 1
    return task.result.branches


def run_rewrite_stage(ctx: "StageContext", task: "RepositoryTask") -> None:
    rewrite_repository(ctx, task)
