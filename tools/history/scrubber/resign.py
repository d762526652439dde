"""Re-signing of rewritten single-branch histories."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .process import CommandError

if TYPE_CHECKING:
    from .stages import RepositoryTask, StageContext

LOGGER = logging.getLogger(__name__)

# Runs for every replayed commit; the committer date is pinned to the author
# date so the signature is the only change.
AMEND_COMMAND = (
    'GIT_COMMITTER_DATE="$(git log -1 --format=%ad --date=raw)" '
    "git commit --amend --no-edit --allow-empty --no-verify -S"
)

NON_INTERACTIVE_ENV = {
    "GIT_SEQUENCE_EDITOR": "true",
    "GIT_EDITOR": "true",
}


class ResignError(RuntimeError):
    """Raised when the signing replay fails or stalls."""


def _abort_replay(task: "RepositoryTask") -> None:
    completed = task.mirror.git("rebase", "--abort", check=False)
    if completed.returncode != 0:
        LOGGER.warning(
            "rebase_abort_failed repo=%s detail=%s", task.repository, completed.stderr.strip()
        )


def resign_repository(ctx: "StageContext", task: "RepositoryTask") -> bool:
    """Sign every commit of a linear history. Returns whether signing ran."""
    if not ctx.sign:
        return False

    count = task.result.branch_count
    if count != 1:
        message = (
            f"skipping commit signing for {task.repository}: history has {count} branches; "
            "only single-branch histories can be re-signed"
        )
        task.result.warnings.append(message)
        LOGGER.warning('resign_skipped repo=%s reason="%s branches"', task.repository, count)
        return False

    branch = task.result.branches[0].branch
    try:
        task.mirror.checkout(branch)
        task.mirror.git(
            "rebase",
            "--root",
            "--committer-date-is-author-date",
            "--exec",
            AMEND_COMMAND,
            env=NON_INTERACTIVE_ENV,
        )
    except CommandError as exc:
        _abort_replay(task)
        raise ResignError(f"signing replay failed for {task.repository} on {branch}: {exc}") from exc

    task.result.signed = True
    LOGGER.info("resign_complete repo=%s branch=%s", task.repository, branch)
    return True


def run_resign_stage(ctx: "StageContext", task: "RepositoryTask") -> None:
    resign_repository(ctx, task)
