import subprocess

import pytest
from conftest import git
from conftest import requires_git

from scrubber.backup import BackupError
from scrubber.backup import backup_branch
from scrubber.constants import STAGES
from scrubber.mirror import Mirror
from scrubber.mirror import ensure_mirror
from scrubber.policy import SubstitutionPolicy
from scrubber.process import CommandError
from scrubber.stages import PublishError
from scrubber.stages import run_prepare
from scrubber.stages import run_publish
from scrubber.state import RepositoryState


def _mark_prepared(task, policy):
    state = RepositoryState.bootstrap(
        task.state_path,
        repository=task.repository,
        remote_url=task.remote_url,
        mirror_path=task.mirror_path,
    )
    for stage in STAGES:
        state.complete_stage(stage)
    state.mark_prepared(policy_checksum=policy.checksum(), branch_count=1, signed=False)


class TestRunPrepare:
    def test_stages_run_in_order_and_mark_prepared(self, mocker, make_context, make_task):
        """Test Prepare runs every stage in order then records success.

        Given:
            Stage handlers that succeed
        When:
            run_prepare is called
        Then:
            Handlers should run mirror, backup, rewrite, resign in order and
            the state file should be marked prepared under the policy
        """
        # Arrange
        calls = []
        mocker.patch.dict(
            "scrubber.stages.HANDLERS",
            {stage: (lambda ctx, task, stage=stage: calls.append(stage)) for stage in STAGES},
        )
        policy = SubstitutionPolicy(email_rules={"a@x.com": "b@y.com"})
        ctx = make_context(policy)
        task = make_task()

        # Act
        result = run_prepare(ctx, task)

        # Assert
        assert calls == list(STAGES)
        assert result.status == "prepared"
        state = RepositoryState.load(task.state_path)
        assert state.prepared
        assert state.policy_checksum == policy.checksum()

    def test_failure_stops_later_stages(self, mocker, make_context, make_task):
        """Test a failing stage prevents every later stage and the marker.

        Given:
            A backup handler that raises BackupError
        When:
            run_prepare is called
        Then:
            The error should propagate, rewrite and resign should not run,
            and the state should record the error without being prepared
        """
        # Arrange
        calls = []

        def _backup(ctx, task):
            raise BackupError("disk full")

        handlers = {stage: (lambda ctx, task, stage=stage: calls.append(stage)) for stage in STAGES}
        handlers["backup"] = _backup
        mocker.patch.dict("scrubber.stages.HANDLERS", handlers)
        task = make_task()

        # Act & assert
        with pytest.raises(BackupError):
            run_prepare(make_context(), task)
        assert calls == ["mirror"]
        assert task.result.status == "failed"
        assert task.result.failed_stage == "backup"
        state = RepositoryState.load(task.state_path)
        assert not state.prepared
        assert "disk full" in state.values["LAST_ERROR"]

    def test_unwritable_branch_backup_is_a_backup_failure(self, mocker, make_context, make_task):
        """Test a branch archive that cannot be written fails the backup stage.

        Given:
            A rewrite stage whose branch backup lands under a path blocked by
            a regular file
        When:
            run_prepare is called
        Then:
            BackupError should propagate and the failure should be recorded
            against the backup stage
        """
        # Arrange
        task = make_task()
        task.mirror_path.mkdir(parents=True)
        (task.mirror_path / "README").write_text("hello\n", encoding="utf-8")
        ctx = make_context()
        ctx.paths.backups_root.mkdir(parents=True)
        (ctx.paths.backups_root / "acme").write_text("not a directory", encoding="utf-8")

        handlers = {stage: (lambda ctx, task: None) for stage in STAGES}
        handlers["rewrite"] = lambda ctx, task: backup_branch(ctx, task, "main")
        mocker.patch.dict("scrubber.stages.HANDLERS", handlers)

        # Act & assert
        with pytest.raises(BackupError):
            run_prepare(ctx, task)
        assert task.result.failed_stage == "backup"
        assert RepositoryState.load(task.state_path).values["LAST_ERROR"].startswith("backup:")


class TestRunPublish:
    def test_missing_mirror_fails_loudly(self, make_context, make_task):
        """Test Publish refuses a repository that was never mirrored.

        Given:
            A repository with no local mirror directory
        When:
            run_publish is called
        Then:
            PublishError should be raised and the task marked failed
        """
        # Arrange
        task = make_task()

        # Act & assert
        with pytest.raises(PublishError, match="no local mirror"):
            run_publish(make_context(), task)
        assert task.result.status == "failed"
        assert task.result.pushed == []

    def test_unprepared_mirror_is_refused(self, make_context, make_task):
        task = make_task()
        task.mirror_path.mkdir(parents=True)

        with pytest.raises(PublishError, match="not successfully prepared"):
            run_publish(make_context(), task)

    def test_changed_policy_is_refused(self, make_context, make_task):
        task = make_task()
        task.mirror_path.mkdir(parents=True)
        _mark_prepared(task, SubstitutionPolicy(email_rules={"a@x.com": "b@y.com"}))

        with pytest.raises(PublishError, match="policy changed"):
            run_publish(make_context(SubstitutionPolicy(email_rules={"a@x.com": "c@y.com"})), task)

    def test_failed_push_does_not_block_other_branches(self, mocker, make_context, make_task):
        """Test every branch is attempted even when one push fails.

        Given:
            A prepared mirror with three branches where pushing b fails
        When:
            run_publish is called
        Then:
            a and c should be pushed and PublishError should name b
        """
        # Arrange
        task = make_task()
        task.mirror_path.mkdir(parents=True)
        policy = SubstitutionPolicy()
        _mark_prepared(task, policy)
        mocker.patch.object(Mirror, "branches", return_value=["a", "b", "c"])

        def _git(self, *args, **kwargs):
            if args[0] == "push" and args[-1].startswith("refs/heads/b:"):
                raise CommandError(["git", *args], 1, "", "rejected")
            return subprocess.CompletedProcess(list(args), 0, "", "")

        mocker.patch.object(Mirror, "git", autospec=True, side_effect=_git)

        # Act & assert
        with pytest.raises(PublishError, match="branches: b"):
            run_publish(make_context(policy), task)
        assert task.result.pushed == ["a", "c"]
        assert not RepositoryState.load(task.state_path).values.get("PUBLISHED_AT_UTC")

    @requires_git
    def test_force_pushes_rewritten_history(self, make_remote, make_context, make_task):
        """Test Publish overwrites the remote branch with the local one.

        Given:
            A prepared mirror whose main branch diverged from the remote
        When:
            run_publish is called
        Then:
            The remote main should point at the local main
        """
        # Arrange
        template = make_remote("acme/widgets", [("main", "Jane", "a@x.com")])
        task = make_task("acme/widgets", template.format(repository="acme/widgets"))
        mirror = ensure_mirror(task, timeout=60)
        git(task.mirror_path, "commit", "--amend", "--allow-empty", "-m", "rewritten")
        local_tip = git(task.mirror_path, "rev-parse", "main").strip()
        policy = SubstitutionPolicy()
        _mark_prepared(task, policy)

        # Act
        result = run_publish(make_context(policy), task)

        # Assert
        assert result.status == "published"
        assert result.pushed == ["main"]
        remote = template.format(repository="acme/widgets")
        assert git(task.mirror_path, "ls-remote", remote, "refs/heads/main").split()[0] == local_tip
        assert mirror.branches() == ["main"]
