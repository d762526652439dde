import os
import shutil
import subprocess
from pathlib import Path

import pytest

from scrubber.framework import WorkPaths
from scrubber.policy import SubstitutionPolicy
from scrubber.stages import RepositoryTask, StageContext

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
requires_filter_repo = pytest.mark.skipif(
    shutil.which("git") is None or shutil.which("git-filter-repo") is None,
    reason="git-filter-repo is not installed",
)


def git(cwd: Path, *args: str, env: dict | None = None) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
        env=env,
    )
    return completed.stdout


@pytest.fixture
def isolated_git_config(tmp_path_factory, monkeypatch):
    """Provides an isolated git configuration for every test.

    Keeps the developer's global and system git configuration (signing
    keys, hooks, default branch) from leaking into repositories the tests
    create.
    """
    home = tmp_path_factory.mktemp("git-home")
    config = home / "gitconfig"
    config.write_text(
        "[user]\n\tname = Test Runner\n\temail = runner@example.com\n"
        "[init]\n\tdefaultBranch = main\n"
        "[commit]\n\tgpgsign = false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("HOME", str(home))


@pytest.fixture
def make_remote(tmp_path, isolated_git_config):
    """Provides a factory for bare remotes with commits by given identities.

    Each commit is described as ``(branch, author_name, author_email)``.
    Branches other than ``main`` fork from ``main`` as it stands when the
    branch first appears. Returns the remote URL template to use in
    configuration.
    """
    remotes = tmp_path / "remotes"

    def _make(repository: str, commits: list[tuple[str, str, str]]) -> str:
        source = tmp_path / "sources" / repository
        source.mkdir(parents=True)
        git(source, "init", "-b", "main")
        known = {"main"}
        for index, (branch, name, email) in enumerate(commits):
            if branch not in known:
                git(source, "checkout", "-b", branch, "main")
                known.add(branch)
            elif index:  # main is unborn until the first commit
                git(source, "checkout", branch)
            (source / f"file-{index}.txt").write_text(f"change {index}\n", encoding="utf-8")
            git(source, "add", ".")
            env = dict(os.environ)
            env.update(
                GIT_AUTHOR_NAME=name,
                GIT_AUTHOR_EMAIL=email,
                GIT_COMMITTER_NAME=name,
                GIT_COMMITTER_EMAIL=email,
            )
            git(source, "commit", "-m", f"commit {index}", env=env)
        git(source, "checkout", "main")
        target = remotes / f"{repository}.git"
        target.parent.mkdir(parents=True, exist_ok=True)
        git(tmp_path, "clone", "--bare", str(source), str(target))
        return str(remotes) + "/{repository}.git"

    return _make


@pytest.fixture
def work_paths(tmp_path) -> WorkPaths:
    return WorkPaths(workdir=tmp_path / "cleaner")


@pytest.fixture
def make_context(work_paths):
    def _make(policy: SubstitutionPolicy | None = None, *, sign: bool = False) -> StageContext:
        return StageContext(
            run_id="test-run",
            paths=work_paths,
            policy=policy or SubstitutionPolicy(),
            sign=sign,
            command_timeout=120,
        )

    return _make


@pytest.fixture
def make_task(work_paths):
    def _make(repository: str = "acme/widgets", remote_url: str = "") -> RepositoryTask:
        return RepositoryTask(
            repository=repository,
            mirror_path=work_paths.mirror_path(repository),
            remote_url=remote_url or f"git@github.com:{repository}.git",
            state_path=work_paths.state_file(repository),
        )

    return _make
