"""Tests for the branch integrator and the manifest checkpoint."""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, call

import pytest

from conftest import SPEC
from ralph.core.errors import GitCommandError
from ralph.core.paths import RalphPaths
from ralph.parallel.integrator import BranchIntegrator, ConflictRecord, ManifestCheckpointer
from ralph.parallel.models import MergeOutcome
from ralph.tools.git import GitClient


def _git_error(cmd: str, output: str = "") -> GitCommandError:
    return GitCommandError(f"git command failed: {cmd}", command=cmd, returncode=1, output=output)


class TestConflictRecord:
    def test_markdown_contains_branches_and_recipe(self):
        text = ConflictRecord(source="ralph/auth/a", target="ralph/auth").to_markdown()
        assert text.startswith("# Merge Conflict")
        assert "Failed to merge `ralph/auth/a` into `ralph/auth`." in text
        assert "git checkout ralph/auth" in text
        assert "git merge origin/ralph/auth/a" in text
        assert "git add . && git commit" in text
        assert "git push origin ralph/auth" in text


class TestBranchIntegratorMocked:
    def test_merge_sequence(self, paths):
        git = MagicMock()
        outcome = BranchIntegrator(git, paths).merge(SPEC, "ralph/auth/a")

        assert outcome is MergeOutcome.MERGED
        assert git.mock_calls == [
            call.fetch("origin"),
            call.checkout("ralph/auth"),
            call.pull("origin", "ralph/auth"),
            call.merge_no_ff("origin/ralph/auth/a", message="Merge sub-spec ralph/auth/a"),
            call.push("origin", "ralph/auth"),
        ]
        assert not paths.conflict_record.exists()

    def test_conflict_aborts_and_records(self, paths):
        git = MagicMock()
        git.merge_no_ff.side_effect = _git_error("git merge", "CONFLICT (content): app.py")

        outcome = BranchIntegrator(git, paths).merge(SPEC, "ralph/auth/a")

        assert outcome is MergeOutcome.CONFLICT
        git.merge_abort.assert_called_once()
        git.push.assert_not_called()
        text = paths.conflict_record.read_text(encoding="utf-8")
        assert "`ralph/auth/a` into `ralph/auth`" in text
        assert "CONFLICT (content): app.py" in text

    def test_push_failure_is_a_conflict(self, paths):
        git = MagicMock()
        git.push.side_effect = _git_error("git push")
        assert BranchIntegrator(git, paths).merge(SPEC, "ralph/auth/a") is MergeOutcome.CONFLICT

    def test_abort_failure_is_tolerated(self, paths):
        git = MagicMock()
        git.fetch.side_effect = _git_error("git fetch")
        git.merge_abort.side_effect = _git_error("git merge --abort")
        assert BranchIntegrator(git, paths).merge(SPEC, "ralph/auth/a") is MergeOutcome.CONFLICT

    def test_record_lists_every_conflict_of_the_run(self, paths):
        git = MagicMock()
        git.merge_no_ff.side_effect = _git_error("git merge")
        integrator = BranchIntegrator(git, paths)
        integrator.merge(SPEC, "ralph/auth/a")
        integrator.merge(SPEC, "ralph/auth/b")

        text = paths.conflict_record.read_text(encoding="utf-8")
        assert text.count("# Merge Conflict") == 2
        assert "ralph/auth/a" in text and "ralph/auth/b" in text

    def test_never_force_pushes(self, paths):
        git = MagicMock()
        BranchIntegrator(git, paths).merge(SPEC, "ralph/auth/a")
        for c in git.mock_calls:
            assert "--force" not in str(c)


class TestManifestCheckpointer:
    def test_commit_message_and_push(self, paths):
        git = MagicMock()
        assert ManifestCheckpointer(git, paths).checkpoint(SPEC, 2, 5) is True
        git.add.assert_called_once_with(".ralph/specs/auth/manifest.json")
        git.commit.assert_called_once_with("Update manifest: 2/5 sub-specs complete")
        git.push.assert_called_once_with("origin", "ralph/auth")

    def test_failure_is_not_fatal(self, paths):
        git = MagicMock()
        git.commit.side_effect = _git_error("git commit", "nothing to commit")
        assert ManifestCheckpointer(git, paths).checkpoint(SPEC, 0, 1) is False
        git.push.assert_not_called()


# =============================================================================
# Real git repositories
# =============================================================================


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout


def _commit_file(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content, encoding="utf-8")
    _git(repo, "add", name)
    _git(repo, "commit", "-m", message)


@pytest.fixture
def git_repos(tmp_path):
    """A bare ``origin`` plus a working clone with ``ralph/auth`` pushed."""
    remote = tmp_path / "origin.git"
    work = tmp_path / "work"
    _git(tmp_path, "init", "--bare", str(remote))
    work.mkdir()
    _git(work, "init")
    _git(work, "config", "user.email", "ralph@example.com")
    _git(work, "config", "user.name", "ralph")
    _git(work, "config", "commit.gpgsign", "false")
    _git(work, "config", "pull.rebase", "false")
    _git(work, "checkout", "-b", "main")
    _commit_file(work, "app.py", "print('v1')\n", "initial")
    _git(work, "remote", "add", "origin", str(remote))
    _git(work, "push", "origin", "main")
    _git(work, "checkout", "-b", "ralph/auth")
    _git(work, "push", "origin", "ralph/auth")
    return remote, work


# A single ref store cannot hold both `ralph/auth` and `ralph/auth/<sub>`,
# so the unit branches merged here live under another prefix.
UNIT_PREFIX = "units"


def _push_sub_branch(work: Path, name: str, filename: str, content: str) -> str:
    branch = f"{UNIT_PREFIX}/auth/{name}"
    _git(work, "checkout", "-b", branch, "ralph/auth")
    _commit_file(work, filename, content, f"work on {name}")
    _git(work, "push", "origin", branch)
    _git(work, "checkout", "ralph/auth")
    return branch


@pytest.mark.git
@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestBranchIntegratorGit:
    def test_merges_and_pushes(self, git_repos):
        remote, work = git_repos
        branch = _push_sub_branch(work, "a", "models.py", "class User: ...\n")

        integrator = BranchIntegrator(GitClient(work), RalphPaths(work))
        assert integrator.merge(SPEC, branch) is MergeOutcome.MERGED

        log = _git(remote, "log", "--format=%s", "ralph/auth")
        assert f"Merge sub-spec {branch}" in log
        assert "work on a" in log

    def test_conflict_leaves_clean_tree(self, git_repos):
        remote, work = git_repos
        first = _push_sub_branch(work, "a", "app.py", "print('from a')\n")
        second = _push_sub_branch(work, "b", "app.py", "print('from b')\n")

        integrator = BranchIntegrator(GitClient(work), RalphPaths(work))
        assert integrator.merge(SPEC, first) is MergeOutcome.MERGED
        assert integrator.merge(SPEC, second) is MergeOutcome.CONFLICT

        assert not (work / ".git" / "MERGE_HEAD").exists()
        status = _git(work, "status", "--porcelain")
        assert "app.py" not in status
        assert (work / ".ralph" / "paused.md").is_file()
        assert "work on b" not in _git(remote, "log", "--format=%s", "ralph/auth")
        assert f"`{second}` into `ralph/auth`" in (work / ".ralph" / "paused.md").read_text(encoding="utf-8")
