"""Git operations via the ``git`` CLI.

All calls go through :meth:`GitClient._run`, which raises
:class:`~ralph.core.errors.GitCommandError` on a non-zero exit, a timeout
or a missing ``git`` binary. Callers that treat a failure as an expected
outcome (the branch integrator, the manifest checkpoint) catch that one
exception type.

Usage::

    git = GitClient(Path("."))
    git.fetch("origin")
    git.checkout("ralph/auth")
    git.merge_no_ff("origin/ralph/auth/01-models", message="Merge sub-spec ...")
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

from ralph.core.errors import GitCommandError
from ralph.core.logging import get_logger

logger = get_logger(__name__)

_GITHUB_SSH_PREFIX = "git@github.com:"
_GITHUB_HTTPS_PREFIX = "https://github.com/"


def normalize_remote_url(url: str) -> str:
    """Rewrite GitHub SSH remotes to HTTPS so a container can clone them with a token."""
    if url.startswith(_GITHUB_SSH_PREFIX):
        return _GITHUB_HTTPS_PREFIX + url[len(_GITHUB_SSH_PREFIX):]
    return url


class GitClient:
    """Runs git commands against one working tree."""

    def __init__(self, repo_dir: Path, timeout: int = 120, git_cmd: str = "git") -> None:
        self.repo_dir = repo_dir
        self.timeout = timeout
        self._git_cmd = git_cmd

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_repo(self) -> bool:
        try:
            self._run(["rev-parse", "--git-dir"])
        except GitCommandError:
            return False
        return True

    def remote_url(self, remote: str = "origin") -> str | None:
        """URL of *remote*, or ``None`` when it is not configured."""
        try:
            result = self._run(["remote", "get-url", remote])
        except GitCommandError:
            return None
        url = result.stdout.strip()
        return normalize_remote_url(url) if url else None

    def current_branch(self, default: str = "main") -> str:
        try:
            result = self._run(["branch", "--show-current"])
        except GitCommandError:
            return default
        return result.stdout.strip() or default

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def fetch(self, remote: str = "origin") -> None:
        self._run(["fetch", remote])

    def checkout(self, branch: str) -> None:
        self._run(["checkout", branch])

    def pull(self, remote: str, branch: str) -> None:
        self._run(["pull", remote, branch])

    def merge_no_ff(self, ref: str, message: str) -> None:
        self._run(["merge", "--no-ff", ref, "-m", message])

    def merge_abort(self) -> None:
        self._run(["merge", "--abort"])

    def push(self, remote: str, branch: str) -> None:
        self._run(["push", remote, branch])

    def add(self, *paths: str) -> None:
        self._run(["add", "--", *paths])

    def commit(self, message: str) -> None:
        self._run(["commit", "-m", message])

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [self._git_cmd, *args]
        cmd_str = shlex.join(cmd)
        logger.debug("git.exec", cmd=cmd_str, cwd=str(self.repo_dir))
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.repo_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(
                f"git command timed out after {self.timeout}s: {cmd_str}",
                command=cmd_str,
                cause=exc,
            ) from exc
        except OSError as exc:
            raise GitCommandError(
                f"git command could not be executed: {cmd_str}",
                command=cmd_str,
                cause=exc,
            ) from exc

        if result.returncode != 0:
            output = (result.stdout or "") + (result.stderr or "")
            raise GitCommandError(
                f"git command failed (exit {result.returncode}): {cmd_str}\n{output.strip()}",
                command=cmd_str,
                returncode=result.returncode,
                output=output,
            )
        return result


__all__ = ["GitClient", "normalize_remote_url"]
