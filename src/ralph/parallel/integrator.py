"""
Branch Integrator and manifest checkpoint.

Merge algorithm for a finished sub-spec::

    git fetch <remote>
    git checkout ralph/<spec>
    git pull <remote> ralph/<spec>
    git merge --no-ff <remote>/ralph/<spec>/<sub> -m "Merge sub-spec ..."
    git push <remote> ralph/<spec>

Any failing step is a *conflict*: the merge is aborted to restore a
clean working tree, a human-readable record is written to
``.ralph/paused.md`` and :attr:`MergeOutcome.CONFLICT` is returned. The
integrator never force-pushes and never deletes a branch.
"""

from __future__ import annotations

from dataclasses import dataclass

from ralph.core.errors import GitCommandError
from ralph.core.logging import get_logger
from ralph.core.paths import RalphPaths, target_branch
from ralph.parallel.models import MergeOutcome
from ralph.tools.git import GitClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConflictRecord:
    """A failed integration of *source* into *target*."""

    source: str
    target: str
    remote: str = "origin"
    error: str = ""

    def to_markdown(self) -> str:
        lines = [
            "# Merge Conflict",
            "",
            f"Failed to merge `{self.source}` into `{self.target}`.",
            "",
            "## To resolve:",
            "```bash",
            f"git checkout {self.target}",
            f"git merge {self.remote}/{self.source}",
            "# resolve conflicts",
            "git add . && git commit",
            f"git push {self.remote} {self.target}",
            "```",
        ]
        if self.error:
            lines += ["", "## Git output", "```", self.error.strip(), "```"]
        return "\n".join(lines) + "\n"


class BranchIntegrator:
    """Merges sub-spec branches into the shared ``ralph/<spec>`` branch."""

    def __init__(
        self,
        git: GitClient,
        paths: RalphPaths,
        remote: str = "origin",
        branch_prefix: str = "ralph",
    ) -> None:
        self.git = git
        self.paths = paths
        self.remote = remote
        self.branch_prefix = branch_prefix
        self.conflicts: list[ConflictRecord] = []

    def merge(self, spec_id: str, sub_spec_branch: str) -> MergeOutcome:
        """Merge *sub_spec_branch* into the spec's shared branch.

        Never raises for git failures; they are reported as a conflict.
        """
        target = target_branch(spec_id, self.branch_prefix)
        try:
            self.git.fetch(self.remote)
            self.git.checkout(target)
            self.git.pull(self.remote, target)
            self.git.merge_no_ff(
                f"{self.remote}/{sub_spec_branch}",
                message=f"Merge sub-spec {sub_spec_branch}",
            )
            self.git.push(self.remote, target)
        except GitCommandError as e:
            logger.warning(
                "merge.conflict",
                spec=spec_id,
                branch=sub_spec_branch,
                target=target,
                command=e.context.command,
            )
            self._abort_merge()
            self.record_conflict(
                ConflictRecord(
                    source=sub_spec_branch,
                    target=target,
                    remote=self.remote,
                    error=e.output or e.message,
                )
            )
            return MergeOutcome.CONFLICT

        logger.info("merge.succeeded", spec=spec_id, branch=sub_spec_branch, target=target)
        return MergeOutcome.MERGED

    def _abort_merge(self) -> None:
        try:
            self.git.merge_abort()
        except GitCommandError as e:
            # nothing to abort when an earlier step failed
            logger.debug("merge.abort_failed", error=e.message)

    def record_conflict(self, record: ConflictRecord) -> None:
        """Rewrite the conflict file with every conflict of this run."""
        self.conflicts.append(record)
        content = "\n---\n\n".join(r.to_markdown() for r in self.conflicts)
        path = self.paths.conflict_record
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.error("merge.conflict_record_failed", path=str(path), error=str(e))
            return
        logger.info("merge.conflict_recorded", path=str(path), conflicts=len(self.conflicts))


class ManifestCheckpointer:
    """Commits and pushes the manifest as an auditable checkpoint.

    Failures are logged and swallowed: the in-memory graph stays
    authoritative for the rest of the run.
    """

    def __init__(
        self,
        git: GitClient,
        paths: RalphPaths,
        remote: str = "origin",
        branch_prefix: str = "ralph",
    ) -> None:
        self.git = git
        self.paths = paths
        self.remote = remote
        self.branch_prefix = branch_prefix

    def checkpoint(self, spec_id: str, complete: int, total: int) -> bool:
        manifest = self.paths.relative(self.paths.manifest_path(spec_id))
        target = target_branch(spec_id, self.branch_prefix)
        try:
            self.git.add(manifest)
            self.git.commit(f"Update manifest: {complete}/{total} sub-specs complete")
            self.git.push(self.remote, target)
        except GitCommandError as e:
            logger.warning(
                "manifest.checkpoint_failed",
                spec=spec_id,
                command=e.context.command,
                error=e.message,
            )
            return False
        logger.info("manifest.checkpointed", spec=spec_id, complete=complete, total=total)
        return True


__all__ = ["BranchIntegrator", "ConflictRecord", "ManifestCheckpointer"]
