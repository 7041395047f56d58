"""
Execution Unit Launcher.

Starts one detached container per sub-spec. The container clones the
target repository, checks out ``ralph/<spec>/<sub-spec>`` from the base
branch and runs the agent loop in ``full`` mode with an iteration
ceiling. Its internal behavior is opaque; the contract is "commits on
the sub-spec branch, exit 0 on success".

Every launched unit is returned as an :class:`ExecutionHandle`. The
handle is the only way the rest of the scheduler refers to a unit: the
waiter polls it, the scheduler destroys it, and :class:`UnitTracker`
stops whatever is still registered when the run is interrupted.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

from ralph.core.errors import LaunchError, RalphError
from ralph.core.logging import get_logger
from ralph.core.paths import (
    RalphPaths,
    container_name,
    spec_image_name,
    sub_spec_branch,
    to_docker_path,
)
from ralph.core.settings import RalphSettings
from ralph.deploy.container import ContainerManager
from ralph.parallel.models import ExecutionHandle, LaunchOptions
from ralph.tools.git import GitClient

logger = get_logger(__name__)

LIB_MOUNT_POINT = "/ralph-lib"
LOOP_SCRIPT = f"{LIB_MOUNT_POINT}/scripts/loop.sh"
EXECUTION_MODE = "full"


def build_loop_command(spec_id: str, iterations: int, verbose: bool = False) -> list[str]:
    cmd = ["bash", LOOP_SCRIPT, spec_id, EXECUTION_MODE, str(iterations)]
    if verbose:
        cmd.append("--verbose")
    return cmd


class UnitTracker:
    """Registry of execution units that are currently alive.

    The launcher adds a handle as soon as ``docker run`` succeeded and the
    scheduler discards it once the unit was destroyed. ``stop_all`` is the
    single cleanup routine used by the scheduler's ``finally`` block and by
    the CLI's ``atexit`` hook, so it must be safe to call twice.
    """

    def __init__(self) -> None:
        self._handles: dict[str, ExecutionHandle] = {}
        self._lock = threading.Lock()

    def add(self, handle: ExecutionHandle) -> None:
        with self._lock:
            self._handles[handle.container_name] = handle

    def discard(self, handle: ExecutionHandle) -> None:
        with self._lock:
            self._handles.pop(handle.container_name, None)

    def active(self) -> list[ExecutionHandle]:
        with self._lock:
            return list(self._handles.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def stop_all(self, stop: Callable[[ExecutionHandle], None]) -> list[ExecutionHandle]:
        """Call *stop* for every tracked unit and forget it. Returns the stopped handles."""
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            try:
                stop(handle)
            except RalphError as e:
                logger.error(
                    "unit.stop_failed",
                    sub_spec=handle.sub_spec,
                    container=handle.container_name,
                    error=str(e),
                )
        return handles


class ExecutionLauncher:
    """Launches and destroys execution units for one repository."""

    def __init__(
        self,
        paths: RalphPaths,
        containers: ContainerManager,
        git: GitClient,
        settings: RalphSettings,
        tracker: UnitTracker | None = None,
    ) -> None:
        self.paths = paths
        self.containers = containers
        self.git = git
        self.settings = settings
        self.tracker = tracker or UnitTracker()
        self._repo_url: str | None = None

    def repo_url(self) -> str:
        """Clone URL handed to every unit (resolved once per launcher)."""
        if self._repo_url is None:
            url = self.git.remote_url(self.settings.remote)
            if not url:
                raise LaunchError(
                    f"Could not determine URL of git remote '{self.settings.remote}'"
                )
            self._repo_url = url
        return self._repo_url

    def launch(self, spec_id: str, sub_spec: str, opts: LaunchOptions) -> ExecutionHandle:
        """Start the execution unit for *sub_spec*.

        Raises:
            LaunchError: The image could not be built, the remote URL is
                unknown, or ``docker run`` failed. The caller marks the
                node ``failed``.
        """
        name = container_name(self.paths.repo_slug, spec_id, sub_spec)
        branch = sub_spec_branch(spec_id, sub_spec, self.settings.branch_prefix)
        image = spec_image_name(self.paths.repo_slug, spec_id, self.settings.image_prefix)
        lib_dir = self.settings.resolved_lib_dir

        try:
            self.containers.ensure_image(image, lib_dir / "docker")
            repo_url = self.repo_url()
            # a unit left behind by an earlier attempt would block the name
            self.containers.remove_container(name)
            container_id = self.containers.run_detached(
                name,
                image,
                build_loop_command(spec_id, opts.iterations, opts.verbose),
                env={
                    "RALPH_REPO_URL": repo_url,
                    "RALPH_BRANCH": branch,
                    "RALPH_BASE_BRANCH": opts.base_branch,
                    "RALPH_SUBSPEC_NAME": sub_spec,
                    "RALPH_SUBSPEC_BRANCH": branch,
                },
                env_file=self.paths.env_file,
                volumes=[f"{to_docker_path(lib_dir)}:{LIB_MOUNT_POINT}:ro"],
                labels={"spec": spec_id, "subspec": sub_spec},
            )
        except LaunchError as e:
            raise e.with_context(
                spec_id=spec_id, sub_spec=sub_spec, branch=branch, container_name=name
            )

        handle = ExecutionHandle(
            sub_spec=sub_spec,
            container_name=name,
            branch=branch,
            container_id=container_id,
        )
        self.tracker.add(handle)
        logger.info("unit.launched", sub_spec=sub_spec, container=name, branch=branch)
        return handle

    def failure_logs(self, handle: ExecutionHandle, lines: int = 20) -> str:
        try:
            return self.containers.tail_logs(handle.container_name, lines)
        except RalphError:
            return ""

    def destroy(self, handle: ExecutionHandle) -> None:
        """Remove the unit regardless of its outcome."""
        try:
            self.containers.remove_container(handle.container_name)
        finally:
            self.tracker.discard(handle)

    def stop_all(self) -> list[ExecutionHandle]:
        """Stop every unit still registered with the tracker."""
        return self.tracker.stop_all(lambda h: self.containers.stop_container(h.container_name))


__all__ = [
    "ExecutionLauncher",
    "UnitTracker",
    "build_loop_command",
    "LIB_MOUNT_POINT",
    "LOOP_SCRIPT",
]
