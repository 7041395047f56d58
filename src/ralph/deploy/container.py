"""Container lifecycle management for ralph execution units.

Manages execution-unit containers via the ``docker`` CLI (subprocess).
No ``docker-py`` dependency: any runtime that exposes a ``docker``
compatible CLI (Docker Desktop, Podman, Colima) works.

Key Concepts:
    ContainerManager: ``ensure_image()``, ``run_detached()``,
        ``inspect_state()``, ``tail_logs()``, ``stop_container()``,
        ``remove_container()``, ``cleanup()``.
    ContainerState: Lifecycle status + exit code from ``docker inspect``.
    DockerNotFoundError: Raised when ``docker`` is not on PATH.
    ContainerCommandError: Raised when a docker command fails or times out.

Architecture Decisions:
    - subprocess, not docker-py: works with any container runtime
      exposing a ``docker`` CLI.
    - Label-based tracking: every unit gets ``ralph.spec`` and
      ``ralph.subspec`` labels so ``cleanup()`` can find orphans left by
      a crashed orchestrator.
    - Deterministic names: the caller names containers, so a stale unit
      with the same name is simply removed before relaunch.

Tags:
    container, docker, lifecycle, subprocess, cleanup
"""

from __future__ import annotations

import json
import shlex
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph.core.errors import ContainerCommandError, DockerNotFoundError
from ralph.core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_STATES = frozenset({"exited", "dead"})


@dataclass(frozen=True)
class ContainerState:
    """Lifecycle state of a container as reported by ``docker inspect``."""

    status: str
    exit_code: int

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class ContainerManager:
    """Manages execution-unit containers.

    Parameters
    ----------
    label_prefix
        Label prefix for container identification (``ralph`` gives
        ``ralph.spec=...`` / ``ralph.subspec=...``).
    timeout
        Timeout in seconds for individual docker commands. Image builds
        run without a timeout.

    Example::

        mgr = ContainerManager()
        mgr.ensure_image("ralph-wiggum-app-auth", Path("lib/docker"))
        mgr.run_detached("ralph-app-auth-01-models", "ralph-wiggum-app-auth", ["bash", "..."])
        state = mgr.inspect_state("ralph-app-auth-01-models")
    """

    def __init__(self, label_prefix: str = "ralph", timeout: int = 600) -> None:
        self.label_prefix = label_prefix
        self.timeout = timeout
        self._docker_cmd = self._find_docker()

    # ------------------------------------------------------------------
    # Docker CLI discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _find_docker() -> str:
        docker = shutil.which("docker")
        if docker is None:
            raise DockerNotFoundError(
                "Docker CLI not found on PATH. Install Docker or add it to PATH.\n"
                "  - Linux:   https://docs.docker.com/engine/install/\n"
                "  - macOS:   https://docs.docker.com/desktop/install/mac-install/\n"
                "  - Windows: https://docs.docker.com/desktop/install/windows-install/"
            )
        return docker

    @staticmethod
    def is_docker_available() -> bool:
        """Check if Docker is installed and the daemon is running."""
        docker = shutil.which("docker")
        if docker is None:
            return False
        try:
            result = subprocess.run([docker, "info"], capture_output=True, timeout=10)
            return result.returncode == 0
        except (subprocess.TimeoutExpired, OSError):
            return False

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def image_exists(self, image: str) -> bool:
        result = self._run_docker(["image", "inspect", image], check=False)
        return result.returncode == 0

    def build_image(self, image: str, context_dir: Path) -> None:
        """Build *image* from *context_dir* (blocking, potentially slow)."""
        logger.info("image.build_started", image=image, context=str(context_dir))
        self._run_docker(["build", "-t", image, str(context_dir)], unbounded=True)
        logger.info("image.built", image=image)

    def ensure_image(self, image: str, context_dir: Path) -> bool:
        """Build *image* if absent. Returns True when a build happened."""
        if self.image_exists(image):
            return False
        self.build_image(image, context_dir)
        return True

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def run_detached(
        self,
        name: str,
        image: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        env_file: Path | None = None,
        volumes: Sequence[str] = (),
        labels: Mapping[str, str] | None = None,
    ) -> str:
        """Start a detached container and return its short id."""
        cmd = ["run", "--detach", "--name", name]
        if env_file is not None:
            cmd.extend(["--env-file", str(env_file)])
        for volume in volumes:
            cmd.extend(["-v", volume])
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        for key, value in (labels or {}).items():
            cmd.extend(["--label", f"{self.label_prefix}.{key}={value}"])
        cmd.append(image)
        cmd.extend(command)

        result = self._run_docker(cmd)
        container_id = result.stdout.strip()[:12]
        logger.info("container.started", container=name, image=image, container_id=container_id)
        return container_id

    def inspect_state(self, name: str) -> ContainerState | None:
        """Current state of *name*, or ``None`` if the container does not exist."""
        result = self._run_docker(
            ["inspect", "--format", "{{.State.Status}} {{.State.ExitCode}}", name],
            check=False,
        )
        if result.returncode != 0:
            return None
        parts = result.stdout.strip().split()
        if len(parts) != 2:
            return None
        status, exit_code = parts
        try:
            return ContainerState(status=status, exit_code=int(exit_code))
        except ValueError:
            return None

    def tail_logs(self, name: str, lines: int = 20) -> str:
        result = self._run_docker(["logs", "--tail", str(lines), name], check=False)
        return (result.stdout or "") + (result.stderr or "")

    def stop_container(self, name: str, timeout: int = 10) -> None:
        """Stop and remove a container (ignores errors)."""
        self._run_docker(["stop", "--time", str(timeout), name], check=False)
        self.remove_container(name)
        logger.info("container.stopped", container=name)

    def remove_container(self, name: str) -> None:
        """Force-remove a container (ignores errors, e.g. when it does not exist)."""
        self._run_docker(["rm", "--force", name], check=False)
        logger.debug("container.removed", container=name)

    def list_containers(self, labels: Mapping[str, str] | None = None) -> list[dict[str, Any]]:
        """List ralph containers, optionally filtered by label values."""
        cmd = ["ps", "--all", "--format", "{{json .}}"]
        if labels:
            for key, value in labels.items():
                cmd.extend(["--filter", f"label={self.label_prefix}.{key}={value}"])
        else:
            cmd.extend(["--filter", f"label={self.label_prefix}.spec"])

        result = self._run_docker(cmd, check=False)
        containers = []
        for line in result.stdout.strip().splitlines():
            if not line.strip():
                continue
            try:
                containers.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("container.list_unparseable", line=line)
        return containers

    def cleanup(self, labels: Mapping[str, str] | None = None) -> list[str]:
        """Force-remove every labelled container. Returns the removed names."""
        removed = []
        for container in self.list_containers(labels):
            name = container.get("Names", "")
            if not name:
                continue
            self.remove_container(name)
            removed.append(name)
        if removed:
            logger.info("cleanup.complete", containers_removed=len(removed))
        return removed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run_docker(
        self,
        args: list[str],
        check: bool = True,
        unbounded: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run a docker CLI command (``unbounded`` disables the timeout)."""
        effective_timeout = None if unbounded else self.timeout
        cmd = [self._docker_cmd, *args]
        cmd_str = shlex.join(cmd)
        logger.debug("docker.exec", cmd=cmd_str)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ContainerCommandError(
                f"Docker command timed out after {effective_timeout}s: {' '.join(args)}",
                command=cmd_str,
                cause=exc,
            ) from exc
        except OSError as exc:
            raise ContainerCommandError(
                f"Docker command could not be executed: {' '.join(args)}",
                command=cmd_str,
                cause=exc,
            ) from exc
        if check and result.returncode != 0:
            raise ContainerCommandError(
                f"Docker command failed (exit {result.returncode}): "
                f"{' '.join(args)}\n{result.stderr}",
                command=cmd_str,
                returncode=result.returncode,
            )
        return result


__all__ = ["ContainerManager", "ContainerState", "TERMINAL_STATES"]
