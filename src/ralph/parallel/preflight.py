"""Checks run before a scheduler run starts. Every failure is fatal to the run."""

from __future__ import annotations

from collections.abc import Callable

from ralph.core.errors import (
    DockerNotFoundError,
    EnvFileMissingError,
    ManifestNotFoundError,
    NotInitializedError,
    SpecNotFoundError,
)
from ralph.core.paths import RalphPaths
from ralph.deploy.container import ContainerManager


def run_preflight(
    paths: RalphPaths,
    spec_id: str,
    docker_available: Callable[[], bool] = ContainerManager.is_docker_available,
) -> None:
    """Validate the repository layout for *spec_id*.

    Raises:
        NotInitializedError: ``.ralph/`` is missing.
        SpecNotFoundError: ``.ralph/specs/<spec>.md`` is missing.
        ManifestNotFoundError: The spec was never decomposed.
        EnvFileMissingError: ``.ralph/.env`` is missing.
        DockerNotFoundError: Docker is not installed or not running.
    """
    if not paths.is_initialized():
        raise NotInitializedError(".ralph/")

    spec_file = paths.spec_file(spec_id)
    if not spec_file.is_file():
        raise SpecNotFoundError(spec_id, paths.relative(spec_file))

    manifest = paths.manifest_path(spec_id)
    if not manifest.is_file():
        raise ManifestNotFoundError(spec_id, paths.relative(manifest))

    if not paths.env_file.is_file():
        raise EnvFileMissingError(paths.relative(paths.env_file))

    if not docker_available():
        raise DockerNotFoundError(
            "Docker is not available. Install Docker and make sure the daemon is running."
        )


__all__ = ["run_preflight"]
