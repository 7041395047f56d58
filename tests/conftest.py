"""
Shared pytest fixtures for ralph tests.

This module provides:
- Settings / logging context cleanup for test isolation
- A temporary repository with an initialized ``.ralph`` layout
- Manifest writers
- In-memory fakes of the scheduler collaborators (launcher, waiter,
  integrator, checkpointer) so the scheduler runs without Docker or git

Usage:
    def test_something(ralph_repo, write_manifest):
        write_manifest("auth", [{"name": "a"}, {"name": "b", "dependencies": ["a"]}])
"""

from __future__ import annotations

import json
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import structlog

from ralph.core.errors import LaunchError
from ralph.core.logging import clear_context
from ralph.core.paths import RalphPaths
from ralph.core.settings import clear_settings_cache
from ralph.parallel.manifest import ManifestStore
from ralph.parallel.models import (
    ExecutionHandle,
    LaunchOptions,
    MergeOutcome,
    UnitResult,
)

SPEC = "auth"


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop cached settings, RALPH_* env vars, log context and logging config."""
    import os

    for key in list(os.environ):
        if key.startswith("RALPH_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    clear_context()
    yield
    clear_settings_cache()
    clear_context()
    structlog.reset_defaults()


# =============================================================================
# Repository layout
# =============================================================================


@pytest.fixture
def ralph_repo(tmp_path: Path) -> Path:
    """Repository with ``.ralph/``, ``.ralph/.env`` and ``.ralph/specs/auth.md``."""
    repo = tmp_path / "my-app"
    specs = repo / ".ralph" / "specs"
    specs.mkdir(parents=True)
    (repo / ".ralph" / ".env").write_text("ANTHROPIC_API_KEY=test\n", encoding="utf-8")
    (specs / f"{SPEC}.md").write_text("# Auth\n", encoding="utf-8")
    return repo


@pytest.fixture
def paths(ralph_repo: Path) -> RalphPaths:
    return RalphPaths(ralph_repo)


@pytest.fixture
def store(paths: RalphPaths) -> ManifestStore:
    return ManifestStore(paths)


@pytest.fixture
def write_manifest(paths: RalphPaths) -> Callable[..., Path]:
    """Write ``.ralph/specs/<spec>/manifest.json`` from a list of entries."""

    def _write(
        spec_id: str,
        entries: list[dict[str, Any]],
        key: str = "sub_specs",
        progress: bool = True,
    ) -> Path:
        data: dict[str, Any] = {key: entries}
        if progress:
            data["progress"] = {"complete": 0, "total": len(entries)}
        path = paths.manifest_path(spec_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path

    return _write


def read_statuses(paths: RalphPaths, spec_id: str = SPEC) -> dict[str, str]:
    data = json.loads(paths.manifest_path(spec_id).read_text(encoding="utf-8"))
    entries = data.get("sub_specs") or data.get("subSpecs") or []
    return {(e.get("name") or e.get("id")): e.get("status", "pending") for e in entries}


# =============================================================================
# Scheduler fakes
# =============================================================================


class FakeLauncher:
    """Records launches; optionally fails specific sub-specs."""

    def __init__(self, fail: set[str] | None = None) -> None:
        self.fail = fail or set()
        self.launched: list[str] = []
        self.destroyed: list[str] = []
        self.stopped: list[str] = []
        self.live: dict[str, ExecutionHandle] = {}
        self.max_live = 0
        self.options: list[LaunchOptions] = []

    def launch(self, spec_id: str, sub_spec: str, opts: LaunchOptions) -> ExecutionHandle:
        if sub_spec in self.fail:
            raise LaunchError(f"docker run failed for {sub_spec}")
        handle = ExecutionHandle(
            sub_spec=sub_spec,
            container_name=f"ralph-my-app-{spec_id}-{sub_spec}",
            branch=f"ralph/{spec_id}/{sub_spec}",
        )
        self.launched.append(sub_spec)
        self.options.append(opts)
        self.live[handle.container_name] = handle
        self.max_live = max(self.max_live, len(self.live))
        return handle

    def destroy(self, handle: ExecutionHandle) -> None:
        self.destroyed.append(handle.sub_spec)
        self.live.pop(handle.container_name, None)

    def failure_logs(self, handle: ExecutionHandle, lines: int = 20) -> str:
        return f"last {lines} lines of {handle.container_name}"

    def stop_all(self) -> list[ExecutionHandle]:
        handles = list(self.live.values())
        self.stopped.extend(h.sub_spec for h in handles)
        self.live.clear()
        return handles


class FakeWaiter:
    """Returns configured exit codes (default 0), in reverse launch order."""

    def __init__(self, exit_codes: dict[str, int] | None = None) -> None:
        self.exit_codes = exit_codes or {}
        self.batches: list[list[str]] = []

    async def wait_all(self, handles: list[ExecutionHandle]) -> list[UnitResult]:
        self.batches.append([h.sub_spec for h in handles])
        return [
            UnitResult(handle=h, exit_code=self.exit_codes.get(h.sub_spec, 0))
            for h in reversed(handles)
        ]


class FakeIntegrator:
    def __init__(self, conflicts: set[str] | None = None) -> None:
        self.conflicts = conflicts or set()
        self.merged: list[str] = []

    def merge(self, spec_id: str, sub_spec_branch: str) -> MergeOutcome:
        sub_spec = sub_spec_branch.rsplit("/", 1)[-1]
        if sub_spec in self.conflicts:
            return MergeOutcome.CONFLICT
        self.merged.append(sub_spec)
        return MergeOutcome.MERGED


class FakeCheckpointer:
    def __init__(self) -> None:
        self.checkpoints: list[tuple[int, int]] = []

    def checkpoint(self, spec_id: str, complete: int, total: int) -> bool:
        self.checkpoints.append((complete, total))
        return True


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def fake_waiter() -> FakeWaiter:
    return FakeWaiter()


@pytest.fixture
def fake_integrator() -> FakeIntegrator:
    return FakeIntegrator()


@pytest.fixture
def fake_checkpointer() -> FakeCheckpointer:
    return FakeCheckpointer()
