"""
Well-known filesystem layout and deterministic naming.

Everything ralph persists lives under ``<repo>/.ralph``::

    .ralph/
    ├── .env                          # credentials passed to every unit
    ├── paused.md                     # merge conflict record
    └── specs/
        ├── <spec>.md                 # the spec itself
        └── <spec>/
            ├── manifest.json         # sub-spec graph + statuses
            └── .parallel.lock        # held while parallel-full runs

Container, image and branch names are pure functions of the repo, spec
and sub-spec names, so a relaunch after a crash finds (and replaces) the
stale unit by name.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from pathlib import Path

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9-]")


def slugify(value: str) -> str:
    """Lower-case *value* and replace every character outside ``[a-z0-9-]`` with ``-``."""
    return _UNSAFE_NAME_CHARS.sub("-", value.lower())


def to_docker_path(path: Path | str, platform: str | None = None) -> str:
    """Convert a Windows path (``C:\\x\\y``) to docker mount form (``/c/x/y``)."""
    platform = platform or sys.platform
    raw = str(path)
    if not platform.startswith("win"):
        return raw
    raw = raw.replace("\\", "/")
    return re.sub(r"^([A-Za-z]):", lambda m: f"/{m.group(1).lower()}", raw)


@dataclass(frozen=True)
class RalphPaths:
    """Filesystem layout of an initialized repository."""

    repo_dir: Path

    @classmethod
    def from_cwd(cls) -> RalphPaths:
        return cls(Path.cwd())

    @property
    def ralph_dir(self) -> Path:
        return self.repo_dir / ".ralph"

    @property
    def specs_dir(self) -> Path:
        return self.ralph_dir / "specs"

    @property
    def env_file(self) -> Path:
        return self.ralph_dir / ".env"

    @property
    def conflict_record(self) -> Path:
        return self.ralph_dir / "paused.md"

    @property
    def repo_slug(self) -> str:
        return slugify(self.repo_dir.name)

    def is_initialized(self) -> bool:
        return self.ralph_dir.is_dir()

    def spec_file(self, spec_id: str) -> Path:
        return self.specs_dir / f"{spec_id}.md"

    def spec_dir(self, spec_id: str) -> Path:
        return self.specs_dir / spec_id

    def manifest_path(self, spec_id: str) -> Path:
        return self.spec_dir(spec_id) / "manifest.json"

    def lock_path(self, spec_id: str) -> Path:
        return self.spec_dir(spec_id) / ".parallel.lock"

    def relative(self, path: Path) -> str:
        """*path* relative to the repo root, POSIX separators (for git pathspecs)."""
        return path.relative_to(self.repo_dir).as_posix()

    def available_specs(self) -> list[str]:
        if not self.specs_dir.is_dir():
            return []
        return sorted(
            p.stem
            for p in self.specs_dir.glob("*.md")
            if p.name not in ("active.md", "sample.md")
        )


# ── Deterministic names ─────────────────────────────────────────────────


def image_name(repo_slug: str, prefix: str = "ralph-wiggum") -> str:
    return f"{prefix}-{repo_slug}"


def spec_image_name(repo_slug: str, spec_id: str, prefix: str = "ralph-wiggum") -> str:
    """Per-spec background image used by parallel execution units."""
    return f"{image_name(repo_slug, prefix)}-{slugify(spec_id)}"


def container_name(repo_slug: str, spec_id: str, sub_spec: str) -> str:
    return slugify(f"ralph-{repo_slug}-{slugify(spec_id)}-{slugify(sub_spec)}")


def target_branch(spec_id: str, prefix: str = "ralph") -> str:
    """Shared branch every sub-spec is merged into."""
    return f"{prefix}/{spec_id}"


def sub_spec_branch(spec_id: str, sub_spec: str, prefix: str = "ralph") -> str:
    return f"{prefix}/{spec_id}/{sub_spec}"


__all__ = [
    "RalphPaths",
    "slugify",
    "to_docker_path",
    "image_name",
    "spec_image_name",
    "container_name",
    "target_branch",
    "sub_spec_branch",
]
