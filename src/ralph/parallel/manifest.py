"""Manifest Store: durable sub-spec graph and per-node status.

The manifest is produced by the external ``ralph decompose`` step at
``.ralph/specs/<spec>/manifest.json``::

    {
      "sub_specs": [
        {"name": "01-models", "dependencies": [], "status": "pending"},
        {"name": "02-api", "dependencies": ["01-models"], "status": "pending"}
      ],
      "progress": {"complete": 0, "total": 2}
    }

The store keeps the document as loaded (field spellings, unknown keys,
entry order) and only rewrites ``status`` values and the ``progress``
counts. Writes go to a temporary file in the same directory that is
fsynced and renamed over the target, so a reader never sees a partial
document.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph.core.errors import MalformedManifestError, ManifestNotFoundError, PersistenceError
from ralph.core.logging import get_logger
from ralph.core.paths import RalphPaths
from ralph.parallel.models import SubSpecStatus

logger = get_logger(__name__)

# Both spellings are emitted by different versions of the decompose prompt.
_ENTRY_KEYS = ("sub_specs", "subSpecs")
_NAME_KEYS = ("name", "id")


def entry_name(entry: Mapping[str, Any]) -> str | None:
    """Name of a manifest entry under either accepted spelling."""
    for key in _NAME_KEYS:
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    return None


@dataclass
class Manifest:
    """A loaded manifest document."""

    spec_id: str
    data: dict[str, Any]

    @property
    def entries_key(self) -> str:
        for key in _ENTRY_KEYS:
            if key in self.data:
                return key
        return _ENTRY_KEYS[0]

    @property
    def entries(self) -> list[dict[str, Any]]:
        return self.data.setdefault(self.entries_key, [])

    def apply_statuses(self, statuses: Mapping[str, SubSpecStatus]) -> None:
        """Write graph statuses back into the matching entries."""
        for entry in self.entries:
            name = entry_name(entry)
            if name is not None and name in statuses:
                entry["status"] = statuses[name].value

        progress = self.data.get("progress")
        if isinstance(progress, dict):
            progress["complete"] = sum(1 for s in statuses.values() if s is SubSpecStatus.COMPLETE)
            progress["total"] = len(self.entries)

    def to_json(self) -> str:
        return json.dumps(self.data, indent=2) + "\n"


class ManifestStore:
    """Loads and atomically saves manifests under ``.ralph/specs``."""

    TMP_SUFFIX = ".tmp"

    def __init__(self, paths: RalphPaths) -> None:
        self.paths = paths

    def path_for(self, spec_id: str) -> Path:
        return self.paths.manifest_path(spec_id)

    def exists(self, spec_id: str) -> bool:
        return self.path_for(spec_id).is_file()

    def load(self, spec_id: str) -> Manifest:
        """Load the manifest for *spec_id*.

        Raises:
            ManifestNotFoundError: No manifest exists (decomposition never ran).
            MalformedManifestError: The file is not a JSON object with a list of entries.
        """
        path = self.path_for(spec_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ManifestNotFoundError(spec_id, str(self.paths.relative(path))) from None
        except OSError as exc:
            raise MalformedManifestError(f"Cannot read manifest {path}: {exc}", spec_id, cause=exc) from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedManifestError(f"Manifest {path} is not valid JSON: {exc}", spec_id, cause=exc) from exc

        if not isinstance(data, dict):
            raise MalformedManifestError(f"Manifest {path} must be a JSON object", spec_id)
        manifest = Manifest(spec_id=spec_id, data=data)
        entries = data.get(manifest.entries_key, [])
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise MalformedManifestError(
                f"Manifest {path}: '{manifest.entries_key}' must be a list of objects", spec_id
            )

        logger.debug("manifest.loaded", spec=spec_id, entries=len(entries))
        return manifest

    def save(self, manifest: Manifest) -> Path:
        """Atomically replace the manifest file.

        Raises:
            PersistenceError: The document could not be written; the
                previous file is left untouched.
        """
        path = self.path_for(manifest.spec_id)
        content = manifest.to_json().encode("utf-8")
        try:
            self._atomic_write(path, content)
        except OSError as exc:
            raise PersistenceError(
                f"Failed to write manifest {path}: {exc}", cause=exc
            ).with_context(spec_id=manifest.spec_id) from exc
        logger.debug("manifest.saved", spec=manifest.spec_id, path=str(path))
        return path

    def _atomic_write(self, path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path_str = tempfile.mkstemp(
            suffix=self.TMP_SUFFIX,
            prefix=path.name + ".",
            dir=path.parent,
        )
        tmp_path = Path(tmp_path_str)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise


__all__ = ["Manifest", "ManifestStore", "entry_name"]
