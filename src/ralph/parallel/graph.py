"""
Dependency Graph Builder and Eligibility Evaluator.

The graph is a derived, in-memory view of the manifest. It is rebuilt
from the persisted manifest at the start of every scheduling cycle and
mutated only by the scheduler loop between await points.

Build rules:
    - a node's name is ``name`` or, failing that, ``id``
    - a node's dependencies are ``dependencies`` or, failing that, ``deps``
    - a missing ``status`` means ``pending``
    - every dependency must name a node of the same manifest

Eligibility:
    A node is eligible iff it is ``pending`` and every dependency is
    ``complete``. Eligible names come back in manifest order, so the
    scheduler prefers earlier nodes when there are more candidates than
    slots.

Example:
    graph = build_graph(manifest)
    batch = graph.eligible()[:3]
    if not batch and graph.pending():
        cycle = graph.find_cycle()
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any

from ralph.core.errors import MalformedManifestError, MissingDependencyError
from ralph.parallel.manifest import Manifest, entry_name
from ralph.parallel.models import GraphNode, SubSpecStatus

_DEP_KEYS = ("dependencies", "deps")


def _normalize_deps(entry: Mapping[str, Any], name: str, spec_id: str) -> list[str]:
    raw: Any = None
    for key in _DEP_KEYS:
        value = entry.get(key)
        # an explicit empty list wins over the other spelling
        if value is not None and value != "":
            raw = value
            break
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not all(isinstance(d, str) and d for d in raw):
        raise MalformedManifestError(
            f"Sub-spec '{name}' has invalid dependencies: {raw!r}", spec_id
        )
    # keep declaration order, drop duplicates
    return list(dict.fromkeys(raw))


def _normalize_status(entry: Mapping[str, Any], name: str, spec_id: str) -> SubSpecStatus:
    raw = entry.get("status") or SubSpecStatus.PENDING.value
    try:
        return SubSpecStatus(raw)
    except ValueError:
        raise MalformedManifestError(
            f"Sub-spec '{name}' has unknown status: {raw!r}", spec_id
        ) from None


class DependencyGraph:
    """Mapping of node name to :class:`GraphNode`, in manifest order."""

    def __init__(self, nodes: list[GraphNode]):
        self._nodes: dict[str, GraphNode] = {n.name: n for n in nodes}

    # ── Mapping-ish access ───────────────────────────────────────

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __getitem__(self, name: str) -> GraphNode:
        return self._nodes[name]

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def names(self) -> list[str]:
        return list(self._nodes)

    # ── Status ───────────────────────────────────────────────────

    def set_status(self, name: str, status: SubSpecStatus) -> None:
        self._nodes[name].status = status

    def statuses(self) -> dict[str, SubSpecStatus]:
        return {name: node.status for name, node in self._nodes.items()}

    def with_status(self, *statuses: SubSpecStatus) -> list[str]:
        return [n.name for n in self._nodes.values() if n.status in statuses]

    def pending(self) -> list[str]:
        return self.with_status(SubSpecStatus.PENDING)

    def in_progress(self) -> list[str]:
        return self.with_status(SubSpecStatus.IN_PROGRESS)

    def count(self, status: SubSpecStatus) -> int:
        return sum(1 for n in self._nodes.values() if n.status is status)

    @property
    def complete_count(self) -> int:
        return self.count(SubSpecStatus.COMPLETE)

    def is_complete(self) -> bool:
        return all(n.status is SubSpecStatus.COMPLETE for n in self._nodes.values())

    # ── Scheduling queries ───────────────────────────────────────

    def eligible(self) -> list[str]:
        """Pending nodes whose dependencies are all complete, in manifest order."""
        return [
            node.name
            for node in self._nodes.values()
            if node.status is SubSpecStatus.PENDING
            and all(self._nodes[dep].status is SubSpecStatus.COMPLETE for dep in node.deps)
        ]

    def blocked_by(self, name: str) -> list[str]:
        """Dependencies of *name* that are not complete."""
        return [dep for dep in self._nodes[name].deps if self._nodes[dep].status is not SubSpecStatus.COMPLETE]

    def find_cycle(self) -> list[str] | None:
        """Return one dependency cycle among non-complete nodes, or ``None``.

        Depth-first search with three-color marking:
        - WHITE (0): Unvisited
        - GRAY (1): On the current path
        - BLACK (2): Finished

        Reaching a GRAY node closes a cycle. Complete nodes cannot take
        part in a cycle that blocks scheduling, so they are skipped.
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        candidates = {
            n.name for n in self._nodes.values() if n.status is not SubSpecStatus.COMPLETE
        }
        color = {name: WHITE for name in candidates}
        path: list[str] = []

        def dfs(node: str) -> list[str] | None:
            color[node] = GRAY
            path.append(node)
            for neighbor in self._nodes[node].deps:
                if neighbor not in candidates:
                    continue
                if color[neighbor] == GRAY:
                    start = path.index(neighbor)
                    return path[start:] + [neighbor]
                if color[neighbor] == WHITE:
                    found = dfs(neighbor)
                    if found:
                        return found
            color[node] = BLACK
            path.pop()
            return None

        for name in self._nodes:
            if name in candidates and color[name] == WHITE:
                cycle = dfs(name)
                if cycle:
                    return cycle
        return None


def build_graph(manifest: Manifest) -> DependencyGraph:
    """Convert *manifest* into a :class:`DependencyGraph`.

    Pure: the manifest is not modified, and the same manifest always
    yields an equivalent graph.

    Raises:
        MalformedManifestError: An entry has no name, a duplicate name,
            invalid dependencies or an unknown status.
        MissingDependencyError: A dependency names a node that does not exist.
    """
    spec_id = manifest.spec_id
    nodes: list[GraphNode] = []
    seen: set[str] = set()

    for index, entry in enumerate(manifest.data.get(manifest.entries_key, [])):
        name = entry_name(entry)
        if name is None:
            raise MalformedManifestError(
                f"Sub-spec entry #{index} has no 'name' or 'id'", spec_id
            )
        if name in seen:
            raise MalformedManifestError(f"Duplicate sub-spec name: '{name}'", spec_id)
        seen.add(name)
        nodes.append(
            GraphNode(
                name=name,
                deps=_normalize_deps(entry, name, spec_id),
                status=_normalize_status(entry, name, spec_id),
            )
        )

    for node in nodes:
        missing = [dep for dep in node.deps if dep not in seen]
        if missing:
            raise MissingDependencyError(node.name, missing, spec_id)

    return DependencyGraph(nodes)


__all__ = ["DependencyGraph", "build_graph"]
