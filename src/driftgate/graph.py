from __future__ import annotations

import heapq
import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from pydantic import ValidationError

from .errors import CycleDetected, DuplicateIdentifier, ManifestError, UnresolvedDependency
from .models import ResourceDeclaration, ResourceNode

logger = logging.getLogger(__name__)

DeclarationInput = ResourceDeclaration | Mapping[str, Any]


def stable_topological_order(dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Kahn's algorithm with lexical tie-breaking.

    ``dependencies`` maps each identifier to the identifiers it depends on;
    dependencies outside the mapping are ignored.  Among nodes whose
    prerequisites are all satisfied the lexically smallest is emitted first,
    so the order is a pure function of the graph.

    Raises:
        CycleDetected: With the identifiers that could not be ordered.
    """
    indegree = {node: 0 for node in dependencies}
    edges: dict[str, list[str]] = defaultdict(list)
    for node, deps in dependencies.items():
        for dep in set(deps):
            if dep not in indegree:
                continue
            indegree[node] += 1
            edges[dep].append(node)

    ready = [node for node, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        current = heapq.heappop(ready)
        ordered.append(current)
        for nxt in edges[current]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(ready, nxt)

    if len(ordered) != len(indegree):
        stuck = sorted(node for node, degree in indegree.items() if degree > 0)
        raise CycleDetected(stuck)
    return ordered


@dataclass(frozen=True)
class ResourceGraph:
    """Validated, ranked dependency graph of desired resources."""

    nodes: Mapping[str, ResourceNode]
    order: tuple[str, ...]
    _dependents: Mapping[str, tuple[str, ...]] = field(repr=False)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return (self.nodes[resource_id] for resource_id in self.order)

    def node(self, resource_id: str) -> ResourceNode:
        return self.nodes[resource_id]

    def rank(self, resource_id: str) -> int:
        return self.nodes[resource_id].rank

    def dependents(self, resource_id: str) -> tuple[str, ...]:
        """Direct dependents of ``resource_id``, lexically sorted."""
        return self._dependents.get(resource_id, ())

    def transitive_dependents(self, resource_id: str) -> list[str]:
        """Every node that (transitively) depends on ``resource_id``, in rank order."""
        seen: set[str] = set()
        queue: deque[str] = deque(self.dependents(resource_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.dependents(current))
        return sorted(seen, key=self.rank)


class ResourceGraphBuilder:
    """Turns desired-state declarations into a ``ResourceGraph``. Pure transform."""

    def build(self, declarations: Iterable[DeclarationInput]) -> ResourceGraph:
        """Validate declarations and assign deterministic ranks.

        Raises:
            ManifestError: If a declaration fails schema validation.
            DuplicateIdentifier: If two declarations share an identifier.
            UnresolvedDependency: If a dependency names an undeclared resource.
            CycleDetected: If the dependency graph is not acyclic.
        """
        parsed: dict[str, ResourceDeclaration] = {}
        for index, raw in enumerate(declarations):
            declaration = self._coerce(raw, index)
            if declaration.resource_id in parsed:
                raise DuplicateIdentifier(declaration.resource_id)
            parsed[declaration.resource_id] = declaration

        for resource_id in sorted(parsed):
            for dep in parsed[resource_id].depends_on:
                if dep not in parsed:
                    raise UnresolvedDependency(resource_id, dep)

        order = stable_topological_order(
            {resource_id: declaration.depends_on for resource_id, declaration in parsed.items()}
        )

        dependents: dict[str, list[str]] = defaultdict(list)
        nodes: dict[str, ResourceNode] = {}
        for rank, resource_id in enumerate(order):
            declaration = parsed[resource_id]
            depends_on = tuple(sorted(set(declaration.depends_on)))
            nodes[resource_id] = ResourceNode(
                resource_id=resource_id,
                kind=declaration.kind,
                attributes=dict(declaration.attributes),
                depends_on=depends_on,
                rank=rank,
            )
            for dep in depends_on:
                dependents[dep].append(resource_id)

        logger.debug("Built resource graph with %d nodes", len(nodes))
        return ResourceGraph(
            nodes=nodes,
            order=tuple(order),
            _dependents={key: tuple(sorted(values)) for key, values in dependents.items()},
        )

    @staticmethod
    def _coerce(raw: DeclarationInput, index: int) -> ResourceDeclaration:
        if isinstance(raw, ResourceDeclaration):
            return raw
        try:
            return ResourceDeclaration.model_validate(raw)
        except ValidationError as exc:
            raise ManifestError(f"declaration #{index} failed validation: {exc}") from exc


def parse_manifest(payload: Any, *, origin: str = "<manifest>") -> list[ResourceDeclaration]:
    """Parse a ``{"resources": [...]}`` manifest document into declarations."""
    if not isinstance(payload, dict) or not isinstance(payload.get("resources"), list):
        raise ManifestError(f"{origin} must be an object with a 'resources' list")
    declarations: list[ResourceDeclaration] = []
    for index, raw in enumerate(payload["resources"]):
        try:
            declarations.append(ResourceDeclaration.model_validate(raw))
        except ValidationError as exc:
            raise ManifestError(f"{origin} resource #{index} failed validation: {exc}") from exc
    return declarations


def load_manifest(path: Path) -> list[ResourceDeclaration]:
    """Read and parse a JSON desired-state manifest from disk."""
    if not path.is_file():
        raise ManifestError(f"manifest not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestError(f"manifest at {path} is not valid JSON: {exc}") from exc
    return parse_manifest(payload, origin=str(path))
