"""Desired-vs-recorded diffing and change-set ordering.

The planner is deterministic by construction: attribute paths are sorted,
values are compared through their canonical JSON form, and every ordering
decision falls back to lexical identifier order.  Two calls with equal inputs
produce change sets with equal fingerprints.

Ordering rule: deletes run first, dependents before their dependencies (the
reverse of the order the resources were created in), then creates and updates
in the desired graph's topological order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Collection, Mapping

from .canonical import canonical_equal
from .graph import ResourceGraph, stable_topological_order
from .models import (
    AttributeDiff,
    ChangeAction,
    ChangeSet,
    ChangeSetEntry,
    ResourceNode,
    StateRecord,
    StateSnapshot,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def _flatten(attributes: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in attributes.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            flat.update(_flatten(value, path))
        else:
            flat[path] = value
    return flat


def diff_attributes(before: Mapping[str, Any], after: Mapping[str, Any]) -> list[AttributeDiff]:
    """Attribute-level diff of two mappings, flattened to dotted paths and sorted."""
    old = _flatten(before)
    new = _flatten(after)
    diffs: list[AttributeDiff] = []
    for path in sorted(set(old) | set(new)):
        old_value = old.get(path, _MISSING)
        new_value = new.get(path, _MISSING)
        if old_value is _MISSING:
            diffs.append(AttributeDiff(path=path, after=new_value, added=True))
        elif new_value is _MISSING:
            diffs.append(AttributeDiff(path=path, before=old_value, removed=True))
        elif not canonical_equal(old_value, new_value):
            diffs.append(AttributeDiff(path=path, before=old_value, after=new_value))
    return diffs


def diff_node(node: ResourceNode, record: StateRecord) -> list[AttributeDiff]:
    """Everything that differs between a desired node and its last-applied record."""
    reasons: list[AttributeDiff] = []
    if node.kind != record.kind:
        reasons.append(AttributeDiff(path="(kind)", before=record.kind.value, after=node.kind.value))
    recorded_deps = sorted(set(record.depends_on))
    if list(node.depends_on) != recorded_deps:
        reasons.append(AttributeDiff(path="(depends_on)", before=recorded_deps, after=list(node.depends_on)))
    reasons.extend(diff_attributes(record.attributes, node.attributes))
    return reasons


class Planner:
    """Compares a desired graph against recorded state and emits a ``ChangeSet``."""

    def plan(
        self,
        graph: ResourceGraph,
        state: StateSnapshot,
        *,
        only: Collection[str] | None = None,
        prune: bool = True,
        desired_revision: str | None = None,
    ) -> ChangeSet:
        """Produce the ordered change set converging ``state`` to ``graph``.

        Args:
            graph: Validated desired graph.
            state: Snapshot whose records describe what is currently applied.
            only: Restrict planning to these identifiers (drift-only plans).
            prune: When False, records missing from the graph are reported as
                ``orphans`` instead of being scheduled for deletion.
            desired_revision: Revision of the source the graph was built from.
        """
        scope_filter = set(only) if only is not None else None

        def in_scope(resource_id: str) -> bool:
            return scope_filter is None or resource_id in scope_filter

        upserts: list[ChangeSetEntry] = []
        no_ops: list[ChangeSetEntry] = []
        for node in graph:
            if not in_scope(node.resource_id):
                continue
            record = state.records.get(node.resource_id)
            if record is None:
                reasons = diff_attributes({}, node.attributes)
                action = ChangeAction.CREATE
            else:
                reasons = diff_node(node, record)
                action = ChangeAction.UPDATE if reasons else ChangeAction.NO_OP
            entry = ChangeSetEntry(
                resource_id=node.resource_id,
                kind=node.kind,
                action=action,
                reasons=reasons,
                desired_attributes=dict(node.attributes),
                depends_on=list(node.depends_on),
                external_id=record.external_id if record is not None else None,
            )
            (no_ops if action == ChangeAction.NO_OP else upserts).append(entry)

        stale = {
            resource_id: record
            for resource_id, record in state.records.items()
            if resource_id not in graph and in_scope(resource_id)
        }
        orphans: list[str] = []
        deletes: list[ChangeSetEntry] = []
        if prune:
            deletes = self._ordered_deletes(stale)
        else:
            orphans = sorted(stale)

        upsert_ids = {entry.resource_id for entry in upserts}
        for entry in upserts:
            entry.prerequisites = [dep for dep in entry.depends_on if dep in upsert_ids]

        rank = 0
        for entry in [*deletes, *upserts]:
            entry.rank = rank
            rank += 1

        change_set = ChangeSet(
            scope=state.scope,
            base_revision=state.revision,
            desired_revision=desired_revision,
            entries=[*deletes, *upserts, *sorted(no_ops, key=lambda entry: entry.resource_id)],
            orphans=orphans,
        )
        logger.info(
            "Planned scope %s against revision %d: %s",
            state.scope,
            state.revision,
            ", ".join(f"{count} {action}" for action, count in change_set.summary().items()),
        )
        return change_set

    @staticmethod
    def _ordered_deletes(stale: Mapping[str, StateRecord]) -> list[ChangeSetEntry]:
        # Recorded dependencies give the order the resources were created in;
        # deleting walks that order backwards.
        creation_order = stable_topological_order(
            {resource_id: record.depends_on for resource_id, record in stale.items()}
        )
        dependents: dict[str, list[str]] = defaultdict(list)
        for resource_id, record in stale.items():
            for dep in record.depends_on:
                if dep in stale:
                    dependents[dep].append(resource_id)

        entries: list[ChangeSetEntry] = []
        for resource_id in reversed(creation_order):
            record = stale[resource_id]
            entries.append(
                ChangeSetEntry(
                    resource_id=resource_id,
                    kind=record.kind,
                    action=ChangeAction.DELETE,
                    reasons=diff_attributes(record.attributes, {}),
                    depends_on=list(record.depends_on),
                    prerequisites=sorted(dependents[resource_id]),
                    external_id=record.external_id,
                )
            )
        return entries


def render_plan(change_set: ChangeSet) -> str:
    """Human-diffable preview of a change set."""
    lines: list[str] = [f"Plan for scope {change_set.scope} (base revision {change_set.base_revision})"]
    if change_set.desired_revision:
        lines.append(f"Desired revision: {change_set.desired_revision}")
    lines.append("")
    for entry in change_set.actionable:
        lines.append(f"{entry.symbol} [{entry.rank}] {entry.action.value} {entry.kind.value} {entry.resource_id}")
        for reason in entry.reasons:
            lines.append(f"      {reason.render()}")
    for resource_id in change_set.orphans:
        lines.append(f"! orphaned {resource_id} (prune disabled, not deleted)")
    if change_set.is_empty:
        lines.append("No changes. Infrastructure matches the desired state.")
    summary = change_set.summary()
    lines.append("")
    lines.append(
        "Plan: {create} to create, {update} to update, {delete} to delete, {noop} unchanged.".format(
            create=summary[ChangeAction.CREATE.value],
            update=summary[ChangeAction.UPDATE.value],
            delete=summary[ChangeAction.DELETE.value],
            noop=summary[ChangeAction.NO_OP.value],
        )
    )
    return "\n".join(lines)
