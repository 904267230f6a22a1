"""Background convergence of live infrastructure to the desired state.

Each cycle observes every managed resource through the provider, classifies
drift, and, when there is something to do, plans against the *observed*
state and applies under the scope lock.  The lock is held for one apply
only and never spans cycles, so foreground applies interleave freely; races
are settled by the store revision.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from .errors import (
    DriftConflict,
    GraphValidationError,
    LockContention,
    LockLost,
    ProviderError,
    RevisionConflict,
)
from .executor import ApplyExecutor
from .graph import ResourceGraph, ResourceGraphBuilder
from .models import (
    ChangeAction,
    ChangeSet,
    CycleOutcome,
    DriftItem,
    DriftKind,
    ObservedResource,
    ReconcileAction,
    ReconcileCycle,
    StateRecord,
    StateSnapshot,
    utc_now,
)
from .planner import Planner, diff_attributes, diff_node
from .providers import ResourceProvider
from .settings import RuntimeSettings
from .sources import DesiredStateSource
from .state_store import StateStore

logger = logging.getLogger(__name__)


def project_attributes(observed: Mapping[str, Any], keys: set[str] | None) -> dict[str, Any]:
    """Keep only the top-level attributes the engine manages.

    Providers report computed attributes (ARNs, timestamps) that were never
    declared; comparing those would flag drift on every cycle.
    """
    if keys is None:
        return dict(observed)
    return {key: value for key, value in observed.items() if key in keys}


class ContinuousReconciler:
    def __init__(
        self,
        *,
        source: DesiredStateSource,
        provider: ResourceProvider,
        store: StateStore,
        executor: ApplyExecutor,
        settings: RuntimeSettings,
        planner: Planner | None = None,
        graph_builder: ResourceGraphBuilder | None = None,
    ) -> None:
        self.source = source
        self.provider = provider
        self.store = store
        self.executor = executor
        self.settings = settings
        self.planner = planner or Planner()
        self.graph_builder = graph_builder or ResourceGraphBuilder()
        self.scope = settings.scope
        self.prune = settings.reconcile_prune
        self._converged_revision: str | None = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_forever(self, stop_event: threading.Event, *, max_cycles: int | None = None) -> int:
        """Run cycles every ``reconcile_interval_seconds`` until ``stop_event`` is set.

        The event is only consulted between cycles, so an in-flight cycle
        always completes (and releases the lock) before the loop exits.

        Returns:
            The number of cycles run.
        """
        cycles = 0
        logger.info(
            "Reconciler started for scope %s (interval %.1fs, prune %s)",
            self.scope,
            self.settings.reconcile_interval_seconds,
            "on" if self.prune else "off",
        )
        while not stop_event.is_set():
            self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            stop_event.wait(self.settings.reconcile_interval_seconds)
        logger.info("Reconciler stopped after %d cycles", cycles)
        return cycles

    def run_cycle(self) -> ReconcileCycle:
        """Run one observe, plan and apply cycle and record it in history.

        Failures the cycle does not classify end it as ``error`` rather than
        propagating, so ``run_forever`` retries on the next interval.
        """
        cycle = ReconcileCycle()
        try:
            self._run_cycle(cycle)
        except Exception as exc:
            cycle.outcome = CycleOutcome.ERROR
            cycle.detail = f"{type(exc).__name__}: {exc}"
            logger.exception("Cycle %s failed", cycle.cycle_id)
        finally:
            cycle.finished_at = utc_now()
            self._record(cycle)
        return cycle

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _run_cycle(self, cycle: ReconcileCycle) -> None:
        try:
            desired = self.source.fetch()
            graph = self.graph_builder.build(desired.declarations)
        except GraphValidationError as exc:
            cycle.outcome = CycleOutcome.INVALID
            cycle.detail = str(exc)
            logger.error("Desired state is invalid; skipping cycle %s: %s", cycle.cycle_id, exc)
            return

        cycle.desired_revision = desired.revision
        cycle.revision_changed = desired.revision != self._converged_revision

        snapshot = self.store.read_state(self.scope) or StateSnapshot.empty(self.scope)
        try:
            observed_snapshot, drift = self.observe(graph, snapshot)
        except ProviderError as exc:
            cycle.outcome = CycleOutcome.ERROR
            cycle.detail = f"observation failed: {exc}"
            logger.error("Cycle %s could not observe the provider: %s", cycle.cycle_id, exc)
            return
        cycle.drift = drift

        acted_on = {item.resource_id for item in drift if item.kind != DriftKind.UNAPPLIED}
        if not cycle.revision_changed and not acted_on:
            cycle.outcome = CycleOutcome.NOOP
            cycle.actions = {item.resource_id: ReconcileAction.NONE for item in drift}
            return

        change_set = self.planner.plan(
            graph,
            observed_snapshot,
            only=None if cycle.revision_changed else acted_on,
            prune=self.prune,
            desired_revision=desired.revision,
        )
        cycle.change_set = change_set
        cycle.actions = self._actions(change_set, drift)

        if change_set.is_empty:
            if change_set.orphans:
                cycle.outcome = CycleOutcome.DRIFT_FLAGGED
                cycle.detail = f"orphaned, prune disabled: {', '.join(change_set.orphans)}"
            else:
                cycle.outcome = CycleOutcome.NOOP
                self._converged_revision = desired.revision
            return

        self._apply(cycle, change_set, snapshot.revision)

    def _apply(self, cycle: ReconcileCycle, change_set: ChangeSet, read_revision: int) -> None:
        try:
            with self.store.lock(self.scope, self.executor.holder, wait_seconds=self.settings.lock_wait_seconds) as lease:
                current = self.store.current_revision(self.scope)
                if current != read_revision:
                    raise DriftConflict(
                        f"scope {self.scope!r} moved from revision {read_revision} to {current} during cycle"
                    )
                result = self.executor.apply(change_set, lease=lease)
        except LockContention as exc:
            cycle.outcome = CycleOutcome.CONTENTION
            cycle.detail = str(exc)
            logger.info("Cycle %s deferred: %s", cycle.cycle_id, exc)
            return
        except (DriftConflict, RevisionConflict) as exc:
            cycle.outcome = CycleOutcome.CONFLICT
            cycle.detail = str(exc)
            logger.warning("Cycle %s aborted: %s", cycle.cycle_id, exc)
            return
        except LockLost as exc:
            cycle.outcome = CycleOutcome.PARTIAL
            cycle.detail = str(exc)
            cycle.apply_result = exc.result
            logger.error("Cycle %s lost the scope lock mid-apply: %s", cycle.cycle_id, exc)
            return

        cycle.apply_result = result
        if not result.ok:
            cycle.outcome = CycleOutcome.PARTIAL
            cycle.detail = f"failed: {', '.join(result.failed) or '-'}; skipped: {', '.join(result.skipped) or '-'}"
        elif change_set.orphans:
            cycle.outcome = CycleOutcome.DRIFT_FLAGGED
            cycle.detail = f"orphaned, prune disabled: {', '.join(change_set.orphans)}"
        else:
            cycle.outcome = CycleOutcome.HEALED
        if result.ok and cycle.desired_revision is not None:
            self._converged_revision = cycle.desired_revision

    @staticmethod
    def _actions(change_set: ChangeSet, drift: list[DriftItem]) -> dict[str, ReconcileAction]:
        actions = {item.resource_id: ReconcileAction.NONE for item in drift}
        for entry in change_set.actionable:
            actions[entry.resource_id] = (
                ReconcileAction.PRUNE if entry.action == ChangeAction.DELETE else ReconcileAction.HEAL
            )
        return dict(sorted(actions.items()))

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(self, graph: ResourceGraph, snapshot: StateSnapshot) -> tuple[StateSnapshot, list[DriftItem]]:
        """Read live state and classify drift.

        Returns a copy of ``snapshot`` whose records carry the *observed*
        attributes (projected onto managed keys), plus the drift found.
        Resources the provider lost are dropped from the copy unless they are
        no longer desired; unrecorded resources the provider still holds are
        added so the planner can adopt or prune them.
        """
        drift: list[DriftItem] = []
        observed_records: dict[str, StateRecord] = {}
        live_by_id: dict[str, ObservedResource] = {
            resource.resource_id: resource for resource in self.provider.list_resources()
        }

        for resource_id in sorted(snapshot.records):
            record = snapshot.records[resource_id]
            live = self.provider.read(record.kind, resource_id, record.external_id)
            desired = resource_id in graph
            if live is None:
                drift.append(DriftItem(resource_id=resource_id, kind=DriftKind.MISSING))
                if not desired:
                    observed_records[resource_id] = record
                continue
            keys = set(record.attributes)
            if desired:
                keys |= set(graph.node(resource_id).attributes)
            projected = project_attributes(live.attributes, keys)
            observed_records[resource_id] = record.model_copy(update={"attributes": projected})
            changes = diff_attributes(record.attributes, projected)
            if changes:
                drift.append(DriftItem(resource_id=resource_id, kind=DriftKind.CHANGED, reasons=changes))
            if not desired:
                drift.append(DriftItem(resource_id=resource_id, kind=DriftKind.ORPHANED))
            elif not changes:
                pending = diff_node(graph.node(resource_id), record)
                if pending:
                    drift.append(DriftItem(resource_id=resource_id, kind=DriftKind.UNAPPLIED, reasons=pending))

        for resource_id in sorted(set(live_by_id) - set(snapshot.records)):
            live = live_by_id[resource_id]
            desired = resource_id in graph
            keys = set(graph.node(resource_id).attributes) if desired else None
            observed_records[resource_id] = StateRecord(
                resource_id=resource_id,
                kind=live.kind,
                attributes=project_attributes(live.attributes, keys),
                external_id=live.external_id,
            )
            drift.append(
                DriftItem(resource_id=resource_id, kind=DriftKind.UNAPPLIED if desired else DriftKind.ORPHANED)
            )

        for node in graph:
            if node.resource_id not in snapshot.records and node.resource_id not in live_by_id:
                drift.append(DriftItem(resource_id=node.resource_id, kind=DriftKind.UNAPPLIED))

        if drift:
            logger.info(
                "Observed drift in scope %s: %s",
                self.scope,
                ", ".join(f"{item.resource_id} ({item.kind.value})" for item in drift),
            )
        observed = snapshot.model_copy(update={"records": observed_records})
        return observed, drift

    def _record(self, cycle: ReconcileCycle) -> None:
        self.store.append_history(
            self.scope,
            {
                "event": "reconcile",
                "cycle_id": cycle.cycle_id,
                "desired_revision": cycle.desired_revision,
                "revision_changed": cycle.revision_changed,
                "outcome": cycle.outcome.value,
                "detail": cycle.detail,
                "drift": [{"resource_id": item.resource_id, "kind": item.kind.value} for item in cycle.drift],
                "actions": {resource_id: action.value for resource_id, action in cycle.actions.items()},
                "apply_id": cycle.apply_result.apply_id if cycle.apply_result is not None else None,
            },
        )
        logger.info("Cycle %s finished: %s", cycle.cycle_id, cycle.outcome.value)
