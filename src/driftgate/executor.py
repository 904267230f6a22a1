from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable

from .canonical import canonical_equal
from .errors import (
    ApplyFailed,
    DependencyFailed,
    LockLost,
    ProviderError,
    ProviderPermanent,
    ProviderTransient,
    ResourceAlreadyExists,
    ResourceNotFound,
    RevisionConflict,
    StaleToken,
)
from .models import (
    ApplyResult,
    ChangeAction,
    ChangeSet,
    ChangeSetEntry,
    EntryResult,
    EntryStatus,
    LockLease,
    ObservedResource,
    StateRecord,
    utc_now,
)
from .providers import ResourceProvider
from .settings import RuntimeSettings
from .state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    ok: bool
    attempts: int
    observed: ObservedResource | None = None
    error: Exception | None = None


class ApplyExecutor:
    """Executes a change set against the provider, committing as it goes.

    Deletes run before creates and updates.  Inside each phase an entry starts
    once all of its prerequisites succeeded, so independent branches proceed
    in parallel while a dependency chain stays sequential.  Provider calls run
    on worker threads; state commits happen on the coordinating thread, one
    at a time, right after each success.
    """

    def __init__(
        self,
        provider: ResourceProvider,
        store: StateStore,
        *,
        holder: str,
        max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        max_parallel: int = 4,
        lock_wait_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.store = store
        self.holder = holder
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.max_parallel = max_parallel
        self.lock_wait_seconds = lock_wait_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        provider: ResourceProvider,
        store: StateStore,
        settings: RuntimeSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ApplyExecutor":
        return cls(
            provider,
            store,
            holder=settings.holder_id,
            max_attempts=settings.apply_max_attempts,
            backoff_base_seconds=settings.apply_backoff_base_seconds,
            backoff_max_seconds=settings.apply_backoff_max_seconds,
            max_parallel=settings.apply_max_parallel,
            lock_wait_seconds=settings.lock_wait_seconds,
            sleep=sleep,
        )

    def apply(
        self,
        change_set: ChangeSet,
        *,
        lease: LockLease | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ApplyResult:
        """Apply ``change_set`` and report the outcome of every actionable entry.

        Without a ``lease`` the executor takes the scope lock itself and
        releases it before returning or raising.  The change set must have
        been planned against the scope's current revision; every commit then
        expects the revision the previous commit produced.

        Args:
            change_set: Plan to execute, usually from ``Planner.plan``.
            lease: Live lease on ``change_set.scope`` held by the caller.
            cancel_event: Set to stop scheduling new provider calls.

        Returns:
            The per-entry ``ApplyResult``.  Provider failures are reported in
            it, not raised.

        Raises:
            LockContention: If the scope lock cannot be acquired.
            RevisionConflict: If the scope moved past ``change_set.base_revision``
                before anything was applied.
            LockLost: If the lease stopped being valid, or another writer
                moved the revision, mid-apply.  The partial ``ApplyResult``
                is attached as ``exc.result``.
        """
        if lease is not None:
            return self._run(change_set, lease, cancel_event)
        with self.store.lock(change_set.scope, self.holder, wait_seconds=self.lock_wait_seconds) as held:
            return self._run(change_set, held, cancel_event)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _run(self, change_set: ChangeSet, lease: LockLease, cancel_event: threading.Event | None) -> ApplyResult:
        current = self.store.current_revision(change_set.scope)
        if current != change_set.base_revision:
            logger.error(
                "Refusing stale plan for scope %s: planned at revision %d, scope is at %d",
                change_set.scope,
                change_set.base_revision,
                current,
            )
            raise RevisionConflict(change_set.scope, change_set.base_revision, current)

        result = ApplyResult(scope=change_set.scope, final_revision=change_set.base_revision)
        outcomes: dict[str, EntryResult] = {}
        entries = change_set.actionable
        phases = (
            [entry for entry in entries if entry.action == ChangeAction.DELETE],
            [entry for entry in entries if entry.action != ChangeAction.DELETE],
        )
        logger.info("Applying %d changes to scope %s", len(entries), change_set.scope)

        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="driftgate-apply") as pool:
            for phase in phases:
                if self._run_phase(phase, lease, pool, outcomes, result, cancel_event):
                    break

        reason = "cancelled" if result.cancelled else (result.aborted_reason or "not reached")
        for entry in entries:
            if entry.resource_id not in outcomes:
                outcomes[entry.resource_id] = EntryResult(
                    resource_id=entry.resource_id,
                    action=entry.action,
                    status=EntryStatus.SKIPPED,
                    rank=entry.rank,
                    error=reason,
                )
        result.entries = [outcomes[entry.resource_id] for entry in entries]
        result.finished_at = utc_now()
        self.store.append_history(
            change_set.scope,
            {
                "event": "apply",
                "apply_id": result.apply_id,
                "change_set": change_set.fingerprint(),
                "succeeded": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
                "cancelled": result.cancelled,
                "aborted_reason": result.aborted_reason,
            },
        )
        logger.info(
            "Apply %s finished: %d succeeded, %d failed, %d skipped",
            result.apply_id,
            len(result.succeeded),
            len(result.failed),
            len(result.skipped),
        )
        if result.aborted_reason is not None:
            raise LockLost(result.aborted_reason, result)
        return result

    def _run_phase(
        self,
        phase: list[ChangeSetEntry],
        lease: LockLease,
        pool: ThreadPoolExecutor,
        outcomes: dict[str, EntryResult],
        result: ApplyResult,
        cancel_event: threading.Event | None,
    ) -> bool:
        """Run one phase to completion. Returns True when the apply must stop."""
        phase_ids = {entry.resource_id for entry in phase}
        prerequisites = {
            entry.resource_id: [dep for dep in entry.prerequisites if dep in phase_ids] for entry in phase
        }
        pending: dict[str, ChangeSetEntry] = {entry.resource_id: entry for entry in phase}
        succeeded: set[str] = set()
        blocked: set[str] = set()
        in_flight: dict[Future[_Outcome], ChangeSetEntry] = {}

        while pending or in_flight:
            if cancel_event is not None and cancel_event.is_set() and not result.cancelled:
                logger.warning("Apply %s cancelled; waiting for %d in-flight calls", result.apply_id, len(in_flight))
                result.cancelled = True
            halted = result.cancelled or result.aborted_reason is not None

            if not halted:
                for resource_id in list(pending):
                    failed_dep = next((dep for dep in prerequisites[resource_id] if dep in blocked), None)
                    if failed_dep is None:
                        continue
                    entry = pending.pop(resource_id)
                    blocked.add(resource_id)
                    skipped = DependencyFailed(resource_id, failed_dep)
                    outcomes[resource_id] = self._entry_result(entry, EntryStatus.SKIPPED, 0, error=skipped)
                    logger.warning("%s", skipped)

                ready = [
                    entry
                    for resource_id, entry in pending.items()
                    if all(dep in succeeded for dep in prerequisites[resource_id])
                ]
                capacity = self.max_parallel - len(in_flight)
                if ready and capacity > 0:
                    try:
                        self.store.renew_lock(lease.scope, lease.token)
                    except StaleToken as exc:
                        result.aborted_reason = f"lease lost: {exc}"
                        logger.error("Apply %s lost its lease; no further changes will be applied", result.apply_id)
                        continue
                    for entry in ready[:capacity]:
                        del pending[entry.resource_id]
                        in_flight[pool.submit(self._execute, entry)] = entry

            if not in_flight:
                if pending and not halted:
                    logger.error("Unschedulable entries left in phase: %s", ", ".join(sorted(pending)))
                break

            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in sorted(done, key=lambda item: in_flight[item].rank or 0):
                entry = in_flight.pop(future)
                outcome = future.result()
                if not outcome.ok:
                    blocked.add(entry.resource_id)
                    outcomes[entry.resource_id] = self._entry_result(
                        entry, EntryStatus.FAILED, outcome.attempts, error=outcome.error
                    )
                    logger.error("%s %s failed: %s", entry.action.value, entry.resource_id, outcome.error)
                    continue
                if result.aborted_reason is not None:
                    blocked.add(entry.resource_id)
                    outcomes[entry.resource_id] = self._entry_result(
                        entry,
                        EntryStatus.FAILED,
                        outcome.attempts,
                        error=LockLost("provider call finished after the lease was lost; not committed"),
                    )
                    continue
                try:
                    result.final_revision = self._commit(entry, outcome, lease, result.final_revision)
                except (StaleToken, RevisionConflict) as exc:
                    lost = "lease lost" if isinstance(exc, StaleToken) else "revision moved under the lease"
                    result.aborted_reason = f"{lost}: {exc}"
                    blocked.add(entry.resource_id)
                    outcomes[entry.resource_id] = self._entry_result(
                        entry, EntryStatus.FAILED, outcome.attempts, error=LockLost(str(exc))
                    )
                    logger.error("Apply %s lost its lease while committing %s", result.apply_id, entry.resource_id)
                    continue
                succeeded.add(entry.resource_id)
                outcomes[entry.resource_id] = self._entry_result(
                    entry,
                    EntryStatus.SUCCEEDED,
                    outcome.attempts,
                    external_id=outcome.observed.external_id if outcome.observed is not None else entry.external_id,
                )

        return result.cancelled or result.aborted_reason is not None

    @staticmethod
    def _entry_result(
        entry: ChangeSetEntry,
        status: EntryStatus,
        attempts: int,
        *,
        error: Exception | None = None,
        external_id: str | None = None,
    ) -> EntryResult:
        return EntryResult(
            resource_id=entry.resource_id,
            action=entry.action,
            status=status,
            rank=entry.rank,
            attempts=attempts,
            external_id=external_id,
            error_type=type(error).__name__ if error is not None else None,
            error=str(error) if error is not None else None,
        )

    # ------------------------------------------------------------------
    # Provider calls (worker threads)
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based): doubling from the base, capped."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    def _execute(self, entry: ChangeSetEntry) -> _Outcome:
        """Run one entry's provider call with retries; never raises."""
        attempts = 0
        ambiguous = False
        while True:
            attempts += 1
            try:
                observed = self._invoke(entry, ambiguous=ambiguous)
                return _Outcome(ok=True, attempts=attempts, observed=observed)
            except ProviderTransient as exc:
                ambiguous = True
                if attempts >= self.max_attempts:
                    return _Outcome(
                        ok=False,
                        attempts=attempts,
                        error=ApplyFailed(f"{entry.action.value} {entry.resource_id} gave up after {attempts} attempts: {exc}"),
                    )
                delay = self.backoff_delay(attempts)
                logger.warning(
                    "Transient provider error on %s %s (attempt %d/%d), retrying in %.2fs: %s",
                    entry.action.value,
                    entry.resource_id,
                    attempts,
                    self.max_attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)
            except ProviderError as exc:
                return _Outcome(ok=False, attempts=attempts, error=exc)
            except Exception as exc:
                # Reported as a failed entry so finished branches still commit.
                logger.exception("Unexpected error from provider on %s %s", entry.action.value, entry.resource_id)
                return _Outcome(ok=False, attempts=attempts, error=exc)

    def _invoke(self, entry: ChangeSetEntry, *, ambiguous: bool) -> ObservedResource | None:
        if entry.action == ChangeAction.CREATE:
            if ambiguous:
                # A create that timed out may still have landed.
                existing = self.provider.lookup(entry.kind, entry.resource_id)
                if existing is not None:
                    return self._adopt(entry, existing)
            try:
                return self.provider.create(entry.kind, entry.resource_id, entry.desired_attributes)
            except ResourceAlreadyExists:
                existing = self.provider.lookup(entry.kind, entry.resource_id)
                if existing is None:
                    raise
                return self._adopt(entry, existing)

        if entry.external_id is None:
            raise ProviderPermanent(f"{entry.action.value} {entry.resource_id} has no provider external id")

        if entry.action == ChangeAction.UPDATE:
            return self.provider.update(entry.kind, entry.resource_id, entry.external_id, entry.desired_attributes)

        if entry.action == ChangeAction.DELETE:
            try:
                self.provider.delete(entry.kind, entry.resource_id, entry.external_id)
            except ResourceNotFound:
                logger.info("%s already absent at provider; treating delete as done", entry.resource_id)
            return None

        raise ValueError(f"cannot execute {entry.action.value} entry {entry.resource_id}")

    def _adopt(self, entry: ChangeSetEntry, existing: ObservedResource) -> ObservedResource:
        logger.warning(
            "Adopting existing %s %s (%s) instead of creating a duplicate",
            entry.kind.value,
            entry.resource_id,
            existing.external_id,
        )
        if canonical_equal(existing.attributes, entry.desired_attributes):
            return existing
        return self.provider.update(entry.kind, entry.resource_id, existing.external_id, entry.desired_attributes)

    # ------------------------------------------------------------------
    # Commit (coordinating thread)
    # ------------------------------------------------------------------

    def _commit(self, entry: ChangeSetEntry, outcome: _Outcome, lease: LockLease, expected_revision: int) -> int:
        if entry.action == ChangeAction.DELETE:
            return self.store.delete_record(
                lease.scope, entry.resource_id, lease.token, expected_revision=expected_revision
            )
        observed = outcome.observed
        if observed is None:
            raise ValueError(f"{entry.action.value} {entry.resource_id} returned no resource")
        record = StateRecord(
            resource_id=entry.resource_id,
            kind=entry.kind,
            attributes=dict(entry.desired_attributes),
            external_id=observed.external_id,
            depends_on=list(entry.depends_on),
            applied_at=utc_now(),
        )
        return self.store.write_state(lease.scope, record, lease.token, expected_revision=expected_revision)
