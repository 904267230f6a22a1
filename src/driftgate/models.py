from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .canonical import fingerprint
from .errors import IllegalTransition


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------

class ResourceKind(str, Enum):
    NETWORK = "network"
    SUBNET = "subnet"
    COMPUTE = "compute"
    DATABASE = "database"
    CLUSTER = "cluster"
    STORAGE_BUCKET = "storage-bucket"
    LOAD_BALANCER = "load-balancer"
    DNS_RECORD = "dns-record"
    CONTAINER_SERVICE = "container-service"


class ResourceDeclaration(BaseModel):
    """One resource as declared in a desired-state manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    resource_id: str = Field(alias="id", min_length=1)
    kind: ResourceKind
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("resource_id")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("resource id must be non-empty")
        return stripped


class ResourceNode(BaseModel):
    """A validated node of the resource graph; read-only downstream."""

    model_config = ConfigDict(frozen=True)

    resource_id: str
    kind: ResourceKind
    attributes: dict[str, Any]
    depends_on: tuple[str, ...]
    rank: int


class DesiredState(BaseModel):
    revision: str
    declarations: list[ResourceDeclaration]
    source: str = ""


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

class StateRecord(BaseModel):
    """Last-known state of one applied resource."""

    resource_id: str
    kind: ResourceKind
    attributes: dict[str, Any] = Field(default_factory=dict)
    external_id: str
    depends_on: list[str] = Field(default_factory=list)
    revision: int = 0
    applied_at: datetime = Field(default_factory=utc_now)


class StateSnapshot(BaseModel):
    scope: str
    revision: int = 0
    records: dict[str, StateRecord] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def empty(cls, scope: str) -> "StateSnapshot":
        return cls(scope=scope)


class LockRecord(BaseModel):
    scope: str
    holder: str
    token: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class LockLease(BaseModel):
    """Caller-side handle on a held scope lock."""

    scope: str
    holder: str
    token: str
    expires_at: datetime


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


_ACTION_SYMBOLS = {
    ChangeAction.CREATE: "+",
    ChangeAction.UPDATE: "~",
    ChangeAction.DELETE: "-",
    ChangeAction.NO_OP: " ",
}


class AttributeDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    before: Any = None
    after: Any = None
    added: bool = False
    removed: bool = False

    def render(self) -> str:
        if self.added:
            return f"+ {self.path} = {self.after!r}"
        if self.removed:
            return f"- {self.path} = {self.before!r}"
        return f"~ {self.path}: {self.before!r} -> {self.after!r}"


class ChangeSetEntry(BaseModel):
    resource_id: str
    kind: ResourceKind
    action: ChangeAction
    reasons: list[AttributeDiff] = Field(default_factory=list)
    rank: int | None = None
    prerequisites: list[str] = Field(default_factory=list)
    desired_attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    external_id: str | None = None

    @property
    def symbol(self) -> str:
        return _ACTION_SYMBOLS[self.action]


class ChangeSet(BaseModel):
    scope: str
    base_revision: int
    desired_revision: str | None = None
    entries: list[ChangeSetEntry] = Field(default_factory=list)
    orphans: list[str] = Field(default_factory=list)

    @property
    def actionable(self) -> list[ChangeSetEntry]:
        """Entries that change something, in execution rank order."""
        pending = [entry for entry in self.entries if entry.action != ChangeAction.NO_OP]
        return sorted(pending, key=lambda entry: entry.rank if entry.rank is not None else -1)

    @property
    def is_empty(self) -> bool:
        return not self.actionable

    def entry(self, resource_id: str) -> ChangeSetEntry:
        for entry in self.entries:
            if entry.resource_id == resource_id:
                return entry
        raise KeyError(resource_id)

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in ChangeAction}
        for entry in self.entries:
            counts[entry.action.value] += 1
        return counts

    def fingerprint(self) -> str:
        return fingerprint(self.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

class EntryStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class EntryResult(BaseModel):
    resource_id: str
    action: ChangeAction
    status: EntryStatus
    rank: int | None = None
    attempts: int = 0
    external_id: str | None = None
    error_type: str | None = None
    error: str | None = None


class ApplyResult(BaseModel):
    scope: str
    apply_id: str = Field(default_factory=lambda: f"APPLY-{uuid.uuid4().hex[:8]}")
    entries: list[EntryResult] = Field(default_factory=list)
    final_revision: int | None = None
    cancelled: bool = False
    aborted_reason: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None

    def _ids(self, status: EntryStatus) -> list[str]:
        return [entry.resource_id for entry in self.entries if entry.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._ids(EntryStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._ids(EntryStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._ids(EntryStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.aborted_reason is None and all(
            entry.status == EntryStatus.SUCCEEDED for entry in self.entries
        )


# ---------------------------------------------------------------------------
# Provider / registry / analysis payloads
# ---------------------------------------------------------------------------

class ObservedResource(BaseModel):
    resource_id: str
    kind: ResourceKind
    external_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)


class ArtifactRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    registry: str
    digest: str
    size: int

    def __str__(self) -> str:
        return f"{self.registry}@{self.digest}"


class CandidateArtifact(BaseModel):
    """A built artifact staged locally, not yet forwarded to the registry."""

    digest: str
    path: str
    size: int


class AnalysisResult(BaseModel):
    submission_id: str
    score: float
    passed: bool
    detail: str = ""


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class PipelineStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    ANALYZING = "analyzing"
    GATE_EVALUATION = "gate_evaluation"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


PIPELINE_STATUS_TRANSITIONS: dict[PipelineStatus, set[PipelineStatus]] = {
    PipelineStatus.PENDING: {PipelineStatus.BUILDING, PipelineStatus.FAILED},
    PipelineStatus.BUILDING: {PipelineStatus.ANALYZING, PipelineStatus.FAILED},
    PipelineStatus.ANALYZING: {PipelineStatus.GATE_EVALUATION, PipelineStatus.FAILED},
    PipelineStatus.GATE_EVALUATION: {PipelineStatus.PUBLISHING, PipelineStatus.FAILED},
    PipelineStatus.PUBLISHING: {PipelineStatus.SUCCEEDED, PipelineStatus.FAILED},
    PipelineStatus.SUCCEEDED: set(),
    PipelineStatus.FAILED: set(),
}


class StageName(str, Enum):
    BUILD = "build"
    ANALYZE = "analyze"
    QUALITY_GATE = "quality-gate"
    PUBLISH = "publish"


STAGE_ORDER: tuple[StageName, ...] = (
    StageName.BUILD,
    StageName.ANALYZE,
    StageName.QUALITY_GATE,
    StageName.PUBLISH,
)


class StageOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageResult(BaseModel):
    stage: StageName
    outcome: StageOutcome
    score: float | None = None
    attempts: int = 0
    detail: str = ""


class PipelineRun(BaseModel):
    run_id: str = Field(default_factory=lambda: f"RUN-{uuid.uuid4().hex[:8]}")
    status: PipelineStatus = PipelineStatus.PENDING
    artifact_digest: str | None = None
    artifact_ref: ArtifactRef | None = None
    stages: list[StageResult] = Field(default_factory=list)
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None

    def transition(self, new_status: PipelineStatus) -> None:
        allowed = PIPELINE_STATUS_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise IllegalTransition(
                f"Illegal pipeline transition for {self.run_id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status

    def stage_result(self, stage: StageName) -> StageResult | None:
        for result in self.stages:
            if result.stage == stage:
                return result
        return None

    @property
    def terminal(self) -> bool:
        return not PIPELINE_STATUS_TRANSITIONS[self.status]

    @property
    def gate_rejected(self) -> bool:
        gate = self.stage_result(StageName.QUALITY_GATE)
        return gate is not None and gate.outcome == StageOutcome.FAILED


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

class DriftKind(str, Enum):
    CHANGED = "changed"
    MISSING = "missing"
    ORPHANED = "orphaned"
    UNAPPLIED = "unapplied"


class DriftItem(BaseModel):
    resource_id: str
    kind: DriftKind
    reasons: list[AttributeDiff] = Field(default_factory=list)


class ReconcileAction(str, Enum):
    HEAL = "heal"
    PRUNE = "prune"
    NONE = "none"


class CycleOutcome(str, Enum):
    NOOP = "noop"
    HEALED = "healed"
    DRIFT_FLAGGED = "drift-flagged"
    PARTIAL = "partial"
    CONFLICT = "conflict"
    CONTENTION = "contention"
    INVALID = "invalid"
    ERROR = "error"


class ReconcileCycle(BaseModel):
    cycle_id: str = Field(default_factory=lambda: f"CYCLE-{uuid.uuid4().hex[:8]}")
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    desired_revision: str | None = None
    revision_changed: bool = False
    drift: list[DriftItem] = Field(default_factory=list)
    actions: dict[str, ReconcileAction] = Field(default_factory=dict)
    outcome: CycleOutcome = CycleOutcome.NOOP
    detail: str = ""
    change_set: ChangeSet | None = None
    apply_result: ApplyResult | None = None

    @property
    def drifted_ids(self) -> list[str]:
        return sorted({item.resource_id for item in self.drift})
