"""Error taxonomy for the reconciliation engine.

Every failure the engine surfaces derives from ``DriftgateError`` so callers
can catch the whole family at a process boundary.  The classes are grouped the
way callers react to them:

* **Validation** -- the desired graph is unusable.  Raised before any mutation.
* **Contention** -- another writer holds the scope.  Retryable by the caller.
* **Provider** -- the resource provider refused a call.  ``ProviderTransient``
  is retried internally with backoff, ``ProviderPermanent`` is not.
* **Apply** -- per-entry outcomes of a change set.
* **Pipeline** -- stage failures inside a pipeline run.  A quality gate
  rejection is *not* an error; it is a terminal run outcome.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ApplyResult


class DriftgateError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class GraphValidationError(DriftgateError):
    """The desired-state declarations do not form a valid resource graph."""


class DuplicateIdentifier(GraphValidationError):
    def __init__(self, resource_id: str) -> None:
        super().__init__(f"duplicate resource identifier: {resource_id}")
        self.resource_id = resource_id


class UnresolvedDependency(GraphValidationError):
    def __init__(self, resource_id: str, dependency: str) -> None:
        super().__init__(f"resource {resource_id} depends on unknown resource {dependency}")
        self.resource_id = resource_id
        self.dependency = dependency


class CycleDetected(GraphValidationError):
    def __init__(self, members: list[str]) -> None:
        super().__init__(f"dependency cycle detected among: {', '.join(members)}")
        self.members = members


class ManifestError(GraphValidationError):
    """A desired-state manifest could not be read or parsed."""


# ---------------------------------------------------------------------------
# State store / contention
# ---------------------------------------------------------------------------

class LockContention(DriftgateError):
    """Another holder owns a non-expired lease on the scope."""

    def __init__(self, scope: str, holder: str, expires_at: Any) -> None:
        super().__init__(f"scope {scope!r} is locked by {holder} until {expires_at}")
        self.scope = scope
        self.holder = holder
        self.expires_at = expires_at


class StaleToken(DriftgateError):
    """A write or renewal used a lock token that is unknown or expired."""


class RevisionConflict(DriftgateError):
    """Optimistic revision check failed: another writer moved the revision."""

    def __init__(self, scope: str, expected: int, actual: int) -> None:
        super().__init__(f"scope {scope!r} revision is {actual}, expected {expected}")
        self.scope = scope
        self.expected = expected
        self.actual = actual


class LockLost(DriftgateError):
    """The apply lost its lease mid-run and stopped applying."""

    def __init__(self, message: str, result: "ApplyResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class DriftConflict(DriftgateError):
    """Observed or recorded state moved underneath a reconcile cycle."""


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class ProviderError(DriftgateError):
    """Base class for resource provider failures."""


class ProviderTransient(ProviderError):
    """Retryable provider failure (throttling, timeouts, 5xx)."""


ProviderRejected = ProviderTransient


class ProviderPermanent(ProviderError):
    """Non-retryable provider failure (invalid request, quota, auth)."""


class ResourceAlreadyExists(ProviderPermanent):
    def __init__(self, resource_id: str) -> None:
        super().__init__(f"resource already exists: {resource_id}")
        self.resource_id = resource_id


class ResourceNotFound(ProviderPermanent):
    def __init__(self, resource_id: str) -> None:
        super().__init__(f"resource not found: {resource_id}")
        self.resource_id = resource_id


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

class DependencyFailed(DriftgateError):
    """An entry was skipped because a prerequisite entry did not succeed."""

    def __init__(self, resource_id: str, failed_dependency: str) -> None:
        super().__init__(f"{resource_id} skipped: prerequisite {failed_dependency} did not succeed")
        self.resource_id = resource_id
        self.failed_dependency = failed_dependency


class ApplyFailed(DriftgateError):
    """A provider call exhausted its retry budget."""


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class IllegalTransition(ValueError):
    """A pipeline run was asked to move along an edge its state machine forbids."""


class StageFailed(DriftgateError):
    """A pipeline stage reported failure."""


class StageTimeout(StageFailed):
    def __init__(self, stage: str, timeout_seconds: float) -> None:
        super().__init__(f"stage {stage} exceeded its {timeout_seconds:g}s timeout")
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class ArtifactIntegrityError(DriftgateError):
    """Pulled artifact bytes do not match their content hash."""
