from importlib.metadata import version

from .engine import Engine
from .errors import (
    ApplyFailed,
    ArtifactIntegrityError,
    CycleDetected,
    DependencyFailed,
    DriftConflict,
    DriftgateError,
    DuplicateIdentifier,
    GraphValidationError,
    IllegalTransition,
    LockContention,
    LockLost,
    ManifestError,
    ProviderError,
    ProviderPermanent,
    ProviderRejected,
    ProviderTransient,
    ResourceAlreadyExists,
    ResourceNotFound,
    RevisionConflict,
    StageFailed,
    StageTimeout,
    StaleToken,
    UnresolvedDependency,
)
from .executor import ApplyExecutor
from .graph import ResourceGraph, ResourceGraphBuilder, load_manifest, stable_topological_order
from .models import (
    ApplyResult,
    ArtifactRef,
    ChangeAction,
    ChangeSet,
    ChangeSetEntry,
    CycleOutcome,
    DesiredState,
    DriftKind,
    EntryStatus,
    PipelineRun,
    PipelineStatus,
    ReconcileCycle,
    ResourceDeclaration,
    ResourceKind,
    StageName,
    StateRecord,
    StateSnapshot,
)
from .pipeline import PipelineGateController
from .planner import Planner, render_plan
from .providers import LocalResourceProvider, ResourceProvider
from .reconciler import ContinuousReconciler
from .registry import ArtifactRegistry
from .settings import RuntimeSettings
from .sources import DesiredStateSource, ManifestFileSource
from .state_store import StateStore
from .toolchain import AnalysisService, ArtifactBuilder, CommandAnalysisService, CommandBuilder


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AnalysisService",
    "ApplyExecutor",
    "ApplyFailed",
    "ApplyResult",
    "ArtifactBuilder",
    "ArtifactIntegrityError",
    "ArtifactRef",
    "ArtifactRegistry",
    "ChangeAction",
    "ChangeSet",
    "ChangeSetEntry",
    "CommandAnalysisService",
    "CommandBuilder",
    "ContinuousReconciler",
    "CycleDetected",
    "CycleOutcome",
    "DependencyFailed",
    "DesiredState",
    "DesiredStateSource",
    "DriftConflict",
    "DriftKind",
    "DriftgateError",
    "DuplicateIdentifier",
    "Engine",
    "EntryStatus",
    "GraphValidationError",
    "IllegalTransition",
    "LocalResourceProvider",
    "LockContention",
    "LockLost",
    "ManifestError",
    "ManifestFileSource",
    "PipelineGateController",
    "PipelineRun",
    "PipelineStatus",
    "Planner",
    "ProviderError",
    "ProviderPermanent",
    "ProviderRejected",
    "ProviderTransient",
    "ReconcileCycle",
    "ResourceAlreadyExists",
    "ResourceDeclaration",
    "ResourceGraph",
    "ResourceGraphBuilder",
    "ResourceKind",
    "ResourceNotFound",
    "ResourceProvider",
    "RevisionConflict",
    "RuntimeSettings",
    "StageFailed",
    "StageName",
    "StageTimeout",
    "StaleToken",
    "StateRecord",
    "StateSnapshot",
    "StateStore",
    "UnresolvedDependency",
    "get_version",
    "load_manifest",
    "render_plan",
    "stable_topological_order",
]
