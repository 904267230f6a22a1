from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable

from .executor import ApplyExecutor
from .graph import DeclarationInput, ResourceGraph, ResourceGraphBuilder
from .models import ApplyResult, ArtifactRef, ChangeSet, DesiredState, LockLease, StateSnapshot
from .pipeline import PipelineGateController
from .planner import Planner
from .providers import LocalResourceProvider, ResourceProvider
from .reconciler import ContinuousReconciler
from .registry import ArtifactRegistry
from .settings import RuntimeSettings
from .sources import DesiredStateSource, ManifestFileSource
from .state_store import StateStore
from .toolchain import AnalysisService, ArtifactBuilder

logger = logging.getLogger(__name__)


class Engine:
    """Foreground entry point: wires the store, provider, planner and executor.

    Collaborators default to the local filesystem implementations rooted at
    the paths in ``settings``; any of them can be injected.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        repo_root: Path | None = None,
        store: StateStore | None = None,
        provider: ResourceProvider | None = None,
        source: DesiredStateSource | None = None,
        registry: ArtifactRegistry | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        root = repo_root if repo_root is not None else Path.cwd()
        self.settings = settings
        self.scope = settings.scope
        self.store = store or StateStore(settings.state_root_path(root), lease_seconds=settings.lock_lease_seconds)
        self.provider = provider or LocalResourceProvider(settings.provider_root_path(root))
        self.source = source or ManifestFileSource(settings.manifest_file(root))
        self.registry = registry or ArtifactRegistry(settings.registry_root_path(root))
        self.graph_builder = ResourceGraphBuilder()
        self.planner = Planner()
        self.executor = ApplyExecutor.from_settings(self.provider, self.store, settings, sleep=sleep or time.sleep)

    def desired(self) -> DesiredState:
        return self.source.fetch()

    def build_graph(self, declarations: Iterable[DeclarationInput] | None = None) -> tuple[ResourceGraph, str | None]:
        if declarations is not None:
            return self.graph_builder.build(declarations), None
        desired = self.desired()
        return self.graph_builder.build(desired.declarations), desired.revision

    def state(self) -> StateSnapshot:
        return self.store.read_state(self.scope) or StateSnapshot.empty(self.scope)

    def plan(self, declarations: Iterable[DeclarationInput] | None = None, *, prune: bool = True) -> ChangeSet:
        """Plan the desired state (the source's, unless ``declarations`` are given) against recorded state.

        Read-only: no lock is taken and nothing is mutated.
        """
        graph, revision = self.build_graph(declarations)
        return self.planner.plan(graph, self.state(), prune=prune, desired_revision=revision)

    def apply(
        self,
        change_set: ChangeSet,
        *,
        lease: LockLease | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ApplyResult:
        return self.executor.apply(change_set, lease=lease, cancel_event=cancel_event)

    def plan_and_apply(
        self,
        declarations: Iterable[DeclarationInput] | None = None,
        *,
        prune: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> tuple[ChangeSet, ApplyResult]:
        """Plan and apply under one held lock so the plan's base revision is current."""
        graph, revision = self.build_graph(declarations)
        logger.info("Acquiring scope %s as %s", self.scope, self.settings.holder_id)
        with self.store.lock(self.scope, self.settings.holder_id, wait_seconds=self.settings.lock_wait_seconds) as lease:
            change_set = self.planner.plan(graph, self.state(), prune=prune, desired_revision=revision)
            result = self.executor.apply(change_set, lease=lease, cancel_event=cancel_event)
        return change_set, result

    def reconciler(self, *, prune: bool | None = None) -> ContinuousReconciler:
        settings = self.settings
        if prune is not None and prune != settings.reconcile_prune:
            settings = replace(settings, reconcile_prune=prune)
        return ContinuousReconciler(
            source=self.source,
            provider=self.provider,
            store=self.store,
            executor=self.executor,
            settings=settings,
            planner=self.planner,
            graph_builder=self.graph_builder,
        )

    def pipeline(
        self,
        *,
        builder: ArtifactBuilder,
        analysis: AnalysisService,
        promote_to: str | None = None,
    ) -> PipelineGateController:
        """Release pipeline for this engine; ``promote_to`` names the resource whose image the published artifact becomes."""
        on_published: Callable[[ArtifactRef], None] | None = None
        if promote_to is not None:
            if not isinstance(self.source, ManifestFileSource):
                raise ValueError("artifact promotion requires a manifest file source")
            source = self.source

            def promote(ref: ArtifactRef) -> None:
                source.promote_artifact(promote_to, ref)

            on_published = promote

        return PipelineGateController(
            builder=builder,
            analysis=analysis,
            registry=self.registry,
            settings=self.settings,
            store=self.store,
            on_published=on_published,
        )
