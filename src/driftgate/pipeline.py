"""Gated release pipeline: build, analyze, quality gate, publish.

The run is a LangGraph ``StateGraph`` whose nodes mirror the pipeline
statuses.  Every node moves the ``PipelineRun`` along an edge allowed by
``PIPELINE_STATUS_TRANSITIONS`` and routes straight to ``finalize`` once the
run has failed, so a rejected or broken candidate never reaches the registry.
"""

from __future__ import annotations

import logging
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable, TypedDict, TypeVar

from langgraph.graph import END, START, StateGraph

from .canonical import content_digest
from .errors import StageTimeout
from .models import (
    STAGE_ORDER,
    AnalysisResult,
    ArtifactRef,
    CandidateArtifact,
    PipelineRun,
    PipelineStatus,
    StageName,
    StageOutcome,
    StageResult,
    utc_now,
)
from .registry import ArtifactRegistry
from .settings import RuntimeSettings
from .state_store import StateStore
from .toolchain import AnalysisService, ArtifactBuilder

logger = logging.getLogger(__name__)

T = TypeVar("T")

GATE_REJECTED = "gate rejected"


class PipelineGraphState(TypedDict, total=False):
    run: PipelineRun
    staging_dir: str
    cancel_event: threading.Event | None
    candidate: CandidateArtifact
    content: bytes
    analysis: AnalysisResult


class PipelineGateController:
    """Drives one artifact through build, analysis, the quality gate and publish."""

    def __init__(
        self,
        *,
        builder: ArtifactBuilder,
        analysis: AnalysisService,
        registry: ArtifactRegistry,
        settings: RuntimeSettings,
        store: StateStore | None = None,
        on_published: Callable[[ArtifactRef], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.builder = builder
        self.analysis = analysis
        self.registry = registry
        self.settings = settings
        self.store = store
        self.on_published = on_published
        self._sleep = sleep
        self._clock = clock
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineGraphState)
        graph.add_node("build", self._build_node)
        graph.add_node("analyze", self._analyze_node)
        graph.add_node("gate", self._gate_node)
        graph.add_node("publish", self._publish_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "build")
        graph.add_conditional_edges("build", self._route("analyze"), {"analyze": "analyze", "finalize": "finalize"})
        graph.add_conditional_edges("analyze", self._route("gate"), {"gate": "gate", "finalize": "finalize"})
        graph.add_conditional_edges("gate", self._route("publish"), {"publish": "publish", "finalize": "finalize"})
        graph.add_edge("publish", "finalize")
        graph.add_edge("finalize", END)
        return graph

    @staticmethod
    def _route(next_node: str) -> Callable[[PipelineGraphState], str]:
        def route(state: PipelineGraphState) -> str:
            return "finalize" if state["run"].status == PipelineStatus.FAILED else next_node

        return route

    def run(self, *, cancel_event: threading.Event | None = None) -> PipelineRun:
        """Execute one pipeline run to a terminal status and return it.

        The candidate is staged in a per-run temporary directory that is
        removed on every exit path.  Stage failures, timeouts and gate
        rejections end the run as ``failed``; they are not raised.
        """
        run = PipelineRun()
        logger.info("Pipeline run %s started", run.run_id)
        with tempfile.TemporaryDirectory(prefix=f"driftgate-{run.run_id}-") as staging_dir:
            result = self.graph.invoke(
                {"run": run, "staging_dir": staging_dir, "cancel_event": cancel_event},
                config={"recursion_limit": self.settings.recursion_limit},
            )
        return result["run"]

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fail(run: PipelineRun, reason: str) -> None:
        run.failure_reason = reason
        run.transition(PipelineStatus.FAILED)
        logger.warning("Pipeline run %s failed: %s", run.run_id, reason)

    @staticmethod
    def _record(
        run: PipelineRun,
        stage: StageName,
        outcome: StageOutcome,
        *,
        attempts: int = 0,
        score: float | None = None,
        detail: str = "",
    ) -> None:
        run.stages.append(StageResult(stage=stage, outcome=outcome, attempts=attempts, score=score, detail=detail))

    def _cancelled(self, state: PipelineGraphState) -> bool:
        cancel_event = state.get("cancel_event")
        if cancel_event is None or not cancel_event.is_set():
            return False
        self._fail(state["run"], "cancelled")
        return True

    def _remaining(self, deadline: float) -> float:
        return max(deadline - self._clock(), 0.0)

    def _run_stage(
        self,
        run: PipelineRun,
        stage: StageName,
        operation: Callable[[float], T],
        *,
        on_success: Callable[[T], None] | None = None,
    ) -> T | None:
        """Run ``operation`` with bounded retries under one stage-wide timeout.

        ``operation`` runs on a worker thread and receives the monotonic
        deadline; it is expected to bound its own blocking calls by it.
        ``on_success`` runs on the calling thread, only while the deadline has
        not passed, so nothing it does can happen after the stage timed out.

        Returns:
            The operation's value, or None after recording the failure and
            failing the run.
        """
        timeout = self.settings.stage_timeout_seconds
        deadline = self._clock() + timeout
        last_error = ""
        for attempt in range(1, self.settings.stage_max_attempts + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._timed_out(run, stage, attempt - 1, StageTimeout(stage.value, timeout))
            pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"driftgate-{stage.value}")
            try:
                future = pool.submit(operation, deadline)
                value = future.result(timeout=remaining)
                if self._clock() >= deadline:
                    raise StageTimeout(stage.value, timeout)
                if on_success is not None:
                    on_success(value)
            except (FutureTimeout, StageTimeout):
                return self._timed_out(run, stage, attempt, StageTimeout(stage.value, timeout))
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Stage %s of run %s failed (attempt %d/%d): %s",
                    stage.value,
                    run.run_id,
                    attempt,
                    self.settings.stage_max_attempts,
                    last_error,
                )
                continue
            finally:
                pool.shutdown(wait=False, cancel_futures=True)
            self._record(run, stage, StageOutcome.PASSED, attempts=attempt)
            return value

        self._record(run, stage, StageOutcome.FAILED, attempts=self.settings.stage_max_attempts, detail=last_error)
        self._fail(run, f"{stage.value} failed: {last_error}")
        return None

    def _timed_out(self, run: PipelineRun, stage: StageName, attempts: int, error: StageTimeout) -> None:
        self._record(run, stage, StageOutcome.FAILED, attempts=attempts, detail=str(error))
        self._fail(run, str(error))
        return None

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _build_node(self, state: PipelineGraphState) -> dict[str, Any]:
        run = state["run"]
        if self._cancelled(state):
            return {"run": run}
        run.transition(PipelineStatus.BUILDING)
        content = self._run_stage(
            run, StageName.BUILD, lambda deadline: self.builder.build(timeout=self._remaining(deadline))
        )
        if content is None:
            return {"run": run}

        digest = content_digest(content)
        path = Path(state["staging_dir"]) / digest.replace(":", "-")
        path.write_bytes(content)
        run.artifact_digest = digest
        candidate = CandidateArtifact(digest=digest, path=str(path), size=len(content))
        logger.info("Run %s built candidate %s (%d bytes)", run.run_id, digest, len(content))
        return {"run": run, "candidate": candidate, "content": content}

    def _analyze_node(self, state: PipelineGraphState) -> dict[str, Any]:
        run = state["run"]
        if self._cancelled(state):
            return {"run": run}
        run.transition(PipelineStatus.ANALYZING)
        candidate = state["candidate"]
        submission: dict[str, str] = {}

        def analyze(deadline: float) -> AnalysisResult:
            # One submission per run; retries only resume polling.
            if "id" not in submission:
                submission["id"] = self.analysis.submit(
                    candidate, self.settings.analysis_ruleset, timeout=self._remaining(deadline)
                )
            while True:
                result = self.analysis.result(submission["id"])
                if result is not None:
                    return result
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise StageTimeout(StageName.ANALYZE.value, self.settings.stage_timeout_seconds)
                self._sleep(min(self.settings.analysis_poll_seconds, remaining))

        analysis = self._run_stage(run, StageName.ANALYZE, analyze)
        if analysis is None:
            return {"run": run}
        run.stages[-1].score = analysis.score
        return {"run": run, "analysis": analysis}

    def _gate_node(self, state: PipelineGraphState) -> dict[str, Any]:
        run = state["run"]
        if self._cancelled(state):
            return {"run": run}
        run.transition(PipelineStatus.GATE_EVALUATION)
        analysis = state["analysis"]
        score = analysis.score
        threshold = self.settings.quality_threshold
        # The configured threshold decides; the service's own verdict is only recorded.
        verdict = "passed" if analysis.passed else "failed"
        detail = f"score {score:g} vs threshold {threshold:g} (service verdict: {verdict})"
        if score >= threshold:
            self._record(run, StageName.QUALITY_GATE, StageOutcome.PASSED, attempts=1, score=score, detail=detail)
            logger.info("Run %s passed the quality gate (%s)", run.run_id, detail)
        else:
            self._record(run, StageName.QUALITY_GATE, StageOutcome.FAILED, attempts=1, score=score, detail=detail)
            self._fail(run, GATE_REJECTED)
        return {"run": run}

    def _publish_node(self, state: PipelineGraphState) -> dict[str, Any]:
        run = state["run"]
        if self._cancelled(state):
            return {"run": run}
        run.transition(PipelineStatus.PUBLISHING)
        content = state["content"]
        digest = state["candidate"].digest

        ref = self._run_stage(
            run,
            StageName.PUBLISH,
            lambda _deadline: self.registry.push(content, digest),
            on_success=self.on_published,
        )
        if ref is not None:
            run.artifact_ref = ref
            logger.info("Run %s published %s", run.run_id, ref)
        return {"run": run}

    def _finalize_node(self, state: PipelineGraphState) -> dict[str, Any]:
        run = state["run"]
        if run.status == PipelineStatus.PUBLISHING:
            run.transition(PipelineStatus.SUCCEEDED)
        elif run.status != PipelineStatus.FAILED:
            self._fail(run, f"run ended in unexpected status {run.status.value}")
        recorded = {result.stage for result in run.stages}
        for stage in STAGE_ORDER:
            if stage not in recorded:
                self._record(run, stage, StageOutcome.SKIPPED)
        run.stages.sort(key=lambda result: STAGE_ORDER.index(result.stage))
        run.finished_at = utc_now()
        if self.store is not None:
            self.store.append_history(
                self.settings.scope,
                {"event": "pipeline_run", "run": run.model_dump(mode="json")},
            )
        logger.info("Pipeline run %s finished: %s", run.run_id, run.status.value)
        return {"run": run}
