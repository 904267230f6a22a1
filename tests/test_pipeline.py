import sys
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from driftgate.canonical import content_digest
from driftgate.errors import IllegalTransition, StageFailed
from driftgate.models import (
    AnalysisResult,
    ArtifactRef,
    CandidateArtifact,
    PipelineRun,
    PipelineStatus,
    StageName,
    StageOutcome,
)
from driftgate.pipeline import GATE_REJECTED, PipelineGateController
from driftgate.registry import ArtifactRegistry
from driftgate.settings import RuntimeSettings
from driftgate.state_store import StateStore
from driftgate.toolchain import CommandBuilder

ARTIFACT = b"container image layer bytes"


class StaticBuilder:
    def __init__(self, content: bytes = ARTIFACT, failures: int = 0) -> None:
        self.content = content
        self.failures = failures
        self.calls = 0

    def build(self, *, timeout: float | None = None) -> bytes:
        self.calls += 1
        if self.calls <= self.failures:
            raise StageFailed("compiler crashed")
        return self.content


class FakeAnalysis:
    def __init__(self, score: float | None, *, pending_polls: int = 0) -> None:
        self.score = score
        self.pending_polls = pending_polls
        self.submissions: list[CandidateArtifact] = []
        self.staged_exists: list[bool] = []
        self.polls = 0

    def submit(self, candidate: CandidateArtifact, ruleset: str, *, timeout: float | None = None) -> str:
        self.submissions.append(candidate)
        self.staged_exists.append(Path(candidate.path).is_file())
        return f"sub-{len(self.submissions)}"

    def result(self, submission_id: str) -> AnalysisResult | None:
        self.polls += 1
        if self.score is None or self.polls <= self.pending_polls:
            return None
        return AnalysisResult(submission_id=submission_id, score=self.score, passed=True)


def _controller(
    tmp_path: Path,
    settings: RuntimeSettings,
    *,
    builder: StaticBuilder | None = None,
    analysis: FakeAnalysis | None = None,
    store: StateStore | None = None,
    on_published=None,
) -> tuple[PipelineGateController, ArtifactRegistry]:
    registry = ArtifactRegistry(tmp_path / "registry")
    controller = PipelineGateController(
        builder=builder or StaticBuilder(),
        analysis=analysis or FakeAnalysis(95.0),
        registry=registry,
        settings=settings,
        store=store,
        on_published=on_published,
        sleep=lambda _seconds: None,
    )
    return controller, registry


def _outcomes(run: PipelineRun) -> list[tuple[str, str]]:
    return [(result.stage.value, result.outcome.value) for result in run.stages]


def test_passing_run_publishes_and_promotes(tmp_path: Path, settings: RuntimeSettings, store: StateStore) -> None:
    published: list[ArtifactRef] = []
    controller, registry = _controller(tmp_path, settings, store=store, on_published=published.append)

    run = controller.run()

    assert run.status == PipelineStatus.SUCCEEDED
    assert run.artifact_digest == content_digest(ARTIFACT)
    assert run.artifact_ref is not None
    assert published == [run.artifact_ref]
    assert registry.pull(run.artifact_ref) == (ARTIFACT, content_digest(ARTIFACT))
    assert _outcomes(run) == [
        ("build", "passed"),
        ("analyze", "passed"),
        ("quality-gate", "passed"),
        ("publish", "passed"),
    ]
    assert run.stage_result(StageName.ANALYZE).score == 95.0
    assert store.read_history(settings.scope)[-1]["event"] == "pipeline_run"


def test_score_equal_to_threshold_passes(tmp_path: Path, settings: RuntimeSettings) -> None:
    controller, _ = _controller(tmp_path, settings, analysis=FakeAnalysis(settings.quality_threshold))
    assert controller.run().status == PipelineStatus.SUCCEEDED


def test_score_below_threshold_is_rejected_and_never_published(tmp_path: Path, settings: RuntimeSettings) -> None:
    published: list[ArtifactRef] = []
    controller, registry = _controller(
        tmp_path, settings, analysis=FakeAnalysis(settings.quality_threshold - 0.1), on_published=published.append
    )

    run = controller.run()

    assert run.status == PipelineStatus.FAILED
    assert run.failure_reason == GATE_REJECTED
    assert run.gate_rejected
    assert run.artifact_ref is None
    assert published == []
    assert not registry.exists(content_digest(ARTIFACT))
    assert _outcomes(run)[-2:] == [("quality-gate", "failed"), ("publish", "skipped")]


def test_build_is_retried_within_its_budget(tmp_path: Path, settings: RuntimeSettings) -> None:
    builder = StaticBuilder(failures=1)
    controller, _ = _controller(tmp_path, settings, builder=builder)

    run = controller.run()

    assert run.status == PipelineStatus.SUCCEEDED
    assert builder.calls == 2
    assert run.stage_result(StageName.BUILD).attempts == 2


def test_build_failure_skips_remaining_stages(tmp_path: Path, settings: RuntimeSettings) -> None:
    builder = StaticBuilder(failures=settings.stage_max_attempts)
    analysis = FakeAnalysis(99.0)
    controller, _ = _controller(tmp_path, settings, builder=builder, analysis=analysis)

    run = controller.run()

    assert run.status == PipelineStatus.FAILED
    assert run.failure_reason is not None and "compiler crashed" in run.failure_reason
    assert not run.gate_rejected
    assert analysis.submissions == []
    assert _outcomes(run) == [
        ("build", "failed"),
        ("analyze", "skipped"),
        ("quality-gate", "skipped"),
        ("publish", "skipped"),
    ]


def test_analysis_is_polled_without_resubmission(tmp_path: Path, settings: RuntimeSettings) -> None:
    analysis = FakeAnalysis(88.0, pending_polls=3)
    controller, _ = _controller(tmp_path, settings, analysis=analysis)

    run = controller.run()

    assert run.status == PipelineStatus.SUCCEEDED
    assert len(analysis.submissions) == 1
    assert analysis.polls == 4


def test_analysis_timeout_fails_the_run(tmp_path: Path, settings: RuntimeSettings) -> None:
    analysis = FakeAnalysis(None)
    fast = replace(settings, stage_timeout_seconds=0.2, analysis_poll_seconds=0.01)
    registry = ArtifactRegistry(tmp_path / "registry")
    controller = PipelineGateController(
        builder=StaticBuilder(),
        analysis=analysis,
        registry=registry,
        settings=fast,
        sleep=time.sleep,
    )

    run = controller.run()

    assert run.status == PipelineStatus.FAILED
    assert run.failure_reason is not None and "timeout" in run.failure_reason
    assert len(analysis.submissions) == 1
    assert run.stage_result(StageName.ANALYZE).outcome == StageOutcome.FAILED
    assert run.stage_result(StageName.PUBLISH).outcome == StageOutcome.SKIPPED


def test_candidate_is_staged_then_removed(tmp_path: Path, settings: RuntimeSettings) -> None:
    analysis = FakeAnalysis(90.0)
    controller, _ = _controller(tmp_path, settings, analysis=analysis)

    controller.run()

    assert analysis.staged_exists == [True]
    assert not Path(analysis.submissions[0].path).exists()


def test_cancelled_run_fails_before_building(tmp_path: Path, settings: RuntimeSettings) -> None:
    builder = StaticBuilder()
    controller, _ = _controller(tmp_path, settings, builder=builder)
    cancel = threading.Event()
    cancel.set()

    run = controller.run(cancel_event=cancel)

    assert run.status == PipelineStatus.FAILED
    assert run.failure_reason == "cancelled"
    assert builder.calls == 0
    assert all(result.outcome == StageOutcome.SKIPPED for result in run.stages)


def test_pipeline_transitions_are_enforced() -> None:
    run = PipelineRun()
    with pytest.raises(IllegalTransition):
        run.transition(PipelineStatus.PUBLISHING)
    run.transition(PipelineStatus.BUILDING)
    run.transition(PipelineStatus.FAILED)
    assert run.terminal
    with pytest.raises(IllegalTransition):
        run.transition(PipelineStatus.BUILDING)


class SlowRegistry(ArtifactRegistry):
    def __init__(self, root: Path, delay: float) -> None:
        super().__init__(root)
        self.delay = delay

    def push(self, content: bytes, digest: str) -> ArtifactRef:
        time.sleep(self.delay)
        return super().push(content, digest)


def test_publish_that_times_out_never_promotes(tmp_path: Path, settings: RuntimeSettings) -> None:
    published: list[ArtifactRef] = []
    fast = replace(settings, stage_timeout_seconds=0.2, stage_max_attempts=1)
    controller = PipelineGateController(
        builder=StaticBuilder(),
        analysis=FakeAnalysis(95.0),
        registry=SlowRegistry(tmp_path / "registry", delay=0.5),
        settings=fast,
        on_published=published.append,
    )

    run = controller.run()
    time.sleep(0.8)

    assert run.status == PipelineStatus.FAILED
    assert run.failure_reason is not None and "publish" in run.failure_reason and "timeout" in run.failure_reason
    assert run.artifact_ref is None
    assert published == []


def test_build_command_is_stopped_when_the_stage_times_out(tmp_path: Path, settings: RuntimeSettings) -> None:
    analysis = FakeAnalysis(95.0)
    slow = CommandBuilder([sys.executable, "-c", "import time; time.sleep(30)"], Path("out.bin"), cwd=tmp_path)
    fast = replace(settings, stage_timeout_seconds=0.3, stage_max_attempts=1)
    controller = PipelineGateController(
        builder=slow,
        analysis=analysis,
        registry=ArtifactRegistry(tmp_path / "registry"),
        settings=fast,
    )

    started = time.monotonic()
    run = controller.run()

    assert time.monotonic() - started < 10
    assert run.status == PipelineStatus.FAILED
    assert run.failure_reason is not None and "build" in run.failure_reason
    assert analysis.submissions == []


def test_gate_records_the_service_verdict(tmp_path: Path, settings: RuntimeSettings) -> None:
    controller, _ = _controller(tmp_path, settings)

    run = controller.run()

    gate = run.stage_result(StageName.QUALITY_GATE)
    assert gate.outcome == StageOutcome.PASSED
    assert "service verdict: passed" in gate.detail
