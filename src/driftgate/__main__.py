"""Entry point for `python -m driftgate` and the `driftgate` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from types import FrameType
from typing import Sequence

from dotenv import load_dotenv

from driftgate.engine import Engine
from driftgate.errors import DriftgateError, GraphValidationError, LockContention, LockLost
from driftgate.models import ApplyResult, CycleOutcome, PipelineStatus
from driftgate.planner import render_plan
from driftgate.settings import RuntimeSettings
from driftgate.toolchain import CommandAnalysisService, CommandBuilder

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 2


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="driftgate", description="Declarative infrastructure reconciliation and gated releases")
    parser.add_argument("--repo-root", type=Path, default=None, help="Directory relative paths resolve against (default: cwd)")
    parser.add_argument("--scope", default=None, help="Environment scope (overrides DRIFTGATE_SCOPE)")
    parser.add_argument("--manifest", type=Path, default=None, help="Desired-state manifest (overrides DRIFTGATE_MANIFEST_PATH)")
    parser.add_argument("--state-root", default=None, help="State store directory (overrides DRIFTGATE_STATE_ROOT)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Preview the changes needed to converge to the desired state")
    plan.add_argument("--no-prune", action="store_true", help="Report resources missing from the manifest instead of deleting them")
    plan.add_argument("--json", action="store_true", help="Print the change set as JSON")

    apply = sub.add_parser("apply", help="Plan and apply under the scope lock")
    apply.add_argument("--no-prune", action="store_true", help="Never delete resources missing from the manifest")

    reconcile = sub.add_parser("reconcile", help="Continuously converge live infrastructure")
    reconcile.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    reconcile.add_argument("--prune", action="store_true", default=None, help="Delete orphaned resources")
    reconcile.add_argument("--interval", type=float, default=None, help="Seconds between cycles")

    pipeline = sub.add_parser("pipeline", help="Build, analyze, gate and publish an artifact")
    pipeline.add_argument("--build-cmd", required=True, help="Command that builds the artifact")
    pipeline.add_argument("--artifact", type=Path, required=True, help="File the build command produces")
    pipeline.add_argument("--analysis-cmd", required=True, help='Command that prints {"score": <float>}')
    pipeline.add_argument("--threshold", type=float, default=None, help="Quality gate threshold (0-100)")
    pipeline.add_argument("--promote", default=None, metavar="RESOURCE_ID", help="Point RESOURCE_ID's image at the published artifact")

    state = sub.add_parser("state", help="Show recorded state")
    state.add_argument("--history", action="store_true", help="Show the scope history log instead")
    return parser.parse_args(argv)


def load_env_file(repo_root: Path) -> None:
    env_path = repo_root / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def build_settings(args: argparse.Namespace) -> RuntimeSettings:
    settings = RuntimeSettings.from_env()
    overrides: dict[str, object] = {}
    if args.scope is not None:
        overrides["scope"] = args.scope
    if args.manifest is not None:
        overrides["manifest_path"] = str(args.manifest)
    if args.state_root is not None:
        overrides["state_root"] = args.state_root
    if args.command == "reconcile":
        if args.prune is not None:
            overrides["reconcile_prune"] = args.prune
        if args.interval is not None:
            overrides["reconcile_interval_seconds"] = args.interval
    if args.command == "pipeline" and args.threshold is not None:
        overrides["quality_threshold"] = args.threshold
    return replace(settings, **overrides).normalized() if overrides else settings


def _print_apply(result: ApplyResult) -> None:
    for entry in result.entries:
        suffix = f" ({entry.error_type}: {entry.error})" if entry.error else ""
        print(f"{entry.status.value:9} {entry.action.value:6} {entry.resource_id}{suffix}")
    print(
        f"Apply {result.apply_id}: {len(result.succeeded)} succeeded, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped; revision {result.final_revision}"
    )


def cmd_plan(engine: Engine, args: argparse.Namespace) -> int:
    change_set = engine.plan(prune=not args.no_prune)
    if args.json:
        print(change_set.model_dump_json(indent=2))
    else:
        print(render_plan(change_set))
    return EXIT_OK


def cmd_apply(engine: Engine, args: argparse.Namespace) -> int:
    try:
        change_set, result = engine.plan_and_apply(prune=not args.no_prune)
    except LockLost as exc:
        logging.error("Apply aborted: %s", exc)
        if exc.result is not None:
            _print_apply(exc.result)
        return EXIT_PARTIAL
    print(render_plan(change_set))
    print()
    _print_apply(result)
    return EXIT_OK if result.ok else EXIT_PARTIAL


def cmd_reconcile(engine: Engine, args: argparse.Namespace) -> int:
    reconciler = engine.reconciler()
    if args.once:
        cycle = reconciler.run_cycle()
        print(f"{cycle.cycle_id} {cycle.outcome.value} {cycle.detail}".rstrip())
        if cycle.outcome in {CycleOutcome.INVALID, CycleOutcome.ERROR}:
            return EXIT_ERROR
        return EXIT_PARTIAL if cycle.outcome == CycleOutcome.PARTIAL else EXIT_OK

    stop_event = threading.Event()

    def _stop(signum: int, _frame: FrameType | None) -> None:
        logging.info("Received signal %d; stopping after the current cycle", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    reconciler.run_forever(stop_event)
    return EXIT_OK


def cmd_pipeline(engine: Engine, args: argparse.Namespace, repo_root: Path) -> int:
    controller = engine.pipeline(
        builder=CommandBuilder(args.build_cmd, args.artifact, cwd=repo_root),
        analysis=CommandAnalysisService(args.analysis_cmd),
        promote_to=args.promote,
    )
    run = controller.run()
    for stage in run.stages:
        score = f" score={stage.score:g}" if stage.score is not None else ""
        print(f"{stage.stage.value:12} {stage.outcome.value:7}{score} {stage.detail}".rstrip())
    print(f"run_id={run.run_id} status={run.status.value}")
    if run.artifact_ref is not None:
        print(f"artifact={run.artifact_ref}")
    if run.status == PipelineStatus.SUCCEEDED:
        return EXIT_OK
    print(f"failure_reason={run.failure_reason}")
    return EXIT_PARTIAL if run.gate_rejected else EXIT_ERROR


def cmd_state(engine: Engine, args: argparse.Namespace) -> int:
    if args.history:
        for event in engine.store.read_history(engine.scope):
            print(json.dumps(event, sort_keys=True))
        return EXIT_OK
    print(engine.state().model_dump_json(indent=2))
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    repo_root = (args.repo_root or Path.cwd()).resolve()
    load_env_file(repo_root)
    try:
        settings = build_settings(args)
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return EXIT_ERROR

    engine = Engine(settings, repo_root=repo_root)
    try:
        if args.command == "plan":
            return cmd_plan(engine, args)
        if args.command == "apply":
            return cmd_apply(engine, args)
        if args.command == "reconcile":
            return cmd_reconcile(engine, args)
        if args.command == "pipeline":
            return cmd_pipeline(engine, args, repo_root)
        return cmd_state(engine, args)
    except GraphValidationError as exc:
        logging.error("Desired state is invalid: %s", exc)
        return EXIT_ERROR
    except LockContention as exc:
        logging.error("Scope is busy: %s", exc)
        return EXIT_ERROR
    except DriftgateError as exc:
        logging.error("%s failed: %s", args.command, exc)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
