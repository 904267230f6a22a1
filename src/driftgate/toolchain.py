from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
import uuid
from pathlib import Path
from typing import Protocol, runtime_checkable

from .errors import StageFailed, StageTimeout
from .models import AnalysisResult, CandidateArtifact, StageName

logger = logging.getLogger(__name__)


@runtime_checkable
class ArtifactBuilder(Protocol):
    """Produces the candidate artifact; blocking work is bounded by ``timeout`` seconds."""

    def build(self, *, timeout: float | None = None) -> bytes: ...


@runtime_checkable
class AnalysisService(Protocol):
    """Asynchronous quality analysis: submit once, then poll for the result."""

    def submit(self, candidate: CandidateArtifact, ruleset: str, *, timeout: float | None = None) -> str: ...

    def result(self, submission_id: str) -> AnalysisResult | None: ...


def _argv(command: str | list[str]) -> list[str]:
    argv = shlex.split(command) if isinstance(command, str) else list(command)
    if not argv:
        raise ValueError("command must be non-empty")
    return argv


class CommandBuilder:
    """Builds an artifact by running a command that writes ``output_path``."""

    def __init__(self, command: str | list[str], output_path: Path, *, cwd: Path | None = None) -> None:
        self.argv = _argv(command)
        self.output_path = output_path
        self.cwd = cwd

    def build(self, *, timeout: float | None = None) -> bytes:
        """Run the build command and return the bytes it wrote.

        Raises:
            StageTimeout: If the command outlives ``timeout``; the child is killed.
            StageFailed: If the command is missing, exits non-zero or
                produces no output file.
        """
        logger.info("Running build command: %s", shlex.join(self.argv))
        try:
            subprocess.run(self.argv, cwd=self.cwd, check=True, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise StageTimeout(StageName.BUILD.value, exc.timeout) from exc
        except FileNotFoundError as exc:
            raise StageFailed(f"build command not found: {self.argv[0]}") from exc
        except subprocess.CalledProcessError as exc:
            raise StageFailed(f"build command exited {exc.returncode}: {(exc.stderr or '').strip()[-500:]}") from exc
        output = self.output_path if self.output_path.is_absolute() or self.cwd is None else self.cwd / self.output_path
        if not output.is_file():
            raise StageFailed(f"build command did not produce {output}")
        return output.read_bytes()


class CommandAnalysisService:
    """Scores a candidate by running a command that prints ``{"score": <float>}``.

    The command sees the staged candidate through ``DRIFTGATE_ARTIFACT_PATH``
    and ``DRIFTGATE_ARTIFACT_DIGEST``.  Scoring happens at submission; results
    are retained by submission id so polling never re-runs the analysis.
    """

    def __init__(self, command: str | list[str], *, threshold: float | None = None) -> None:
        self.argv = _argv(command)
        self.threshold = threshold
        self._results: dict[str, AnalysisResult] = {}
        self._lock = threading.Lock()

    def submit(self, candidate: CandidateArtifact, ruleset: str, *, timeout: float | None = None) -> str:
        submission_id = f"AN-{uuid.uuid4().hex[:8]}"
        env = {
            **os.environ,
            "DRIFTGATE_ARTIFACT_PATH": candidate.path,
            "DRIFTGATE_ARTIFACT_DIGEST": candidate.digest,
            "DRIFTGATE_ANALYSIS_RULESET": ruleset,
        }
        try:
            completed = subprocess.run(
                self.argv, env=env, check=True, capture_output=True, text=True, timeout=timeout
            )
        except subprocess.TimeoutExpired as exc:
            raise StageTimeout(StageName.ANALYZE.value, exc.timeout) from exc
        except FileNotFoundError as exc:
            raise StageFailed(f"analysis command not found: {self.argv[0]}") from exc
        except subprocess.CalledProcessError as exc:
            raise StageFailed(f"analysis command exited {exc.returncode}: {(exc.stderr or '').strip()[-500:]}") from exc
        score = self._parse_score(completed.stdout)
        passed = self.threshold is None or score >= self.threshold
        with self._lock:
            self._results[submission_id] = AnalysisResult(
                submission_id=submission_id,
                score=score,
                passed=passed,
                detail=f"ruleset={ruleset}",
            )
        logger.info("Analysis %s scored %s at %.2f", submission_id, candidate.digest, score)
        return submission_id

    def result(self, submission_id: str) -> AnalysisResult | None:
        with self._lock:
            return self._results.get(submission_id)

    @staticmethod
    def _parse_score(stdout: str) -> float:
        lines = [line for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise StageFailed("analysis command printed nothing")
        try:
            payload = json.loads(lines[-1])
            return float(payload["score"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise StageFailed(f"analysis output is not a score document: {lines[-1][:200]!r}") from exc
