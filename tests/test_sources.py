import json
import shlex
import sys
import time
from pathlib import Path

import pytest
from conftest import resource, write_manifest

from driftgate.canonical import content_digest
from driftgate.errors import ManifestError, StageFailed, StageTimeout
from driftgate.models import ArtifactRef, CandidateArtifact
from driftgate.sources import DesiredStateSource, ManifestFileSource
from driftgate.toolchain import AnalysisService, ArtifactBuilder, CommandAnalysisService, CommandBuilder


def test_manifest_revision_tracks_content_not_formatting(tmp_path: Path) -> None:
    path = write_manifest(tmp_path / "desired.json", resource("n1", kind="network", cidr="10.0.0.0/16"))
    source = ManifestFileSource(path)
    assert isinstance(source, DesiredStateSource)
    first = source.fetch()
    assert [declaration.resource_id for declaration in first.declarations] == ["n1"]

    path.write_text(json.dumps(json.loads(path.read_text(encoding="utf-8"))), encoding="utf-8")
    assert source.fetch().revision == first.revision

    write_manifest(path, resource("n1", kind="network", cidr="10.1.0.0/16"))
    assert source.fetch().revision != first.revision


def test_invalid_manifest_raises(tmp_path: Path) -> None:
    path = tmp_path / "desired.json"
    path.write_text('{"resources": [{"id": "n1"}]}', encoding="utf-8")
    with pytest.raises(ManifestError):
        ManifestFileSource(path).fetch()


def test_promote_artifact_updates_manifest(tmp_path: Path) -> None:
    path = write_manifest(tmp_path / "desired.json", resource("svc", kind="container-service", replicas=2))
    source = ManifestFileSource(path)
    before = source.fetch().revision
    ref = ArtifactRef(registry="local", digest=content_digest(b"image"), size=5)

    revision = source.promote_artifact("svc", ref)

    desired = source.fetch()
    assert desired.revision == revision != before
    assert desired.declarations[0].attributes == {"replicas": 2, "image": str(ref)}
    with pytest.raises(ManifestError):
        source.promote_artifact("missing", ref)


def test_command_builder_reads_output(tmp_path: Path) -> None:
    script = "open('out.bin', 'wb').write(b'built')"
    builder = CommandBuilder([sys.executable, "-c", script], Path("out.bin"), cwd=tmp_path)
    assert isinstance(builder, ArtifactBuilder)
    assert builder.build() == b"built"


def test_command_builder_failure(tmp_path: Path) -> None:
    builder = CommandBuilder([sys.executable, "-c", "raise SystemExit(3)"], Path("out.bin"), cwd=tmp_path)
    with pytest.raises(StageFailed):
        builder.build()


def test_command_analysis_scores_candidate(tmp_path: Path) -> None:
    artifact = tmp_path / "artifact.bin"
    artifact.write_bytes(b"x" * 40)
    script = "import os, json; print(json.dumps({'score': os.path.getsize(os.environ['DRIFTGATE_ARTIFACT_PATH']) * 2}))"
    service = CommandAnalysisService(shlex.join([sys.executable, "-c", script]))
    assert isinstance(service, AnalysisService)
    candidate = CandidateArtifact(digest=content_digest(b"x" * 40), path=str(artifact), size=40)

    submission_id = service.submit(candidate, "strict")

    result = service.result(submission_id)
    assert result is not None
    assert result.score == 80.0
    assert result.detail == "ruleset=strict"
    assert service.result("unknown") is None


def test_command_analysis_rejects_garbage_output() -> None:
    service = CommandAnalysisService([sys.executable, "-c", "print('looks good to me')"])
    candidate = CandidateArtifact(digest=content_digest(b""), path="/dev/null", size=0)
    with pytest.raises(StageFailed):
        service.submit(candidate, "default")


def test_command_builder_kills_a_command_that_outlives_its_timeout(tmp_path: Path) -> None:
    builder = CommandBuilder([sys.executable, "-c", "import time; time.sleep(30)"], Path("out.bin"), cwd=tmp_path)
    started = time.monotonic()
    with pytest.raises(StageTimeout) as excinfo:
        builder.build(timeout=0.3)
    assert time.monotonic() - started < 10
    assert excinfo.value.stage == "build"


def test_command_analysis_kills_a_command_that_outlives_its_timeout() -> None:
    service = CommandAnalysisService([sys.executable, "-c", "import time; time.sleep(30)"])
    candidate = CandidateArtifact(digest=content_digest(b""), path="/dev/null", size=0)
    started = time.monotonic()
    with pytest.raises(StageTimeout) as excinfo:
        service.submit(candidate, "default", timeout=0.3)
    assert time.monotonic() - started < 10
    assert excinfo.value.stage == "analyze"
