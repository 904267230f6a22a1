import json
import os
from pathlib import Path
from typing import Any, Callable

import pytest

from driftgate.errors import ProviderTransient
from driftgate.models import ObservedResource, ResourceKind
from driftgate.providers import LocalResourceProvider
from driftgate.settings import RuntimeSettings
from driftgate.state_store import StateStore


class ScriptedProvider(LocalResourceProvider):
    """Local provider with per-resource failure scripts for exercising the executor."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.create_errors: dict[str, list[Exception]] = {}
        self.update_errors: dict[str, list[Exception]] = {}
        self.land_then_fail: set[str] = set()
        self.before_create: dict[str, Callable[[], None]] = {}
        self.create_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.lookup_calls: list[str] = []

    def create(self, kind: ResourceKind, resource_id: str, attributes: dict[str, Any]) -> ObservedResource:
        self.create_calls.append(resource_id)
        hook = self.before_create.get(resource_id)
        if hook is not None:
            hook()
        errors = self.create_errors.get(resource_id)
        if errors:
            raise errors.pop(0)
        created = super().create(kind, resource_id, attributes)
        if resource_id in self.land_then_fail:
            self.land_then_fail.discard(resource_id)
            raise ProviderTransient(f"timed out waiting for {resource_id}")
        return created

    def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        external_id: str,
        attributes: dict[str, Any],
    ) -> ObservedResource:
        errors = self.update_errors.get(resource_id)
        if errors:
            raise errors.pop(0)
        return super().update(kind, resource_id, external_id, attributes)

    def delete(self, kind: ResourceKind, resource_id: str, external_id: str) -> None:
        self.delete_calls.append(resource_id)
        super().delete(kind, resource_id, external_id)

    def lookup(self, kind: ResourceKind, resource_id: str) -> ObservedResource | None:
        self.lookup_calls.append(resource_id)
        return super().lookup(kind, resource_id)


def resource(resource_id: str, kind: str = "compute", depends_on: list[str] | None = None, **attributes: Any) -> dict[str, Any]:
    return {"id": resource_id, "kind": kind, "attributes": attributes, "depends_on": depends_on or []}


def write_manifest(path: Path, *resources: dict[str, Any]) -> Path:
    path.write_text(json.dumps({"resources": list(resources)}, indent=2), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def clean_driftgate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("DRIFTGATE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(
        holder_id="test-holder",
        apply_backoff_base_seconds=0.5,
        apply_backoff_max_seconds=4.0,
        apply_max_parallel=1,
        stage_timeout_seconds=5.0,
        analysis_poll_seconds=0.0,
        reconcile_interval_seconds=0.0,
    ).normalized()


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state", lease_seconds=60)


@pytest.fixture
def provider(tmp_path: Path) -> ScriptedProvider:
    return ScriptedProvider(tmp_path / "provider")
