from pathlib import Path

import pytest

from driftgate.settings import RuntimeSettings


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings.scope == "default"
    assert settings.lock_lease_seconds == 300
    assert settings.apply_max_attempts == 4
    assert settings.quality_threshold == 80.0
    assert settings.reconcile_prune is False
    assert settings.holder_id


def test_runtime_settings_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DRIFTGATE_SCOPE", "  staging ")
    monkeypatch.setenv("DRIFTGATE_HOLDER_ID", "ci-runner-7")
    monkeypatch.setenv("DRIFTGATE_APPLY_MAX_PARALLEL", "8")
    monkeypatch.setenv("DRIFTGATE_QUALITY_THRESHOLD", "92.5")
    monkeypatch.setenv("DRIFTGATE_RECONCILE_PRUNE", "yes")
    monkeypatch.setenv("DRIFTGATE_RECONCILE_INTERVAL", "15")
    settings = RuntimeSettings.from_env()
    assert settings.scope == "staging"
    assert settings.holder_id == "ci-runner-7"
    assert settings.apply_max_parallel == 8
    assert settings.quality_threshold == 92.5
    assert settings.reconcile_prune is True
    assert settings.reconcile_interval_seconds == 15.0


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("DRIFTGATE_APPLY_MAX_ATTEMPTS", "abc"),
        ("DRIFTGATE_APPLY_MAX_ATTEMPTS", "0"),
        ("DRIFTGATE_LOCK_LEASE_SECONDS", "999999"),
        ("DRIFTGATE_QUALITY_THRESHOLD", "150"),
        ("DRIFTGATE_STAGE_TIMEOUT_SECONDS", "nan"),
        ("DRIFTGATE_RECONCILE_PRUNE", "maybe"),
        ("DRIFTGATE_SCOPE", "   "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_backoff_cap_never_below_base() -> None:
    settings = RuntimeSettings(apply_backoff_base_seconds=5.0, apply_backoff_max_seconds=1.0).normalized()
    assert settings.apply_backoff_max_seconds == 5.0


def test_relative_paths_resolve_against_repo_root(tmp_path: Path) -> None:
    settings = RuntimeSettings(state_root="state", manifest_path="/etc/desired.json").normalized()
    assert settings.state_root_path(tmp_path) == tmp_path / "state"
    assert settings.manifest_file(tmp_path) == Path("/etc/desired.json")
