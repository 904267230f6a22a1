from __future__ import annotations

import os
import socket
from dataclasses import dataclass, replace
from pathlib import Path


def default_holder_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_root: str = "state_store"
    scope: str = "default"
    manifest_path: str = "desired_state.json"
    provider_root: str = "state_store/provider"
    registry_root: str = "state_store/registry"
    holder_id: str = ""
    lock_lease_seconds: int = 300
    lock_wait_seconds: float = 0.0
    apply_max_attempts: int = 4
    apply_backoff_base_seconds: float = 0.5
    apply_backoff_max_seconds: float = 30.0
    apply_max_parallel: int = 4
    stage_max_attempts: int = 2
    stage_timeout_seconds: float = 600.0
    analysis_poll_seconds: float = 2.0
    analysis_ruleset: str = "default"
    quality_threshold: float = 80.0
    reconcile_interval_seconds: float = 60.0
    reconcile_prune: bool = False
    recursion_limit: int = 100

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_root=os.getenv("DRIFTGATE_STATE_ROOT", "state_store"),
            scope=os.getenv("DRIFTGATE_SCOPE", "default"),
            manifest_path=os.getenv("DRIFTGATE_MANIFEST_PATH", "desired_state.json"),
            provider_root=os.getenv("DRIFTGATE_PROVIDER_ROOT", "state_store/provider"),
            registry_root=os.getenv("DRIFTGATE_REGISTRY_ROOT", "state_store/registry"),
            holder_id=os.getenv("DRIFTGATE_HOLDER_ID", ""),
            lock_lease_seconds=_get_env_int("DRIFTGATE_LOCK_LEASE_SECONDS", default=300, minimum=1, maximum=86_400),
            lock_wait_seconds=_get_env_float("DRIFTGATE_LOCK_WAIT_SECONDS", default=0.0, minimum=0.0),
            apply_max_attempts=_get_env_int("DRIFTGATE_APPLY_MAX_ATTEMPTS", default=4, minimum=1, maximum=20),
            apply_backoff_base_seconds=_get_env_float("DRIFTGATE_APPLY_BACKOFF_BASE", default=0.5, minimum=0.0),
            apply_backoff_max_seconds=_get_env_float("DRIFTGATE_APPLY_BACKOFF_MAX", default=30.0, minimum=0.0),
            apply_max_parallel=_get_env_int("DRIFTGATE_APPLY_MAX_PARALLEL", default=4, minimum=1, maximum=64),
            stage_max_attempts=_get_env_int("DRIFTGATE_STAGE_MAX_ATTEMPTS", default=2, minimum=1, maximum=10),
            stage_timeout_seconds=_get_env_float("DRIFTGATE_STAGE_TIMEOUT_SECONDS", default=600.0, minimum=0.01),
            analysis_poll_seconds=_get_env_float("DRIFTGATE_ANALYSIS_POLL_SECONDS", default=2.0, minimum=0.0),
            analysis_ruleset=os.getenv("DRIFTGATE_ANALYSIS_RULESET", "default"),
            quality_threshold=_get_env_float("DRIFTGATE_QUALITY_THRESHOLD", default=80.0, minimum=0.0),
            reconcile_interval_seconds=_get_env_float("DRIFTGATE_RECONCILE_INTERVAL", default=60.0, minimum=0.0),
            reconcile_prune=_get_env_bool("DRIFTGATE_RECONCILE_PRUNE", default=False),
            recursion_limit=_get_env_int("DRIFTGATE_RECURSION_LIMIT", default=100, minimum=10, maximum=10_000),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- String field validation --
        if not self.state_root.strip():
            raise ValueError("DRIFTGATE_STATE_ROOT must be non-empty")
        scope = self.scope.strip()
        if not scope:
            raise ValueError("DRIFTGATE_SCOPE must be non-empty")
        if not self.manifest_path.strip():
            raise ValueError("DRIFTGATE_MANIFEST_PATH must be non-empty")
        if not self.analysis_ruleset.strip():
            raise ValueError("DRIFTGATE_ANALYSIS_RULESET must be non-empty")

        # -- Numeric bounds validation --
        if self.lock_lease_seconds < 1:
            raise ValueError(f"DRIFTGATE_LOCK_LEASE_SECONDS must be >= 1, got: {self.lock_lease_seconds}")
        if self.apply_max_attempts < 1:
            raise ValueError(f"DRIFTGATE_APPLY_MAX_ATTEMPTS must be >= 1, got: {self.apply_max_attempts}")
        if self.apply_max_parallel < 1:
            raise ValueError(f"DRIFTGATE_APPLY_MAX_PARALLEL must be >= 1, got: {self.apply_max_parallel}")
        if self.stage_max_attempts < 1:
            raise ValueError(f"DRIFTGATE_STAGE_MAX_ATTEMPTS must be >= 1, got: {self.stage_max_attempts}")
        if self.stage_timeout_seconds <= 0:
            raise ValueError(f"DRIFTGATE_STAGE_TIMEOUT_SECONDS must be > 0, got: {self.stage_timeout_seconds}")
        if not 0.0 <= self.quality_threshold <= 100.0:
            raise ValueError(f"DRIFTGATE_QUALITY_THRESHOLD must be within [0, 100], got: {self.quality_threshold}")
        backoff_max = max(self.apply_backoff_max_seconds, self.apply_backoff_base_seconds)

        return replace(
            self,
            scope=scope,
            holder_id=self.holder_id.strip() or default_holder_id(),
            apply_backoff_max_seconds=backoff_max,
        )

    def state_root_path(self, repo_root: Path) -> Path:
        path = Path(self.state_root)
        return path if path.is_absolute() else repo_root / path

    def manifest_file(self, repo_root: Path) -> Path:
        path = Path(self.manifest_path)
        return path if path.is_absolute() else repo_root / path

    def provider_root_path(self, repo_root: Path) -> Path:
        path = Path(self.provider_root)
        return path if path.is_absolute() else repo_root / path

    def registry_root_path(self, repo_root: Path) -> Path:
        path = Path(self.registry_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1e9) -> float:
    """Parse a float from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed:
        raise ValueError(f"{name} must be a number, got: {raw!r}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be one of {sorted(_TRUTHY | _FALSY)}, got: {raw!r}")
