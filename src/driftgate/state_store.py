from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator

from pydantic import ValidationError

from .canonical import to_canonical_json
from .errors import LockContention, RevisionConflict, StaleToken
from .models import LockLease, LockRecord, StateRecord, StateSnapshot

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.  The lock file is created in the same directory as *path*
    so ``os.replace`` stays on the same filesystem.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so readers never observe a partial document.
    """
    atomic_write_bytes(path, content.encode("utf-8"))


def atomic_write_bytes(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def sanitize_scope(scope: str) -> str:
    """Sanitize a scope name for use as a filesystem path component.

    Raises:
        ValueError: If the scope is empty or contains no safe characters.
    """
    value = scope.strip()
    if not value:
        raise ValueError("scope must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError("scope contains no filesystem-safe characters")
    return value[:128]


# ---------------------------------------------------------------------------
# StateStore
# ---------------------------------------------------------------------------

class StateStore:
    """Filesystem state store with lease locks and versioned records.

    Layout per scope::

        scopes/<scope>/state.json     StateSnapshot (records + revision)
        scopes/<scope>/lock.json      LockRecord while a lease is held
        scopes/<scope>/history.jsonl  append-only revision and run log

    Every read-modify-write happens under an ``fcntl`` exclusive lock on a
    sidecar file, so processes sharing the directory serialize on the
    filesystem rather than in memory.  The lease in ``lock.json`` is the
    coarse single-writer lock callers hold across a whole apply; the
    ``fcntl`` lock only spans one document update.
    """

    def __init__(
        self,
        root: Path,
        *,
        lease_seconds: int = 300,
        clock: Clock | None = None,
        poll_interval: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.root = root
        self.scopes_dir = root / "scopes"
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._sleep = sleep
        self.scopes_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def scope_dir(self, scope: str) -> Path:
        return self.scopes_dir / sanitize_scope(scope)

    def state_path(self, scope: str) -> Path:
        return self.scope_dir(scope) / "state.json"

    def lock_path(self, scope: str) -> Path:
        return self.scope_dir(scope) / "lock.json"

    def history_path(self, scope: str) -> Path:
        return self.scope_dir(scope) / "history.jsonl"

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lease lock
    # ------------------------------------------------------------------

    def _read_lock(self, scope: str) -> LockRecord | None:
        path = self.lock_path(scope)
        if not path.is_file():
            return None
        text = safe_read_json(path, "lock record")
        try:
            return LockRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"lock record at {path} failed validation: {exc}") from exc

    def _try_acquire(self, scope: str, holder: str) -> LockLease:
        path = self.lock_path(scope)
        with locked_file(path):
            now = self.now()
            current = self._read_lock(scope)
            if current is not None and not current.is_expired(now):
                raise LockContention(scope, current.holder, current.expires_at)
            if current is not None:
                logger.warning(
                    "Reclaiming expired lock on scope %s held by %s (expired %s)",
                    scope,
                    current.holder,
                    current.expires_at.isoformat(),
                )
            record = LockRecord(
                scope=scope,
                holder=holder,
                token=uuid.uuid4().hex,
                acquired_at=now,
                expires_at=now + timedelta(seconds=self.lease_seconds),
            )
            atomic_write_text(path, record.model_dump_json(indent=2))
        logger.debug("Lock on scope %s acquired by %s", scope, holder)
        return LockLease(scope=scope, holder=holder, token=record.token, expires_at=record.expires_at)

    def acquire_lock(self, scope: str, holder: str, *, wait_seconds: float = 0.0) -> LockLease:
        """Acquire the scope lease, waiting up to ``wait_seconds`` for it.

        Raises:
            LockContention: If another holder still owns a live lease once the
                wait budget is spent.
        """
        deadline = time.monotonic() + max(wait_seconds, 0.0)
        while True:
            try:
                return self._try_acquire(scope, holder)
            except LockContention:
                if time.monotonic() >= deadline:
                    raise
                self._sleep(self.poll_interval)

    def _check_token(self, scope: str, token: str) -> LockRecord:
        current = self._read_lock(scope)
        if current is None or current.token != token:
            raise StaleToken(f"lock token for scope {scope!r} is not the current lease")
        if current.is_expired(self.now()):
            raise StaleToken(f"lease on scope {scope!r} expired at {current.expires_at.isoformat()}")
        return current

    def renew_lock(self, scope: str, token: str) -> LockLease:
        """Extend a live lease by another lease period.

        Raises:
            StaleToken: If the token no longer owns a live lease.
        """
        path = self.lock_path(scope)
        with locked_file(path):
            current = self._check_token(scope, token)
            current.expires_at = self.now() + timedelta(seconds=self.lease_seconds)
            atomic_write_text(path, current.model_dump_json(indent=2))
        return LockLease(scope=scope, holder=current.holder, token=token, expires_at=current.expires_at)

    def release_lock(self, scope: str, token: str) -> bool:
        """Release the lease if ``token`` still owns it.

        Returns:
            False when the lease had already been reclaimed by someone else.
        """
        path = self.lock_path(scope)
        with locked_file(path):
            current = self._read_lock(scope)
            if current is None or current.token != token:
                logger.warning("Lock on scope %s was not held by this token at release", scope)
                return False
            path.unlink()
        logger.debug("Lock on scope %s released by %s", scope, current.holder)
        return True

    def lock_status(self, scope: str) -> LockRecord | None:
        with locked_file(self.lock_path(scope)):
            return self._read_lock(scope)

    @contextmanager
    def lock(self, scope: str, holder: str, *, wait_seconds: float = 0.0) -> Iterator[LockLease]:
        """Hold the scope lease for the duration of the context, releasing on every exit path."""
        lease = self.acquire_lock(scope, holder, wait_seconds=wait_seconds)
        try:
            yield lease
        finally:
            self.release_lock(scope, lease.token)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _load_snapshot(self, scope: str) -> StateSnapshot | None:
        path = self.state_path(scope)
        if not path.is_file():
            return None
        text = safe_read_json(path, "state snapshot")
        try:
            return StateSnapshot.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"state snapshot at {path} failed validation: {exc}") from exc

    def read_state(self, scope: str) -> StateSnapshot | None:
        """Return the scope's snapshot, or None if nothing was ever written."""
        with locked_file(self.state_path(scope)):
            return self._load_snapshot(scope)

    def read_record(self, scope: str, resource_id: str) -> StateRecord | None:
        snapshot = self.read_state(scope)
        if snapshot is None:
            return None
        return snapshot.records.get(resource_id)

    def current_revision(self, scope: str) -> int:
        snapshot = self.read_state(scope)
        return snapshot.revision if snapshot is not None else 0

    def _mutate(
        self,
        scope: str,
        token: str,
        expected_revision: int | None,
        mutation: Callable[[StateSnapshot, int], dict[str, Any]],
    ) -> int:
        path = self.state_path(scope)
        with locked_file(self.lock_path(scope)):
            self._check_token(scope, token)
            with locked_file(path):
                snapshot = self._load_snapshot(scope) or StateSnapshot.empty(scope)
                if expected_revision is not None and snapshot.revision != expected_revision:
                    raise RevisionConflict(scope, expected_revision, snapshot.revision)
                new_revision = snapshot.revision + 1
                event = mutation(snapshot, new_revision)
                snapshot.revision = new_revision
                snapshot.updated_at = self.now()
                atomic_write_text(path, snapshot.model_dump_json(indent=2))
                with locked_file(self.history_path(scope)):
                    self._append_history_unlocked(scope, {"revision": new_revision, **event})
        return new_revision

    def write_state(
        self,
        scope: str,
        record: StateRecord,
        token: str,
        *,
        expected_revision: int | None = None,
    ) -> int:
        """Commit one resource record as a new revision.

        Raises:
            StaleToken: If ``token`` does not own a live lease on ``scope``.
            RevisionConflict: If ``expected_revision`` no longer matches.

        Returns:
            The new scope revision.
        """

        def _put(snapshot: StateSnapshot, revision: int) -> dict[str, Any]:
            stored = record.model_copy(update={"revision": revision})
            snapshot.records[record.resource_id] = stored
            return {"event": "record_written", "resource_id": record.resource_id, "record": stored.model_dump(mode="json")}

        return self._mutate(scope, token, expected_revision, _put)

    def delete_record(
        self,
        scope: str,
        resource_id: str,
        token: str,
        *,
        expected_revision: int | None = None,
    ) -> int:
        """Remove one resource record as a new revision (idempotent on absent records)."""

        def _drop(snapshot: StateSnapshot, revision: int) -> dict[str, Any]:
            snapshot.records.pop(resource_id, None)
            return {"event": "record_deleted", "resource_id": resource_id}

        return self._mutate(scope, token, expected_revision, _drop)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _append_history_unlocked(self, scope: str, event: dict[str, Any]) -> None:
        entry = {"at": self.now().isoformat(), "scope": scope, **event}
        append_line(self.history_path(scope), to_canonical_json(entry))

    def append_history(self, scope: str, event: dict[str, Any]) -> None:
        """Append one event to the scope's history log."""
        with locked_file(self.history_path(scope)):
            self._append_history_unlocked(scope, event)

    def read_history(self, scope: str) -> list[dict[str, Any]]:
        path = self.history_path(scope)
        if not path.is_file():
            return []
        events: list[dict[str, Any]] = []
        for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ValueError(f"history at {path} line {line_no} is not valid JSON") from exc
        return events
