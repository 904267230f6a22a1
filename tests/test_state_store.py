import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from driftgate.errors import LockContention, RevisionConflict, StaleToken
from driftgate.models import ResourceKind, StateRecord
from driftgate.state_store import StateStore, sanitize_scope


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _record(resource_id: str, **attributes: object) -> StateRecord:
    return StateRecord(
        resource_id=resource_id,
        kind=ResourceKind.NETWORK,
        attributes=dict(attributes),
        external_id=f"network-{resource_id}",
    )


def test_fresh_scope_has_no_state(store: StateStore) -> None:
    assert store.read_state("prod") is None
    assert store.current_revision("prod") == 0
    assert store.lock_status("prod") is None


def test_lock_is_mutually_exclusive(store: StateStore) -> None:
    lease = store.acquire_lock("prod", "alice")
    with pytest.raises(LockContention) as excinfo:
        store.acquire_lock("prod", "bob")
    assert excinfo.value.holder == "alice"
    assert store.release_lock("prod", lease.token) is True
    second = store.acquire_lock("prod", "bob")
    assert second.holder == "bob"


def test_concurrent_acquire_has_exactly_one_winner(store: StateStore) -> None:
    barrier = threading.Barrier(2, timeout=5)
    leases: list[str] = []
    contended: list[LockContention] = []

    def contend(holder: str) -> None:
        barrier.wait()
        try:
            leases.append(store.acquire_lock("prod", holder).holder)
        except LockContention as exc:
            contended.append(exc)

    threads = [threading.Thread(target=contend, args=(holder,)) for holder in ("alice", "bob")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(leases) == 1
    assert len(contended) == 1
    assert contended[0].holder == leases[0]
    assert store.lock_status("prod").holder == leases[0]


def test_scopes_lock_independently(store: StateStore) -> None:
    store.acquire_lock("prod", "alice")
    lease = store.acquire_lock("staging", "bob")
    assert lease.scope == "staging"


def test_expired_lease_is_reclaimed_and_old_token_goes_stale(tmp_path: Path) -> None:
    clock = ManualClock()
    store = StateStore(tmp_path / "state", lease_seconds=30, clock=clock)
    stale = store.acquire_lock("prod", "crashed-host")
    clock.advance(31)

    fresh = store.acquire_lock("prod", "healthy-host")
    assert fresh.token != stale.token
    with pytest.raises(StaleToken):
        store.write_state("prod", _record("n1"), stale.token)
    with pytest.raises(StaleToken):
        store.renew_lock("prod", stale.token)
    assert store.release_lock("prod", stale.token) is False
    assert store.lock_status("prod").holder == "healthy-host"


def test_renew_extends_lease(tmp_path: Path) -> None:
    clock = ManualClock()
    store = StateStore(tmp_path / "state", lease_seconds=30, clock=clock)
    lease = store.acquire_lock("prod", "alice")
    clock.advance(20)
    renewed = store.renew_lock("prod", lease.token)
    assert renewed.expires_at == clock.now + timedelta(seconds=30)
    clock.advance(20)
    store.write_state("prod", _record("n1"), lease.token)


def test_write_state_bumps_revision_and_appends_history(store: StateStore) -> None:
    with store.lock("prod", "alice") as lease:
        assert store.write_state("prod", _record("n1", cidr="10.0.0.0/16"), lease.token) == 1
        assert store.write_state("prod", _record("n2"), lease.token) == 2
        assert store.delete_record("prod", "n2", lease.token) == 3

    snapshot = store.read_state("prod")
    assert snapshot is not None
    assert snapshot.revision == 3
    assert list(snapshot.records) == ["n1"]
    assert snapshot.records["n1"].revision == 1
    assert snapshot.records["n1"].attributes == {"cidr": "10.0.0.0/16"}

    events = [event["event"] for event in store.read_history("prod")]
    assert events == ["record_written", "record_written", "record_deleted"]
    assert [event["revision"] for event in store.read_history("prod")] == [1, 2, 3]


def test_write_without_lock_is_rejected(store: StateStore) -> None:
    with pytest.raises(StaleToken):
        store.write_state("prod", _record("n1"), "not-a-token")
    assert store.read_state("prod") is None


def test_expected_revision_guards_writes(store: StateStore) -> None:
    with store.lock("prod", "alice") as lease:
        store.write_state("prod", _record("n1"), lease.token, expected_revision=0)
        with pytest.raises(RevisionConflict) as excinfo:
            store.write_state("prod", _record("n2"), lease.token, expected_revision=0)
    assert excinfo.value.actual == 1
    assert store.current_revision("prod") == 1


def test_lock_context_releases_on_error(store: StateStore) -> None:
    with pytest.raises(RuntimeError):
        with store.lock("prod", "alice"):
            raise RuntimeError("boom")
    assert store.lock_status("prod") is None


def test_state_survives_new_store_instance(tmp_path: Path) -> None:
    first = StateStore(tmp_path / "state")
    with first.lock("prod", "alice") as lease:
        first.write_state("prod", _record("n1"), lease.token)
    second = StateStore(tmp_path / "state")
    assert second.read_record("prod", "n1") is not None
    assert second.current_revision("prod") == 1


def test_sanitize_scope() -> None:
    assert sanitize_scope("team a/prod") == "team-a-prod"
    with pytest.raises(ValueError):
        sanitize_scope("///")
