"""Tests for the state store: locking, atomic commits and the audit log.

Both backends are run through the same lock and commit checks.
"""

import json
import threading

import pytest

from conftest import FakeClock
from converge.errors import LockHeldError
from converge.schemas import (
    ObservedResource,
    ObservedState,
    ReleaseDescriptor,
    ResourceKind,
)
from converge.state_store import FileStateStore, InMemoryStateStore


def resource(name="net1", provider_id="vpc-1"):
    return ObservedResource(
        name=name,
        kind=ResourceKind.NETWORK,
        provider_id=provider_id,
        config_hash="abc",
        outputs={"vpc_id": provider_id},
    )


@pytest.fixture(params=["memory", "file"])
def clock_and_store(request, tmp_path):
    clock = FakeClock()
    if request.param == "memory":
        return clock, InMemoryStateStore(clock=clock, sleep=clock.sleep)
    return clock, FileStateStore(tmp_path / "state", clock=clock, sleep=clock.sleep)


# =============================================================================
# LOCKING
# =============================================================================


class TestLocking:
    """Lock acquisition, expiry and release."""

    def test_acquire_and_release(self, clock_and_store):
        _, store = clock_and_store
        token = store.acquire_lock("alice", ttl=60)
        assert store.current_lock().token_id == token.token_id
        store.release_lock(token)
        assert store.current_lock() is None

    def test_second_acquire_fails_immediately(self, clock_and_store):
        _, store = clock_and_store
        first = store.acquire_lock("alice", ttl=60)
        with pytest.raises(LockHeldError) as exc_info:
            store.acquire_lock("bob", ttl=60)
        assert exc_info.value.holder.token_id == first.token_id

    def test_acquire_waits_then_fails(self, clock_and_store):
        clock, store = clock_and_store
        store.acquire_lock("alice", ttl=60)
        with pytest.raises(LockHeldError):
            store.acquire_lock("bob", ttl=60, wait=5)
        assert sum(clock.sleeps) >= 5

    def test_expired_lock_is_reclaimed(self, clock_and_store):
        clock, store = clock_and_store
        store.acquire_lock("alice", ttl=10)
        clock.now += 11
        token = store.acquire_lock("bob", ttl=10)
        assert token.owner == "bob"
        assert token.reclaimed_from == "alice"

    def test_wait_until_expiry(self, clock_and_store):
        clock, store = clock_and_store
        store.acquire_lock("alice", ttl=2)
        token = store.acquire_lock("bob", ttl=10, wait=5)
        assert token.reclaimed_from == "alice"

    def test_renew_extends_expiry(self, clock_and_store):
        clock, store = clock_and_store
        token = store.acquire_lock("alice", ttl=10)
        clock.now += 8
        renewed = store.renew_lock(token)
        assert renewed.token_id == token.token_id
        assert renewed.expires_at == clock.now + 10
        clock.now += 8
        with pytest.raises(LockHeldError):
            store.acquire_lock("bob", ttl=10)

    def test_renew_after_reclaim_fails(self, clock_and_store):
        clock, store = clock_and_store
        stale = store.acquire_lock("alice", ttl=10)
        clock.now += 11
        store.acquire_lock("bob", ttl=10)
        with pytest.raises(LockHeldError):
            store.renew_lock(stale)

    def test_release_of_reclaimed_token_is_ignored(self, clock_and_store):
        clock, store = clock_and_store
        stale = store.acquire_lock("alice", ttl=10)
        clock.now += 11
        live = store.acquire_lock("bob", ttl=10)
        store.release_lock(stale)
        assert store.current_lock().token_id == live.token_id

    def test_force_unlock(self, clock_and_store):
        _, store = clock_and_store
        token = store.acquire_lock("alice", ttl=60)
        assert store.force_unlock("not-the-id") is False
        assert store.force_unlock(token.token_id) is True
        assert store.current_lock() is None


# =============================================================================
# COMMITS
# =============================================================================


class TestCommit:
    """Snapshot reads and commits."""

    def test_read_empty(self, clock_and_store):
        _, store = clock_and_store
        observed = store.read_observed()
        assert observed.serial == 0
        assert observed.resources == ()

    def test_commit_bumps_serial_and_keeps_lineage(self, clock_and_store):
        _, store = clock_and_store
        token = store.acquire_lock("alice", ttl=60)
        first = store.commit(ObservedState().with_resource(resource()), token)
        second = store.commit(first.without_resource("net1"), token)
        assert first.serial == 1
        assert second.serial == 2
        assert second.lineage == first.lineage
        assert store.read_observed() == second

    def test_commit_requires_live_token(self, clock_and_store):
        clock, store = clock_and_store
        stale = store.acquire_lock("alice", ttl=10)
        clock.now += 11
        store.acquire_lock("bob", ttl=10)
        with pytest.raises(LockHeldError):
            store.commit(ObservedState().with_resource(resource()), stale)
        assert store.read_observed().resources == ()

    def test_commit_with_expired_unreclaimed_token(self, clock_and_store):
        clock, store = clock_and_store
        token = store.acquire_lock("alice", ttl=10)
        clock.now += 11
        persisted = store.commit(ObservedState().with_resource(resource()), token)
        assert persisted.serial == 1

    def test_renew_expired_unreclaimed_token(self, clock_and_store):
        clock, store = clock_and_store
        token = store.acquire_lock("alice", ttl=10)
        clock.now += 30
        renewed = store.renew_lock(token)
        assert renewed.expires_at == clock.now + 10
        with pytest.raises(LockHeldError):
            store.acquire_lock("bob", ttl=10)

    def test_releases_round_trip(self, clock_and_store):
        _, store = clock_and_store
        token = store.acquire_lock("alice", ttl=60)
        descriptor = ReleaseDescriptor(release="web", image="repo/web", tag="1.0", digest="sha256:aa")
        store.commit(ObservedState().with_release(descriptor), token)
        assert store.read_observed().get_release("web") == descriptor


class TestAudit:
    def test_append_and_read(self, clock_and_store):
        _, store = clock_and_store
        store.append_audit({"op": {"name": "a"}})
        store.append_audit({"op": {"name": "b"}})
        assert [e["op"]["name"] for e in store.read_audit()] == ["a", "b"]


# =============================================================================
# FILE BACKEND
# =============================================================================


class TestFileStateStore:
    """File layout and persistence across instances."""

    def test_persists_across_instances(self, tmp_path):
        store = FileStateStore(tmp_path / "state")
        token = store.acquire_lock("alice", ttl=60)
        store.commit(ObservedState().with_resource(resource()), token)
        store.release_lock(token)

        reopened = FileStateStore(tmp_path / "state")
        observed = reopened.read_observed()
        assert observed.serial == 1
        assert observed.get("net1").outputs == {"vpc_id": "vpc-1"}

    def test_lock_visible_across_instances(self, tmp_path):
        first = FileStateStore(tmp_path / "state")
        second = FileStateStore(tmp_path / "state")
        first.acquire_lock("alice", ttl=60)
        with pytest.raises(LockHeldError):
            second.acquire_lock("bob", ttl=60)

    def test_state_file_is_json(self, tmp_path):
        store = FileStateStore(tmp_path / "state")
        token = store.acquire_lock("alice", ttl=60)
        store.commit(ObservedState().with_resource(resource()), token)
        data = json.loads(store.state_path.read_text())
        assert data["serial"] == 1
        assert data["resources"][0]["provider_id"] == "vpc-1"

    def test_no_temp_files_left(self, tmp_path):
        store = FileStateStore(tmp_path / "state")
        token = store.acquire_lock("alice", ttl=60)
        for _ in range(3):
            store.commit(store.read_observed(), token)
        leftovers = [p.name for p in store.store_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_failed_write_keeps_previous_snapshot(self, tmp_path, monkeypatch):
        store = FileStateStore(tmp_path / "state")
        token = store.acquire_lock("alice", ttl=60)
        store.commit(ObservedState().with_resource(resource()), token)

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("converge.state_store.os.replace", broken_replace)
        with pytest.raises(OSError):
            store.commit(ObservedState(), token)
        monkeypatch.undo()

        assert store.read_observed().get("net1") is not None


class TestConcurrentApplies:
    """Two runs racing for the lock: exactly one wins."""

    def test_only_one_acquires(self, tmp_path):
        results = []
        barrier = threading.Barrier(2)

        def contender(owner):
            store = FileStateStore(tmp_path / "state")
            barrier.wait()
            try:
                store.acquire_lock(owner, ttl=60)
                results.append(("ok", owner))
            except LockHeldError:
                results.append(("held", owner))

        threads = [threading.Thread(target=contender, args=(o,)) for o in ("a", "b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r[0] for r in results) == ["held", "ok"]
