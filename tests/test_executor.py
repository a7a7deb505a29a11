"""Tests for the apply executor.

Tests cover:
- Ops dispatched in dependency order, commits after every op
- Failure isolation: dependents skipped, independent branches applied
- Transient retry, permanent failure, readiness timeout
- @ref.* resolution from committed outputs
- Deletes, cancellation and lost locks
- Audit entries
"""

import threading

import pytest

from conftest import make_desired, make_spec
from converge.adapters import AdapterRegistry, InMemoryAdapter, ResourceState, ResourceStatus
from converge.errors import PermanentProviderError, TransientProviderError
from converge.executor import resolve_refs
from converge.planner import plan
from converge.schemas import OpStatus, ResourceKind


def plan_for(store, *specs):
    return plan(make_desired(*specs), store.read_observed())


# =============================================================================
# REFERENCE RESOLUTION
# =============================================================================


class TestResolveRefs:
    """Tests for resolve_refs()."""

    OUTPUTS = {
        "net": {"vpc_id": "vpc-1", "subnet_ids": ["s-1", "s-2"]},
        "web": {"host": "app.example.com"},
    }

    def test_full_ref_keeps_type(self):
        assert resolve_refs("@ref.net.subnet_ids", self.OUTPUTS) == ["s-1", "s-2"]

    def test_embedded_ref_is_substituted(self):
        assert resolve_refs("https://@ref.web.host/health", self.OUTPUTS) == "https://app.example.com/health"

    def test_list_index(self):
        assert resolve_refs("@ref.net.subnet_ids.1", self.OUTPUTS) == "s-2"

    def test_nested_structures(self):
        value = {"vpc": "@ref.net.vpc_id", "hosts": ["@ref.web.host", "static"], "count": 3}
        assert resolve_refs(value, self.OUTPUTS) == {
            "vpc": "vpc-1",
            "hosts": ["app.example.com", "static"],
            "count": 3,
        }

    def test_plain_values_untouched(self):
        assert resolve_refs("10.0.0.0/16", self.OUTPUTS) == "10.0.0.0/16"
        assert resolve_refs(None, self.OUTPUTS) is None

    def test_unknown_resource(self):
        with pytest.raises(ValueError, match="no recorded outputs"):
            resolve_refs("@ref.ghost.id", self.OUTPUTS)

    def test_unknown_path(self):
        with pytest.raises(ValueError, match="missing 'cidr'"):
            resolve_refs("@ref.net.cidr", self.OUTPUTS)


# =============================================================================
# ORDERING AND COMMITS
# =============================================================================


class TestApplyOrder:
    """Successful applies."""

    def test_creates_in_dependency_order(self, store, network_adapter, make_executor):
        specs = [
            make_spec("c", depends_on=["b"]),
            make_spec("b", depends_on=["a"]),
            make_spec("a"),
        ]
        result = make_executor().apply(plan_for(store, *specs))

        assert result.success
        assert result.applied_names == ["a", "b", "c"]
        assert network_adapter.call_names("create") == ["a", "b", "c"]

    def test_commit_after_every_op(self, store, make_executor):
        result = make_executor().apply(plan_for(store, make_spec("a"), make_spec("b")))
        observed = store.read_observed()
        assert result.success
        assert observed.serial == 2
        assert observed.names == ("a", "b")

    def test_records_hash_and_dependencies(self, store, make_executor):
        a = make_spec("a")
        b = make_spec("b", depends_on=["a"], size=2)
        make_executor().apply(plan_for(store, a, b))

        recorded = store.read_observed().get("b")
        assert recorded.config_hash == b.config_hash
        assert recorded.dependencies == ("a",)
        assert recorded.provider_id.startswith("network-")
        assert recorded.outputs["size"] == 2

    def test_second_apply_is_noop(self, store, network_adapter, make_executor):
        specs = [make_spec("a"), make_spec("b", depends_on=["a"])]
        make_executor().apply(plan_for(store, *specs))

        change_set = plan_for(store, *specs)
        assert change_set.is_empty
        result = make_executor().apply(change_set)
        assert result.success
        assert result.applied == ()
        assert len(network_adapter.call_names("create")) == 2

    def test_update_keeps_provider_id(self, store, network_adapter, make_executor):
        make_executor().apply(plan_for(store, make_spec("a", size=1)))
        provider_id = store.read_observed().get("a").provider_id

        result = make_executor().apply(plan_for(store, make_spec("a", size=2)))
        assert result.success
        assert network_adapter.call_names("update") == ["a"]
        assert store.read_observed().get("a").provider_id == provider_id
        assert store.read_observed().get("a").outputs["size"] == 2

    def test_parallel_independent_branches(self, store, make_executor):
        class TrackingAdapter(InMemoryAdapter):
            def __init__(self, kind, parties):
                super().__init__(kind)
                self.barrier = threading.Barrier(parties, timeout=5)
                self.in_flight = 0
                self.peak = 0
                self.counter = threading.Lock()

            def create(self, spec):
                with self.counter:
                    self.in_flight += 1
                    self.peak = max(self.peak, self.in_flight)
                try:
                    self.barrier.wait()
                    return super().create(spec)
                finally:
                    with self.counter:
                        self.in_flight -= 1

        tracking = TrackingAdapter(ResourceKind.NETWORK, parties=3)
        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, tracking)
        specs = [make_spec(f"r{i}") for i in range(6)]

        result = make_executor(registry=adapters, concurrency=3).apply(plan_for(store, *specs))

        assert result.success
        assert len(store.read_observed()) == 6
        assert tracking.peak == 3

    def test_waits_for_readiness(self, store, fake_clock, make_executor):
        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, InMemoryAdapter(ResourceKind.NETWORK, polls_until_ready=2))
        result = make_executor(registry=adapters).apply(plan_for(store, make_spec("a")))
        assert result.success
        assert fake_clock.sleeps == [1, 1]

    def test_commit_renews_lock(self, store, token, make_executor):
        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, InMemoryAdapter(ResourceKind.NETWORK, polls_until_ready=1))
        executor = make_executor(registry=adapters)
        executor.apply(plan_for(store, make_spec("a")))
        assert executor.token.token_id == token.token_id
        assert executor.token.expires_at > token.expires_at

    def test_op_outlasting_lock_ttl_is_committed(self, store, token, fake_clock, make_executor):
        adapters = AdapterRegistry()
        adapters.register(
            ResourceKind.COMPUTE_CLUSTER,
            InMemoryAdapter(ResourceKind.COMPUTE_CLUSTER, polls_until_ready=96),
        )
        executor = make_executor(registry=adapters, poll_interval=10, ready_timeout=1800)

        result = executor.apply(plan_for(store, make_spec("eks1", ResourceKind.COMPUTE_CLUSTER)))

        assert sum(fake_clock.sleeps) > token.ttl_seconds
        assert result.success
        assert store.read_observed().names == ("eks1",)
        assert store.current_lock().token_id == token.token_id

    def test_empty_change_set(self, store, make_executor):
        result = make_executor().apply(plan_for(store))
        assert result.success
        assert store.read_observed().serial == 0


# =============================================================================
# REFERENCES
# =============================================================================


class TestReferences:
    """@ref.* values resolved at apply time."""

    def test_ref_resolved_from_dependency_outputs(self, store, adapters, make_executor):
        net = make_spec("net", cidr="10.0.0.0/16")
        eks = make_spec("eks", ResourceKind.COMPUTE_CLUSTER, vpc="@ref.net.id", label="vpc=@ref.net.cidr")
        result = make_executor().apply(plan_for(store, net, eks))
        assert result.success

        observed = store.read_observed()
        cluster = adapters.get(ResourceKind.COMPUTE_CLUSTER)
        live_config = cluster.resources[observed.get("eks").provider_id]
        assert live_config["vpc"] == observed.get("net").provider_id
        assert live_config["label"] == "vpc=10.0.0.0/16"
        # the recorded hash is of the unresolved config
        assert observed.get("eks").config_hash == eks.config_hash

    def test_unresolvable_ref_fails_op(self, store, make_executor):
        net = make_spec("net")
        eks = make_spec("eks", ResourceKind.COMPUTE_CLUSTER, vpc="@ref.net.missing")
        result = make_executor().apply(plan_for(store, net, eks))

        assert result.applied_names == ["net"]
        outcome = result.get_outcome("eks")
        assert outcome.status == OpStatus.FAILED
        assert outcome.error_kind == "permanent"
        assert "missing" in outcome.message


# =============================================================================
# FAILURES
# =============================================================================


class TestFailures:
    """Failure isolation, retries and timeouts."""

    def test_failure_skips_dependents_only(self, store, network_adapter, make_executor):
        network_adapter.fail_with["a"] = PermanentProviderError("quota exceeded")
        specs = [
            make_spec("a"),
            make_spec("b", depends_on=["a"]),
            make_spec("c", depends_on=["b"]),
            make_spec("d"),
        ]
        result = make_executor().apply(plan_for(store, *specs))

        assert not result.success
        assert result.failed_names == ["a"]
        assert result.skipped_names == ["b", "c"]
        assert result.applied_names == ["d"]
        assert result.get_outcome("c").skipped_because == "a"
        assert store.read_observed().names == ("d",)
        assert network_adapter.call_names("create") == ["a", "d"]

    def test_failure_report(self, store, network_adapter, make_executor):
        network_adapter.fail_with["a"] = PermanentProviderError("quota exceeded")
        result = make_executor().apply(plan_for(store, make_spec("a"), make_spec("b", depends_on=["a"])))
        assert result.failure_report() == [
            "create a failed [permanent]: quota exceeded (skipped dependents: b)"
        ]

    def test_transient_error_retried(self, store, network_adapter, make_executor):
        network_adapter.fail_with["a"] = [
            TransientProviderError("throttled"),
            TransientProviderError("throttled"),
        ]
        result = make_executor(max_attempts=3).apply(plan_for(store, make_spec("a")))

        assert result.success
        assert result.get_outcome("a").attempts == 3
        assert network_adapter.call_names("create") == ["a", "a", "a"]

    def test_transient_error_exhausts_attempts(self, store, network_adapter, make_executor):
        network_adapter.fail_with["a"] = [TransientProviderError("throttled")] * 3
        result = make_executor(max_attempts=2).apply(plan_for(store, make_spec("a")))

        outcome = result.get_outcome("a")
        assert outcome.status == OpStatus.FAILED
        assert outcome.error_kind == "transient"
        assert outcome.attempts == 2

    def test_connection_error_is_transient(self, store, network_adapter, make_executor):
        network_adapter.fail_with["a"] = [ConnectionResetError("reset")]
        result = make_executor().apply(plan_for(store, make_spec("a")))
        assert result.success
        assert result.get_outcome("a").attempts == 2

    def test_permanent_error_not_retried(self, store, network_adapter, make_executor):
        network_adapter.fail_with["a"] = PermanentProviderError("invalid CIDR")
        result = make_executor(max_attempts=5).apply(plan_for(store, make_spec("a")))

        outcome = result.get_outcome("a")
        assert outcome.error_kind == "permanent"
        assert outcome.attempts == 1
        assert network_adapter.call_names("create") == ["a"]

    def test_ready_timeout(self, store, fake_clock, make_executor):
        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, InMemoryAdapter(ResourceKind.NETWORK, never_ready={"slow"}))
        result = make_executor(registry=adapters, ready_timeout=10).apply(
            plan_for(store, make_spec("slow"), make_spec("after", depends_on=["slow"]))
        )

        outcome = result.get_outcome("slow")
        assert outcome.error_kind == "timeout"
        assert "not ready after 10s" in outcome.message
        assert result.skipped_names == ["after"]
        assert sum(fake_clock.sleeps) == 10
        assert "slow" not in store.read_observed()

    def test_kind_timeout_overrides_default(self, store, fake_clock, make_executor):
        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, InMemoryAdapter(ResourceKind.NETWORK, never_ready={"slow"}))
        executor = make_executor(registry=adapters, ready_timeout=100, kind_timeouts={"Network": 3})
        result = executor.apply(plan_for(store, make_spec("slow")))
        assert result.get_outcome("slow").error_kind == "timeout"
        assert sum(fake_clock.sleeps) == 3

    def test_failed_state_is_permanent(self, store, make_executor):
        class BrokenAdapter(InMemoryAdapter):
            def describe(self, provider_id):
                return ResourceStatus(state=ResourceState.FAILED, message="CREATE_FAILED")

        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, BrokenAdapter(ResourceKind.NETWORK))
        result = make_executor(registry=adapters).apply(plan_for(store, make_spec("a")))

        outcome = result.get_outcome("a")
        assert outcome.error_kind == "permanent"
        assert "CREATE_FAILED" in outcome.message

    def test_resource_vanishing_before_ready_is_permanent(self, store, make_executor):
        class VanishingAdapter(InMemoryAdapter):
            def describe(self, provider_id):
                return ResourceStatus(state=ResourceState.ABSENT)

        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, VanishingAdapter(ResourceKind.NETWORK))
        result = make_executor(registry=adapters).apply(plan_for(store, make_spec("a")))

        outcome = result.get_outcome("a")
        assert outcome.error_kind == "permanent"
        assert "disappeared before becoming ready" in outcome.message

    def test_missing_adapter(self, store, make_executor):
        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, InMemoryAdapter(ResourceKind.NETWORK))
        result = make_executor(registry=adapters).apply(
            plan_for(store, make_spec("repo", ResourceKind.REGISTRY))
        )
        assert "No adapter registered" in result.get_outcome("repo").message

    def test_op_without_spec_fails(self, store, make_executor):
        change_set = plan_for(store, make_spec("a"))
        object.__setattr__(change_set.ops[0], "spec", None)

        result = make_executor().apply(change_set)

        outcome = result.get_outcome("a")
        assert outcome.status == OpStatus.FAILED
        assert outcome.error_kind == "permanent"
        assert "create op has no spec" in outcome.message


# =============================================================================
# DELETES
# =============================================================================


class TestDeletes:
    def test_delete_removes_from_observed(self, store, network_adapter, make_executor):
        specs = [make_spec("a"), make_spec("b", depends_on=["a"])]
        make_executor().apply(plan_for(store, *specs))

        result = make_executor().apply(plan_for(store))
        assert result.success
        assert network_adapter.call_names("delete") == ["b", "a"]
        assert network_adapter.resources == {}
        assert store.read_observed().resources == ()

    def test_failed_delete_keeps_record(self, store, network_adapter, make_executor):
        make_executor().apply(plan_for(store, make_spec("a")))
        network_adapter.fail_with["a"] = PermanentProviderError("in use")

        result = make_executor().apply(plan_for(store))
        assert result.failed_names == ["a"]
        assert "a" in store.read_observed()

    def test_delete_preserves_other_resources(self, store, make_executor):
        make_executor().apply(plan_for(store, make_spec("a"), make_spec("b")))
        make_executor().apply(plan_for(store, make_spec("a")))
        assert store.read_observed().names == ("a",)


# =============================================================================
# CANCELLATION AND LOCKING
# =============================================================================


class TestCancellation:
    """Cancel stops scheduling; lost locks stop commits."""

    def test_cancel_before_apply_skips_everything(self, store, network_adapter, make_executor):
        executor = make_executor()
        executor.cancel()
        result = executor.apply(plan_for(store, make_spec("a"), make_spec("b")))

        assert result.cancelled
        assert result.skipped_names == ["a", "b"]
        assert result.get_outcome("a").message == "cancelled before start"
        assert network_adapter.calls == []
        assert result.failure_report() == ["cancelled before start: a, b"]

    def test_cancel_mid_apply_finishes_in_flight(self, store, make_executor):
        holder = {}

        class CancellingAdapter(InMemoryAdapter):
            def create(self, spec):
                holder["executor"].cancel()
                return super().create(spec)

        adapters = AdapterRegistry()
        adapters.register(ResourceKind.NETWORK, CancellingAdapter(ResourceKind.NETWORK))
        executor = make_executor(registry=adapters)
        holder["executor"] = executor

        result = executor.apply(plan_for(store, make_spec("a"), make_spec("b")))
        assert result.applied_names == ["a"]
        assert result.skipped_names == ["b"]
        assert store.read_observed().names == ("a",)

    def test_lost_lock_fails_op_and_cancels(self, store, token, make_executor):
        executor = make_executor()
        store.force_unlock(token.token_id)

        result = executor.apply(plan_for(store, make_spec("a"), make_spec("b")))
        assert result.failed_names == ["a"]
        assert result.skipped_names == ["b"]
        assert result.cancelled
        assert store.read_observed().resources == ()


# =============================================================================
# AUDIT
# =============================================================================


class TestAudit:
    def test_every_consumed_op_is_audited(self, store, token, network_adapter, make_executor):
        network_adapter.fail_with["a"] = PermanentProviderError("nope")
        make_executor().apply(plan_for(store, make_spec("a"), make_spec("b", depends_on=["a"]), make_spec("c")))

        entries = store.read_audit()
        assert [e["op"]["name"] for e in entries] == ["a", "b", "c"]
        assert [e["outcome"]["status"] for e in entries] == ["failed", "skipped", "applied"]
        assert all(e["token_id"] == token.token_id for e in entries)
        assert entries[1]["outcome"]["skipped_because"] == "a"
