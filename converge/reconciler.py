"""
Reconciler - lock, refresh, plan and apply as one run.

This is the entry point used by the CLI and the release orchestrator:

    reconciler = Reconciler.from_config(config)
    result = reconciler.reconcile(load("stacks/webapp.yaml"))

A run holds the state lock from refresh through the last commit, so the
plan it applies is computed against the snapshot it commits on top of.
"""

import getpass
import logging
import os
import socket
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional

from converge.adapters.registry import AdapterRegistry
from converge.errors import classify_error
from converge.executor import ApplyExecutor
from converge.planner import plan
from converge.schemas import (
    ApplyResult,
    ChangeSet,
    DesiredState,
    LockToken,
    ObservedState,
    ResourceKind,
)
from converge.state_store import FileStateStore, StateStore

logger = logging.getLogger(__name__)


def default_owner() -> str:
    """Lock owner label for this process: user@host:pid."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class ReconcileResult:
    """
    Outcome of one reconcile run.

    Attributes:
        change_set: The plan that was applied
        apply_result: Per-op outcomes
        observed: Observed state after the last commit
        token: Lock token the run held
    """
    change_set: ChangeSet
    apply_result: ApplyResult
    observed: ObservedState
    token: LockToken

    @property
    def success(self) -> bool:
        return self.apply_result.success

    @property
    def reclaimed_from(self) -> Optional[str]:
        """Owner of an expired lock this run took over, if any."""
        return self.token.reclaimed_from


class Reconciler:
    """
    Drives observed state toward a desired state.

    Args:
        store: StateStore holding observed state and the lock
        adapters: AdapterRegistry for provider calls
        lock_ttl: Seconds a held lock stays live without renewal
        lock_wait: Seconds to wait for a held lock before LockHeldError
        owner: Lock owner label (default user@host:pid)
        executor_options: Keyword arguments for ApplyExecutor
    """

    def __init__(
        self,
        store: StateStore,
        adapters: AdapterRegistry,
        lock_ttl: float = 900.0,
        lock_wait: float = 0.0,
        owner: Optional[str] = None,
        executor_options: Optional[dict[str, Any]] = None,
    ):
        self.store = store
        self.adapters = adapters
        self.lock_ttl = lock_ttl
        self.lock_wait = lock_wait
        self.owner = owner or default_owner()
        self.executor_options = dict(executor_options or {})
        self._executor: Optional[ApplyExecutor] = None

    @classmethod
    def from_config(
        cls,
        config: Any,
        store: Optional[StateStore] = None,
        adapters: Optional[AdapterRegistry] = None,
    ) -> "Reconciler":
        """Build a Reconciler from a ConvergeConfig."""
        executor = config.executor
        return cls(
            store=store or FileStateStore(config.state.path),
            adapters=adapters or AdapterRegistry.create_default(config),
            lock_ttl=config.lock.ttl_seconds,
            lock_wait=config.lock.wait_seconds,
            owner=config.lock.owner,
            executor_options={
                "concurrency": executor.concurrency,
                "max_attempts": executor.max_attempts,
                "backoff_seconds": executor.backoff_seconds,
                "backoff_multiplier": executor.backoff_multiplier,
                "ready_timeout": executor.ready_timeout,
                "poll_interval": executor.poll_interval,
                "kind_timeouts": executor.kind_timeouts,
            },
        )

    def plan(self, desired: DesiredState, kinds: Optional[Iterable[ResourceKind]] = None) -> ChangeSet:
        """
        Plan against the last committed snapshot without taking the lock.

        The result is a preview: a concurrent run may commit before it is applied.
        """
        observed = self.store.read_observed()
        desired, observed = _scoped(with_deployed_releases(desired, observed), observed, kinds)
        return plan(desired, observed)

    def refresh(self, token: LockToken, kinds: Optional[Iterable[ResourceKind]] = None) -> ObservedState:
        """
        Re-read every observed resource from its provider.

        Resources reported ABSENT are dropped; outputs of live resources are
        updated. Resources whose describe fails keep their recorded entry.
        Commits only if something changed.

        Args:
            token: The held lock
            kinds: Restrict the refresh to these kinds

        Returns:
            The observed state after refresh
        """
        observed = self.store.read_observed()
        wanted = set(kinds) if kinds is not None else None
        refreshed = observed

        for resource in observed.resources:
            if wanted is not None and resource.kind not in wanted:
                continue
            if not self.adapters.has(resource.kind):
                continue
            try:
                status = self.adapters.get(resource.kind).describe(resource.provider_id)
            except Exception as e:
                kind = classify_error(e)
                logger.warning(
                    f"Refresh of {resource.name} failed [{kind.value}]: {e}; keeping recorded state",
                    extra={"resource": resource.name, "event": "refresh_failed"},
                )
                continue

            if status.is_absent:
                logger.warning(
                    f"{resource.kind.value} {resource.name} ({resource.provider_id}) no longer exists",
                    extra={"resource": resource.name, "event": "drift"},
                )
                refreshed = refreshed.without_resource(resource.name)
            elif status.outputs and {**resource.outputs, **status.outputs} != resource.outputs:
                updated = replace(resource, outputs={**resource.outputs, **status.outputs})
                refreshed = refreshed.with_resource(updated)

        if refreshed is observed:
            return observed
        return self.store.commit(refreshed, token)

    def reconcile(
        self,
        desired: DesiredState,
        kinds: Optional[Iterable[ResourceKind]] = None,
        refresh: bool = True,
    ) -> ReconcileResult:
        """
        Lock, refresh, plan and apply.

        Args:
            desired: Target state
            kinds: Restrict the run to resources of these kinds
            refresh: Refresh observed state from providers before planning

        Returns:
            ReconcileResult

        Raises:
            LockHeldError: If the lock could not be acquired
            ValidationError / CycleError: If planning fails (no state change)
        """
        kinds = list(kinds) if kinds is not None else None
        token = self.store.acquire_lock(self.owner, ttl=self.lock_ttl, wait=self.lock_wait)
        if token.reclaimed_from:
            logger.warning(
                f"Took over expired lock from {token.reclaimed_from}; "
                f"refreshing before planning"
            )
        executor = None
        try:
            if refresh or token.reclaimed_from:
                self.refresh(token, kinds)

            observed = self.store.read_observed()
            scoped_desired, scoped_observed = _scoped(
                with_deployed_releases(desired, observed), observed, kinds
            )
            change_set = plan(scoped_desired, scoped_observed)
            logger.info(f"Plan for '{desired.name}': {change_set.summary()}")

            executor = ApplyExecutor(self.store, self.adapters, token, **self.executor_options)
            self._executor = executor
            apply_result = executor.apply(change_set)
            return ReconcileResult(
                change_set=change_set,
                apply_result=apply_result,
                observed=self.store.read_observed(),
                token=executor.token,
            )
        finally:
            self._executor = None
            self.store.release_lock(executor.token if executor is not None else token)

    def cancel(self) -> None:
        """Cancel the apply in progress, if any."""
        if self._executor is not None:
            self._executor.cancel()


def with_deployed_releases(desired: DesiredState, observed: ObservedState) -> DesiredState:
    """
    Pin each Release spec to the image its last successful release deployed.

    Stack files name the chart and settings; tag and digest come from release
    runs. Values the spec sets explicitly win, so an orchestrated deploy's pin
    replaces the recorded one.
    """
    for spec in desired.of_kind(ResourceKind.RELEASE):
        descriptor = observed.get_release(spec.name)
        if descriptor is None:
            continue
        config = dict(spec.config)
        config.setdefault("image", descriptor.image)
        config.setdefault("tag", descriptor.tag)
        if descriptor.digest:
            config.setdefault("digest", descriptor.digest)
        if config != spec.config:
            desired = desired.replace(spec.with_config(config))
    return desired


def _scoped(
    desired: DesiredState,
    observed: ObservedState,
    kinds: Optional[Iterable[ResourceKind]],
) -> tuple[DesiredState, ObservedState]:
    if kinds is None:
        return desired, observed
    kinds = list(kinds)
    return desired.filter(kinds), observed.filter(kinds)

