"""
Apply Executor - consume a ChangeSet against the live providers.

The ApplyExecutor implements:
- Dispatch of ops in plan order once every op in `after` has been applied
- Parallel execution of independent branches (bounded thread pool)
- Reference resolution (@ref.* values from committed outputs)
- Retry of transient adapter errors with exponential backoff
- Bounded readiness polling after each create/update/delete
- Commit of the new ObservedState after every successful op
- Failure isolation: a failed op skips its transitive dependents only

Execution flow per op:
1. Resolve @ref.<resource>.<output> values from the observed outputs
2. Call the adapter (create / update / delete), retrying transient errors
3. Poll describe() until READY (ABSENT for delete) or the ready timeout
4. Commit the updated ObservedState under the held lock
5. Append the consumed op to the audit log

Nothing is rolled back: after a failed apply the observed state reflects
exactly the applied ops.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from converge.adapters.base import ResourceAdapter, ResourceState, ResourceStatus
from converge.adapters.registry import AdapterRegistry
from converge.errors import (
    ErrorKind,
    ExecutionError,
    LockHeldError,
    PermanentProviderError,
    ReadyTimeoutError,
    classify_error,
)
from converge.schemas import (
    REF_PATTERN,
    ApplyResult,
    ChangeAction,
    ChangeOp,
    ChangeSet,
    LockToken,
    ObservedState,
    OpOutcome,
    OpStatus,
    observed_from_spec,
)
from converge.state_store import StateStore
from converge.utils import retry_with_backoff, utcnow

logger = logging.getLogger(__name__)


DEFAULT_READY_TIMEOUT = 600.0
DEFAULT_POLL_INTERVAL = 5.0


def resolve_refs(value: Any, outputs: dict[str, dict[str, Any]]) -> Any:
    """
    Resolve @ref.* references in a value using committed resource outputs.

    A string that is exactly one reference resolves to the referenced value
    (which may be a list or mapping); references embedded in a longer
    string are substituted as text.

    @ref.net1.subnet_ids resolves to outputs["net1"]["subnet_ids"]

    Args:
        value: The value containing potential @ref.* references
        outputs: Mapping of resource name to its outputs

    Returns:
        The resolved value

    Raises:
        ValueError: If a reference cannot be resolved
    """
    if isinstance(value, str):
        match = REF_PATTERN.fullmatch(value)
        if match:
            return _lookup(match, outputs)
        return REF_PATTERN.sub(lambda m: str(_lookup(m, outputs)), value)
    elif isinstance(value, dict):
        return {k: resolve_refs(v, outputs) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_refs(v, outputs) for v in value]
    else:
        return value


def _lookup(match: Any, outputs: dict[str, dict[str, Any]]) -> Any:
    resource = match.group(1)
    parts = [p for p in match.group(2).split(".") if p]
    if resource not in outputs:
        raise ValueError(f"@ref to resource with no recorded outputs: {resource}")

    result: Any = outputs[resource]
    for part in parts:
        if isinstance(result, dict) and part in result:
            result = result[part]
        elif isinstance(result, list) and part.isdigit() and int(part) < len(result):
            result = result[int(part)]
        else:
            raise ValueError(f"@ref path not found: {match.group(0)} (missing '{part}')")
    return result


class ApplyExecutor:
    """
    Execution engine for ChangeSets.

    Usage:
        token = store.acquire_lock("ci-1234", ttl=900)
        executor = ApplyExecutor(
            store=store,
            adapters=AdapterRegistry.create_default(config),
            token=token,
            concurrency=4,
        )
        result = executor.apply(plan(desired, store.read_observed()))

    The caller owns the lock: it must be held before apply() and released
    afterwards. Each commit and each readiness poll renews it.
    """

    def __init__(
        self,
        store: StateStore,
        adapters: AdapterRegistry,
        token: LockToken,
        concurrency: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        backoff_multiplier: float = 2.0,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        kind_timeouts: Optional[dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        """
        Initialize the executor.

        Args:
            store: StateStore receiving commits and audit entries
            adapters: AdapterRegistry used to dispatch ops by kind
            token: The held LockToken
            concurrency: Maximum ops in flight
            max_attempts: Adapter attempts per op for transient errors
            backoff_seconds: Initial retry backoff
            backoff_multiplier: Multiplier for each retry
            ready_timeout: Default readiness wait per op
            poll_interval: Seconds between describe() polls
            kind_timeouts: Readiness wait per kind value, overriding adapter defaults
            clock: Monotonic clock for readiness deadlines
            sleep: Sleep between readiness polls
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._store = store
        self._adapters = adapters
        self._token = token
        self._concurrency = concurrency
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._backoff_multiplier = backoff_multiplier
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._kind_timeouts = dict(kind_timeouts or {})
        self._clock = clock
        self._sleep = sleep

        self._cancel = threading.Event()
        self._commit_lock = threading.Lock()
        self._observed: Optional[ObservedState] = None

    @property
    def token(self) -> LockToken:
        """The lock token as last renewed."""
        return self._token

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """
        Stop scheduling new ops.

        In-flight adapter calls run to completion or timeout; pending retry
        backoffs are interrupted. Ops that never started are reported skipped.
        """
        if not self._cancel.is_set():
            logger.warning("Apply cancelled; no further ops will be started")
        self._cancel.set()

    def apply(self, change_set: ChangeSet) -> ApplyResult:
        """
        Apply a ChangeSet.

        Args:
            change_set: Planned ops in execution order

        Returns:
            ApplyResult with applied, failed and skipped outcomes
        """
        self._observed = self._store.read_observed()
        if change_set.is_empty:
            return ApplyResult()

        logger.info(
            f"Applying {len(change_set)} ops for '{change_set.desired_name}' "
            f"(concurrency={self._concurrency})"
        )
        in_set = set(change_set.names)
        pending: list[ChangeOp] = list(change_set.ops)
        outcomes: dict[str, OpOutcome] = {}
        # root failure per failed/skipped op
        blocked: dict[str, str] = {}

        with ThreadPoolExecutor(
            max_workers=self._concurrency, thread_name_prefix="converge-apply"
        ) as pool:
            in_flight: dict[Future, ChangeOp] = {}

            while True:
                for op in list(pending):
                    roots = [blocked[dep] for dep in op.after if dep in blocked]
                    if roots:
                        pending.remove(op)
                        blocked[op.name] = roots[0]
                        outcomes[op.name] = self._skip(
                            op, f"dependency {roots[0]} failed", skipped_because=roots[0]
                        )

                if not self.cancelled:
                    for op in list(pending):
                        if len(in_flight) >= self._concurrency:
                            break
                        ready = all(
                            dep not in in_set
                            or (dep in outcomes and outcomes[dep].status == OpStatus.APPLIED)
                            for dep in op.after
                        )
                        if ready:
                            pending.remove(op)
                            in_flight[pool.submit(self._execute_op, op)] = op

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    op = in_flight.pop(future)
                    outcome = future.result()
                    outcomes[op.name] = outcome
                    if outcome.status == OpStatus.FAILED:
                        blocked[op.name] = op.name

        for op in pending:
            outcomes[op.name] = self._skip(op, "cancelled before start")

        ordered = [outcomes[name] for name in change_set.names]
        result = ApplyResult(
            applied=tuple(o for o in ordered if o.status == OpStatus.APPLIED),
            failed=tuple(o for o in ordered if o.status == OpStatus.FAILED),
            skipped=tuple(o for o in ordered if o.status == OpStatus.SKIPPED),
            cancelled=self.cancelled,
        )
        logger.info(
            f"Apply finished: {len(result.applied)} applied, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )
        return result

    def _skip(self, op: ChangeOp, reason: str, skipped_because: Optional[str] = None) -> OpOutcome:
        outcome = OpOutcome(
            name=op.name,
            action=op.action,
            status=OpStatus.SKIPPED,
            message=reason,
            skipped_because=skipped_because,
        )
        logger.warning(f"Skipped {op.describe()}: {reason}", extra={"resource": op.name, "event": "skipped"})
        self._audit(op, outcome)
        return outcome

    def _execute_op(self, op: ChangeOp) -> OpOutcome:
        """Run one op to a terminal outcome. Never raises."""
        started_at = utcnow()
        attempts = [0]

        def count(attempt: int) -> None:
            attempts[0] = attempt

        logger.info(f"Starting {op.describe()}", extra={"resource": op.name, "event": "started"})
        try:
            adapter = self._adapter_for(op)
            if op.action == ChangeAction.DELETE:
                self._delete(op, adapter, count)
            else:
                self._upsert(op, adapter, count)

        except Exception as e:
            kind = classify_error(e)
            if isinstance(e, LockHeldError):
                # Lost the lock; nothing else can be committed.
                self.cancel()
            outcome = OpOutcome(
                name=op.name,
                action=op.action,
                status=OpStatus.FAILED,
                started_at=started_at,
                completed_at=utcnow(),
                attempts=attempts[0],
                error_kind=kind.value,
                message=str(e),
            )
            logger.error(
                f"Failed {op.describe()} [{kind.value}]: {e}",
                extra={"resource": op.name, "event": "failed"},
            )
            self._audit(op, outcome)
            return outcome

        outcome = OpOutcome(
            name=op.name,
            action=op.action,
            status=OpStatus.APPLIED,
            started_at=started_at,
            completed_at=utcnow(),
            attempts=attempts[0],
        )
        logger.info(f"Applied {op.describe()}", extra={"resource": op.name, "event": "applied"})
        self._audit(op, outcome)
        return outcome

    def _adapter_for(self, op: ChangeOp) -> ResourceAdapter:
        try:
            return self._adapters.get(op.kind)
        except KeyError as e:
            raise ExecutionError(op.name, str(e), cause=e)

    def _call(self, func: Callable[[], Any], count: Callable[[int], None], op: ChangeOp) -> Any:
        return retry_with_backoff(
            func,
            max_attempts=self._max_attempts,
            backoff_seconds=self._backoff_seconds,
            backoff_multiplier=self._backoff_multiplier,
            should_retry=lambda e: classify_error(e) == ErrorKind.TRANSIENT,
            sleep=self._cancel.wait,
            on_attempt=count,
            logger=logging.getLogger(f"{__name__}.{op.name}"),
        )

    def _upsert(self, op: ChangeOp, adapter: ResourceAdapter, count: Callable[[int], None]) -> None:
        if op.spec is None:
            raise ExecutionError(op.name, f"{op.action.value} op has no spec")
        with self._commit_lock:
            outputs = self._observed.outputs()
        try:
            resolved = op.spec.with_config(resolve_refs(op.spec.config, outputs))
        except ValueError as e:
            raise ExecutionError(op.name, str(e), cause=e)

        if op.action == ChangeAction.CREATE:
            result = self._call(lambda: adapter.create(resolved), count, op)
        else:
            result = self._call(lambda: adapter.update(op.provider_id, resolved), count, op)

        status = self._wait_for(op, adapter, result.provider_id, ResourceState.READY)
        observed = observed_from_spec(
            op.name,
            op.kind,
            result.provider_id,
            op.spec.config_hash,
            op.spec.dependencies,
            {**result.outputs, **status.outputs},
        )
        self._commit(lambda current: current.with_resource(observed))

    def _delete(self, op: ChangeOp, adapter: ResourceAdapter, count: Callable[[int], None]) -> None:
        self._call(lambda: adapter.delete(op.provider_id), count, op)
        self._wait_for(op, adapter, op.provider_id, ResourceState.ABSENT)
        self._commit(lambda current: current.without_resource(op.name))

    def _ready_timeout_for(self, op: ChangeOp, adapter: ResourceAdapter) -> float:
        if op.kind.value in self._kind_timeouts:
            return self._kind_timeouts[op.kind.value]
        if adapter.ready_timeout is not None:
            return adapter.ready_timeout
        return self._ready_timeout

    def _wait_for(
        self,
        op: ChangeOp,
        adapter: ResourceAdapter,
        provider_id: str,
        target: ResourceState,
    ) -> ResourceStatus:
        """
        Poll describe() until the resource reaches target.

        Transient describe errors are tolerated until the deadline.

        Raises:
            PermanentProviderError: If the resource enters a failed state,
                                    or disappears while waiting for READY
            ReadyTimeoutError: If target is not reached in time
        """
        timeout = self._ready_timeout_for(op, adapter)
        deadline = self._clock() + timeout
        last_state: Optional[str] = None

        while True:
            try:
                status = adapter.describe(provider_id)
            except Exception as e:
                if classify_error(e) != ErrorKind.TRANSIENT:
                    raise
                logger.debug(f"describe {op.name} failed transiently: {e}")
            else:
                last_state = status.message or status.state.value
                reached = status.is_ready if target == ResourceState.READY else status.is_absent
                if reached:
                    return status
                if status.state == ResourceState.FAILED:
                    raise PermanentProviderError(
                        f"{op.kind.value} '{op.name}' entered a failed state: {last_state}"
                    )
                if target == ResourceState.READY and status.is_absent:
                    raise PermanentProviderError(
                        f"{op.kind.value} '{op.name}' ({provider_id}) disappeared before becoming ready"
                    )

            if self._clock() >= deadline:
                raise ReadyTimeoutError(op.name, timeout, last_state)
            self._heartbeat()
            self._sleep(self._poll_interval)

    def _heartbeat(self) -> None:
        """Renew the lock while an op is waiting on its provider."""
        with self._commit_lock:
            self._token = self._store.renew_lock(self._token)

    def _commit(self, change: Callable[[ObservedState], ObservedState]) -> None:
        with self._commit_lock:
            self._token = self._store.renew_lock(self._token)
            self._observed = self._store.commit(change(self._observed), self._token)

    def _audit(self, op: ChangeOp, outcome: OpOutcome) -> None:
        entry = {
            "recorded_at": utcnow().isoformat(),
            "token_id": self._token.token_id,
            "op": op.to_dict(),
            "outcome": outcome.to_dict(),
        }
        try:
            self._store.append_audit(entry)
        except OSError as e:
            logger.error(f"Failed to append audit entry for {op.name}: {e}")

