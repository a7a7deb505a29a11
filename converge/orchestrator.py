"""
Release Orchestrator - drive one artifact version from build to serving.

State machine:

    idle -> building -> publishing -> infra_converging -> deploying -> succeeded
                \\___________\\_______________\\_______________\\______> failed

- building: build the artifact (skipped for an explicit redeploy)
- publishing: push and confirm the digest
- infra_converging: reconcile the infrastructure kinds; any failed or
  skipped op fails the run
- deploying: pin the new image on the Release spec, reconcile the release
  kinds, then poll the readiness probe until it passes or times out

Only a succeeded run records its ReleaseDescriptor in observed state, so a
failed run leaves the previously deployed version as the recorded one.
Terminal states are final; there is no automatic rollback.
"""

import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Optional

from converge.errors import (
    ConvergeError,
    ErrorKind,
    InvalidTransitionError,
    ValidationError,
    classify_error,
)
from converge.reconciler import Reconciler, ReconcileResult
from converge.release import ArtifactBuilder, ArtifactPublisher, ReadinessProbe
from converge.schemas import (
    INFRA_KINDS,
    RELEASE_KINDS,
    DesiredState,
    ReleaseDescriptor,
    ReleaseTrigger,
    ResourceKind,
    ResourceSpec,
)
from converge.utils import generate_ulid, utcnow

logger = logging.getLogger(__name__)


class ReleaseState(str, Enum):
    """States of a release run."""
    IDLE = "idle"
    BUILDING = "building"
    PUBLISHING = "publishing"
    INFRA_CONVERGING = "infra_converging"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ReleaseState.SUCCEEDED, ReleaseState.FAILED)


TRANSITIONS: dict[ReleaseState, frozenset[ReleaseState]] = {
    ReleaseState.IDLE: frozenset({ReleaseState.BUILDING, ReleaseState.FAILED}),
    ReleaseState.BUILDING: frozenset({ReleaseState.PUBLISHING, ReleaseState.FAILED}),
    ReleaseState.PUBLISHING: frozenset({ReleaseState.INFRA_CONVERGING, ReleaseState.FAILED}),
    ReleaseState.INFRA_CONVERGING: frozenset({ReleaseState.DEPLOYING, ReleaseState.FAILED}),
    ReleaseState.DEPLOYING: frozenset({ReleaseState.SUCCEEDED, ReleaseState.FAILED}),
    ReleaseState.SUCCEEDED: frozenset(),
    ReleaseState.FAILED: frozenset(),
}


class ReleaseRun:
    """
    One pass through the state machine for a single trigger.

    Attributes:
        run_id: ULID of the run
        trigger: The trigger that started it
        release: Name of the Release resource being deployed
        state: Current state
        history: (state, entered_at) pairs in order
        descriptor: The descriptor this run deploys, set once publishing confirms a digest
        previous: Descriptor recorded before the run started
        error: Failure reason for a failed run
        infra_result / deploy_result: Reconcile results of the two apply phases
    """

    def __init__(self, trigger: ReleaseTrigger, release: str, previous: Optional[ReleaseDescriptor] = None):
        self.run_id = generate_ulid()
        self.trigger = trigger
        self.release = release
        self.state = ReleaseState.IDLE
        self.history = [(ReleaseState.IDLE, utcnow())]
        self.descriptor: Optional[ReleaseDescriptor] = None
        self.previous = previous
        self.error: Optional[str] = None
        self.failed_in: Optional[ReleaseState] = None
        self.infra_result: Optional[ReconcileResult] = None
        self.deploy_result: Optional[ReconcileResult] = None

    @property
    def succeeded(self) -> bool:
        return self.state == ReleaseState.SUCCEEDED

    def transition(self, target: ReleaseState) -> None:
        """
        Move to target.

        Raises:
            InvalidTransitionError: If target is not reachable from the current state
        """
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Release run {self.run_id}: cannot move from {self.state.value} to {target.value}"
            )
        logger.info(
            f"Release {self.release} {self.trigger.version}: {self.state.value} -> {target.value}",
            extra={"resource": self.release, "event": target.value},
        )
        self.state = target
        self.history.append((target, utcnow()))

    def fail(self, reason: str) -> None:
        self.failed_in = self.state
        self.error = reason
        self.transition(ReleaseState.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "release": self.release,
            "version": self.trigger.version,
            "state": self.state.value,
            "failed_in": self.failed_in.value if self.failed_in else None,
            "error": self.error,
            "descriptor": self.descriptor.to_dict() if self.descriptor else None,
            "previous": self.previous.to_dict() if self.previous else None,
            "history": [{"state": s.value, "at": at.isoformat()} for s, at in self.history],
        }


class _PhaseFailed(Exception):
    pass


class ReleaseOrchestrator:
    """
    Runs release triggers through build, publish, infra and deploy.

    Args:
        reconciler: Reconciler sharing the state store with the CLI
        builder: ArtifactBuilder for new versions
        publisher: ArtifactPublisher confirming the digest
        probe: ReadinessProbe polled after deploy
        readiness_timeout: Seconds to wait for the probe to pass
        readiness_interval: Seconds between probe checks
        record_wait: Seconds to wait for the state lock when recording a
                     deployed descriptor (at least the reconciler's lock_wait)
    """

    def __init__(
        self,
        reconciler: Reconciler,
        builder: ArtifactBuilder,
        publisher: ArtifactPublisher,
        probe: ReadinessProbe,
        readiness_timeout: float = 600.0,
        readiness_interval: float = 10.0,
        record_wait: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.reconciler = reconciler
        self.builder = builder
        self.publisher = publisher
        self.probe = probe
        self.readiness_timeout = readiness_timeout
        self.readiness_interval = readiness_interval
        self.record_wait = record_wait
        self._clock = clock
        self._sleep = sleep
        self.runs: list[ReleaseRun] = []

    def run(self, trigger: ReleaseTrigger, desired: DesiredState, release: Optional[str] = None) -> ReleaseRun:
        """
        Run a trigger to a terminal state.

        Args:
            trigger: Artifact and version to release
            desired: Full desired state (infra and release resources)
            release: Release resource name; required when desired has several

        Returns:
            The finished ReleaseRun (succeeded or failed)

        Raises:
            ValidationError: If the Release resource cannot be determined
        """
        spec = self._release_spec(desired, release)
        previous = self.reconciler.store.read_observed().get_release(spec.name)
        run = ReleaseRun(trigger, spec.name, previous=previous)
        self.runs.append(run)

        try:
            self._build(run)
            digest = self._publish(run)
            self._converge_infra(run, desired)
            self._deploy(run, desired, spec, digest)
        except _PhaseFailed as e:
            run.fail(str(e))
        except ConvergeError as e:
            logger.error(f"Release {spec.name} failed in {run.state.value}: {e}")
            run.fail(f"{type(e).__name__}: {e}")
        except Exception as e:
            kind = classify_error(e)
            logger.exception(f"Release {spec.name} failed in {run.state.value} [{kind.value}]: {e}")
            run.fail(f"{type(e).__name__}: {e}")

        if run.succeeded:
            logger.info(f"Release {spec.name} {trigger.version} succeeded")
        else:
            kept = previous.image_ref if previous else "none"
            logger.error(
                f"Release {spec.name} {trigger.version} failed in "
                f"{run.failed_in.value if run.failed_in else '?'}: {run.error}; "
                f"deployed version stays {kept}"
            )
        return run

    def redeploy(self, descriptor: ReleaseDescriptor, desired: DesiredState) -> ReleaseRun:
        """Explicitly deploy a previously released descriptor again, without rebuilding."""
        return self.run(ReleaseTrigger.from_descriptor(descriptor), desired, release=descriptor.release)

    # -- phases -------------------------------------------------------------

    def _build(self, run: ReleaseRun) -> None:
        run.transition(ReleaseState.BUILDING)
        if not run.trigger.rebuild:
            logger.info(f"Skipping build for redeploy of {run.trigger.artifact_ref}:{run.trigger.version}")
            return
        self.builder.build(run.trigger)

    def _publish(self, run: ReleaseRun) -> str:
        run.transition(ReleaseState.PUBLISHING)
        digest = self.publisher.publish(run.trigger)
        if not digest:
            raise _PhaseFailed("publisher did not confirm the artifact digest")
        return digest

    def _converge_infra(self, run: ReleaseRun, desired: DesiredState) -> None:
        run.transition(ReleaseState.INFRA_CONVERGING)
        result = self.reconciler.reconcile(desired, kinds=INFRA_KINDS)
        run.infra_result = result
        if not result.success:
            raise _PhaseFailed(_summarize("infrastructure apply failed", result))

    def _deploy(self, run: ReleaseRun, desired: DesiredState, spec: ResourceSpec, digest: str) -> None:
        run.transition(ReleaseState.DEPLOYING)
        descriptor = ReleaseDescriptor(
            release=spec.name,
            image=run.trigger.artifact_ref,
            tag=run.trigger.version,
            digest=digest,
            version_label=run.trigger.version,
            objects=tuple(spec.config.get("objects") or ()),
        )
        run.descriptor = descriptor

        config = dict(spec.config)
        config.setdefault("image", descriptor.image)
        config["tag"] = descriptor.tag
        config["digest"] = descriptor.digest
        pinned = spec.with_config(config)

        result = self.reconciler.reconcile(desired.replace(pinned), kinds=RELEASE_KINDS)
        run.deploy_result = result
        if not result.success:
            raise _PhaseFailed(_summarize("release apply failed", result))

        self._await_ready(descriptor, pinned)

        deployed = replace(descriptor, deployed_at=utcnow())
        self._record(deployed)
        run.descriptor = deployed
        run.transition(ReleaseState.SUCCEEDED)

    def _await_ready(self, descriptor: ReleaseDescriptor, spec: ResourceSpec) -> None:
        deadline = self._clock() + self.readiness_timeout
        while True:
            try:
                if self.probe.check(descriptor, spec):
                    return
            except Exception as e:
                if classify_error(e) != ErrorKind.TRANSIENT:
                    raise _PhaseFailed(f"readiness probe error: {e}") from e
                logger.debug(f"Readiness probe for {descriptor.release} failed transiently: {e}")

            if self._clock() >= deadline:
                raise _PhaseFailed(
                    f"readiness probe did not pass within {self.readiness_timeout:g}s"
                )
            self._sleep(self.readiness_interval)

    def _record(self, descriptor: ReleaseDescriptor) -> None:
        store = self.reconciler.store
        token = store.acquire_lock(
            self.reconciler.owner,
            ttl=self.reconciler.lock_ttl,
            wait=max(self.reconciler.lock_wait, self.record_wait),
        )
        try:
            store.commit(store.read_observed().with_release(descriptor), token)
        finally:
            store.release_lock(token)

    @staticmethod
    def _release_spec(desired: DesiredState, release: Optional[str]) -> ResourceSpec:
        if release is not None:
            spec = desired.get(release)
            if spec is None or spec.kind != ResourceKind.RELEASE:
                raise ValidationError(f"No Release resource named '{release}' in '{desired.name}'")
            return spec

        releases = desired.of_kind(ResourceKind.RELEASE)
        if len(releases) != 1:
            raise ValidationError(
                f"'{desired.name}' has {len(releases)} Release resources; name the one to deploy"
            )
        return releases[0]


def _summarize(prefix: str, result: ReconcileResult) -> str:
    report = result.apply_result.failure_report()
    return f"{prefix}: {'; '.join(report)}" if report else prefix
