"""
In-memory adapter for testing and rehearsal.

Resources live in a dict and become ready after a configurable number of
describe() polls. Failures can be scripted per resource name.
"""

import itertools
import threading
from typing import Any, Optional

from converge.adapters.base import (
    ProviderResult,
    ResourceAdapter,
    ResourceState,
    ResourceStatus,
)
from converge.schemas import ResourceKind, ResourceSpec


class InMemoryAdapter(ResourceAdapter):
    """
    Adapter that keeps resources in memory.

    Args:
        kind: Resource kind this adapter serves
        polls_until_ready: describe() calls returning PENDING before READY
        fail_with: Map of resource name -> exception (or list of exceptions,
                   consumed one per call) raised by create/update/delete
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        kind: ResourceKind,
        polls_until_ready: int = 0,
        fail_with: Optional[dict[str, Any]] = None,
        never_ready: Optional[set[str]] = None,
    ):
        self.kind = kind
        self.polls_until_ready = polls_until_ready
        self.fail_with = dict(fail_with or {})
        self.never_ready = set(never_ready or ())
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._polls: dict[str, int] = {}
        self._names: dict[str, str] = {}
        self._mutex = threading.Lock()

    def _maybe_fail(self, name: str) -> None:
        failure = self.fail_with.get(name)
        if failure is None:
            return
        if isinstance(failure, list):
            if not failure:
                return
            raise failure.pop(0)
        raise failure

    def create(self, spec: ResourceSpec) -> ProviderResult:
        with self._mutex:
            self.calls.append(("create", spec.name))
        self._maybe_fail(spec.name)
        with self._mutex:
            provider_id = f"{self.kind.value.lower()}-{next(self._ids)}"
            self.resources[provider_id] = dict(spec.config)
            self._names[provider_id] = spec.name
            self._polls[provider_id] = 0
        return ProviderResult(provider_id=provider_id, outputs=self._outputs(provider_id))

    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        with self._mutex:
            self.calls.append(("update", spec.name))
        self._maybe_fail(spec.name)
        with self._mutex:
            self.resources[provider_id] = dict(spec.config)
            self._names[provider_id] = spec.name
            self._polls[provider_id] = 0
        return ProviderResult(provider_id=provider_id, outputs=self._outputs(provider_id))

    def delete(self, provider_id: str) -> None:
        name = self._names.get(provider_id, provider_id)
        with self._mutex:
            self.calls.append(("delete", name))
        self._maybe_fail(name)
        with self._mutex:
            self.resources.pop(provider_id, None)

    def describe(self, provider_id: str) -> ResourceStatus:
        with self._mutex:
            if provider_id not in self.resources:
                return ResourceStatus(state=ResourceState.ABSENT)
            if self._names.get(provider_id) in self.never_ready:
                return ResourceStatus(state=ResourceState.PENDING, message="never ready")
            polls = self._polls.get(provider_id, 0)
            self._polls[provider_id] = polls + 1
            if polls < self.polls_until_ready:
                return ResourceStatus(state=ResourceState.PENDING)
        return ResourceStatus(state=ResourceState.READY, outputs=self._outputs(provider_id))

    def _outputs(self, provider_id: str) -> dict[str, Any]:
        return {"id": provider_id, **self.resources.get(provider_id, {})}

    def call_names(self, action: str) -> list[str]:
        """Names passed to a given action, in call order."""
        with self._mutex:
            return [name for a, name in self.calls if a == action]
