"""
Base adapter protocol shared by every provider integration.

Adapters translate ResourceSpecs into calls against an external API. Each
adapter handles one ResourceKind and exposes the same capability set:
- create(spec)        -> ProviderResult(provider_id, outputs)
- update(id, spec)    -> ProviderResult
- delete(id)          -> None
- describe(id)        -> ResourceStatus(state, outputs)

Adapters raise TransientProviderError / PermanentProviderError; anything
else that escapes is classified by the executor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from converge.schemas import ResourceKind, ResourceSpec


class ResourceState(str, Enum):
    """Lifecycle state reported by describe()."""
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    ABSENT = "absent"


@dataclass(frozen=True)
class ProviderResult:
    """Result of a create or update call."""
    provider_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceStatus:
    """Result of a describe call."""
    state: ResourceState
    outputs: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.state == ResourceState.READY

    @property
    def is_absent(self) -> bool:
        return self.state == ResourceState.ABSENT


class ResourceAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Subclasses set `kind` and implement the four capabilities.
    `ready_timeout` optionally overrides the executor's default wait for
    resources that are slow to converge (EKS clusters, node groups).
    """

    kind: ResourceKind
    ready_timeout: Optional[float] = None

    @abstractmethod
    def create(self, spec: ResourceSpec) -> ProviderResult:
        """
        Create the resource described by spec.

        Args:
            spec: ResourceSpec with @ref.* values already resolved

        Returns:
            ProviderResult carrying the provider identifier
        """
        pass

    @abstractmethod
    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        """Bring an existing resource in line with spec."""
        pass

    @abstractmethod
    def delete(self, provider_id: str) -> None:
        """Start deleting a resource. Deleting an absent resource is not an error."""
        pass

    @abstractmethod
    def describe(self, provider_id: str) -> ResourceStatus:
        """Report the current state of a resource."""
        pass
