"""
ObservedState - the last-known actual configuration of live resources.

ObservedState snapshots are produced by refreshing against live APIs and by
the executor after each successful op. They are immutable: every change
produces a new snapshot, which the State Store persists atomically.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Optional

from converge.utils import generate_ulid, utcnow

from .release import ReleaseDescriptor
from .resource import ResourceKind


@dataclass(frozen=True)
class ObservedResource:
    """
    What is known about one live resource.

    Attributes:
        name: ResourceSpec name this resource was created for
        kind: ResourceKind of the resource
        provider_id: Identifier assigned by the provider (VPC id, cluster name, ...)
        config_hash: Hash of the configuration last applied
        dependencies: Dependency names at the time of the last apply,
                      used to order deletes once the spec is gone
        outputs: Provider-assigned attributes exposed to @ref.* lookups
        updated_at: When this entry was last written
    """
    name: str
    kind: ResourceKind
    provider_id: str
    config_hash: str
    dependencies: tuple[str, ...] = field(default_factory=tuple)
    outputs: dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "provider_id": self.provider_id,
            "config_hash": self.config_hash,
            "dependencies": list(self.dependencies),
            "outputs": self.outputs,
        }
        if self.updated_at is not None:
            result["updated_at"] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ObservedResource":
        return cls(
            name=data["name"],
            kind=ResourceKind.from_string(data["kind"]),
            provider_id=data["provider_id"],
            config_hash=data["config_hash"],
            dependencies=tuple(data.get("dependencies", ())),
            outputs=dict(data.get("outputs") or {}),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
        )


@dataclass(frozen=True)
class ObservedState:
    """
    Immutable snapshot of what currently exists.

    Attributes:
        serial: Monotonic commit counter, bumped by the State Store
        lineage: Identifier of the state's history, fixed at first creation
        resources: Observed resources sorted by name
        releases: Deployed ReleaseDescriptor per Release resource name
    """
    serial: int = 0
    lineage: str = field(default_factory=generate_ulid)
    resources: tuple[ObservedResource, ...] = field(default_factory=tuple)
    releases: tuple[ReleaseDescriptor, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(
            self, "resources", tuple(sorted(self.resources, key=lambda r: r.name))
        )
        object.__setattr__(
            self, "releases", tuple(sorted(self.releases, key=lambda r: r.release))
        )

    def __contains__(self, name: object) -> bool:
        return self.get(name) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(r.name for r in self.resources)

    def get(self, name: str) -> Optional[ObservedResource]:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None

    def get_release(self, release: str) -> Optional[ReleaseDescriptor]:
        for descriptor in self.releases:
            if descriptor.release == release:
                return descriptor
        return None

    def outputs(self) -> dict[str, dict[str, Any]]:
        """Map of resource name to outputs, for @ref.* resolution."""
        return {r.name: r.outputs for r in self.resources}

    def filter(self, kinds: Iterable[ResourceKind]) -> "ObservedState":
        """Return a snapshot restricted to resources whose kind is in kinds."""
        wanted = set(kinds)
        return replace(self, resources=tuple(r for r in self.resources if r.kind in wanted))

    def with_resource(self, resource: ObservedResource) -> "ObservedState":
        """Return a copy with resource added or replaced."""
        others = tuple(r for r in self.resources if r.name != resource.name)
        return replace(self, resources=others + (resource,))

    def without_resource(self, name: str) -> "ObservedState":
        """Return a copy with the named resource removed."""
        return replace(self, resources=tuple(r for r in self.resources if r.name != name))

    def with_release(self, descriptor: ReleaseDescriptor) -> "ObservedState":
        """Return a copy recording descriptor as the deployed release."""
        others = tuple(d for d in self.releases if d.release != descriptor.release)
        return replace(self, releases=others + (descriptor,))

    def to_dict(self) -> dict[str, Any]:
        return {
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": [r.to_dict() for r in self.resources],
            "releases": [d.to_dict() for d in self.releases],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ObservedState":
        return cls(
            serial=data.get("serial", 0),
            lineage=data.get("lineage") or generate_ulid(),
            resources=tuple(ObservedResource.from_dict(r) for r in data.get("resources", [])),
            releases=tuple(ReleaseDescriptor.from_dict(d) for d in data.get("releases", [])),
        )


def observed_from_spec(
    spec_name: str,
    kind: ResourceKind,
    provider_id: str,
    config_hash: str,
    dependencies: Iterable[str],
    outputs: Optional[dict[str, Any]] = None,
) -> ObservedResource:
    """Build the ObservedResource recorded after a successful create/update."""
    return ObservedResource(
        name=spec_name,
        kind=kind,
        provider_id=provider_id,
        config_hash=config_hash,
        dependencies=tuple(sorted(dependencies)),
        outputs=dict(outputs or {}),
        updated_at=utcnow(),
    )
