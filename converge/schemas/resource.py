"""
ResourceSpec and DesiredState - the declarative target description.

A ResourceSpec describes one infrastructure or release unit. Its config may
contain @ref.<resource>.<output> strings that point at outputs of other
resources; each reference is an implicit dependency and is resolved at apply
time from the observed outputs.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Optional

from converge.utils import sha256_hex


# Reference pattern for @ref.<resource>.<output path>
REF_PATTERN = re.compile(r"@ref\.([A-Za-z0-9_-]+)((?:\.[A-Za-z0-9_-]+)*)")


class ResourceKind(str, Enum):
    """Kinds of resources converge knows how to reconcile."""
    NETWORK = "Network"
    COMPUTE_CLUSTER = "ComputeCluster"
    NODE_POOL = "NodePool"
    REGISTRY = "Registry"
    RELEASE = "Release"
    ROUTE = "Route"

    @classmethod
    def from_string(cls, value: str) -> "ResourceKind":
        """Parse a ResourceKind from its string value."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Unknown resource kind: {value}")

    @property
    def is_infra(self) -> bool:
        return self in INFRA_KINDS


INFRA_KINDS = frozenset({
    ResourceKind.NETWORK,
    ResourceKind.COMPUTE_CLUSTER,
    ResourceKind.NODE_POOL,
    ResourceKind.REGISTRY,
})

RELEASE_KINDS = frozenset({
    ResourceKind.RELEASE,
    ResourceKind.ROUTE,
})


def find_refs(value: Any) -> set[str]:
    """Collect the resource names referenced by @ref.* strings anywhere in value."""
    found: set[str] = set()
    if isinstance(value, str):
        for match in REF_PATTERN.finditer(value):
            found.add(match.group(1))
    elif isinstance(value, dict):
        for v in value.values():
            found |= find_refs(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            found |= find_refs(v)
    return found


@dataclass(frozen=True)
class ResourceSpec:
    """
    One node of the desired-state graph.

    Attributes:
        kind: What the resource is (Network, ComputeCluster, ...)
        name: Unique name within the desired state
        config: Provider parameters, may contain @ref.* strings
        depends_on: Names of resources that must exist first
    """
    kind: ResourceKind
    name: str
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.name:
            raise ValueError("ResourceSpec name must be non-empty")
        if self.name in self.depends_on:
            raise ValueError(f"Resource '{self.name}' cannot depend on itself")

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Explicit depends_on plus resources named by @ref.* strings, sorted."""
        return tuple(sorted(set(self.depends_on) | find_refs(self.config)))

    @property
    def config_hash(self) -> str:
        """Content hash of kind, config and dependencies."""
        return sha256_hex({
            "kind": self.kind.value,
            "config": self.config,
            "depends_on": list(self.dependencies),
        })

    def with_config(self, config: dict[str, Any]) -> "ResourceSpec":
        """Return a copy with config replaced."""
        return ResourceSpec(
            kind=self.kind,
            name=self.name,
            config=config,
            depends_on=self.depends_on,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "name": self.name,
            "config": self.config,
        }
        if self.depends_on:
            result["depends_on"] = list(self.depends_on)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceSpec":
        """Deserialize from dictionary."""
        return cls(
            kind=ResourceKind.from_string(data["kind"]),
            name=data["name"],
            config=dict(data.get("config") or {}),
            depends_on=tuple(data.get("depends_on") or ()),
        )


@dataclass(frozen=True)
class DesiredState:
    """
    The full target description: a named set of ResourceSpecs.

    DesiredState is immutable. Graph validity (unique names, resolvable
    references, no cycles) is checked by the loader; filter() may produce
    a subset whose edges point at resources outside it.
    """
    name: str
    resources: tuple[ResourceSpec, ...] = field(default_factory=tuple)

    def __post_init__(self):
        names = [r.name for r in self.resources]
        if len(names) != len(set(names)):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate resource names: {duplicates}")
        object.__setattr__(
            self, "resources", tuple(sorted(self.resources, key=lambda r: r.name))
        )

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, name: object) -> bool:
        return any(r.name == name for r in self.resources)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(r.name for r in self.resources)

    def get(self, name: str) -> Optional[ResourceSpec]:
        """Get a resource by name."""
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None

    def of_kind(self, *kinds: ResourceKind) -> tuple[ResourceSpec, ...]:
        return tuple(r for r in self.resources if r.kind in kinds)

    def filter(self, kinds: Iterable[ResourceKind]) -> "DesiredState":
        """Return the subset of resources whose kind is in kinds."""
        wanted = set(kinds)
        return DesiredState(
            name=self.name,
            resources=tuple(r for r in self.resources if r.kind in wanted),
        )

    def replace(self, spec: ResourceSpec) -> "DesiredState":
        """Return a copy with the resource of the same name swapped for spec."""
        if spec.name not in self:
            raise KeyError(f"Unknown resource: {spec.name}")
        return DesiredState(
            name=self.name,
            resources=tuple(spec if r.name == spec.name else r for r in self.resources),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "resources": [r.to_dict() for r in self.resources],
        }
