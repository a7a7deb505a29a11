"""
ChangeOp and ChangeSet - the planned actions that reconcile observed to desired.

A ChangeSet is produced by the planner, consumed exactly once by the
executor, then discarded (each consumed op is appended to the audit log).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from .resource import ResourceKind, ResourceSpec


class ChangeAction(str, Enum):
    """Action planned against a single resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"

    @property
    def symbol(self) -> str:
        return {
            ChangeAction.CREATE: "+",
            ChangeAction.UPDATE: "~",
            ChangeAction.DELETE: "-",
            ChangeAction.NOOP: " ",
        }[self]


@dataclass(frozen=True)
class ChangeOp:
    """
    One planned action.

    Attributes:
        action: create, update or delete (noops are never emitted)
        name: Resource name
        kind: Resource kind
        before_hash: Config hash recorded in observed state (None for create)
        after_hash: Config hash of the desired spec (None for delete)
        after: Names of ops in the same ChangeSet that must be applied first
        spec: Desired spec (create/update only)
        provider_id: Provider identifier from observed state (update/delete only)
    """
    action: ChangeAction
    name: str
    kind: ResourceKind
    before_hash: Optional[str] = None
    after_hash: Optional[str] = None
    after: tuple[str, ...] = field(default_factory=tuple)
    spec: Optional[ResourceSpec] = None
    provider_id: Optional[str] = None

    def __post_init__(self):
        if self.action in (ChangeAction.CREATE, ChangeAction.UPDATE) and self.spec is None:
            raise ValueError(f"{self.action.value} op for '{self.name}' requires a spec")
        if self.action in (ChangeAction.UPDATE, ChangeAction.DELETE) and not self.provider_id:
            raise ValueError(f"{self.action.value} op for '{self.name}' requires a provider_id")

    def describe(self) -> str:
        return f"{self.action.symbol} {self.kind.value} {self.name}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "action": self.action.value,
            "name": self.name,
            "kind": self.kind.value,
            "before_hash": self.before_hash,
            "after_hash": self.after_hash,
            "after": list(self.after),
        }
        if self.provider_id is not None:
            result["provider_id"] = self.provider_id
        return result


@dataclass(frozen=True)
class ChangeSet:
    """
    Ordered list of ops reconciling observed state to desired state.

    Attributes:
        ops: Ops in execution order
        desired_name: Name of the DesiredState that was planned
        observed_serial: Serial of the ObservedState snapshot planned against
    """
    ops: tuple[ChangeOp, ...] = field(default_factory=tuple)
    desired_name: str = ""
    observed_serial: int = 0

    def __iter__(self) -> Iterator[ChangeOp]:
        return iter(self.ops)

    def __len__(self) -> int:
        return len(self.ops)

    @property
    def is_empty(self) -> bool:
        return not self.ops

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(op.name for op in self.ops)

    def get(self, name: str) -> Optional[ChangeOp]:
        for op in self.ops:
            if op.name == name:
                return op
        return None

    def summary(self) -> dict[str, int]:
        """Count of ops per action."""
        counts = {action.value: 0 for action in ChangeAction if action != ChangeAction.NOOP}
        for op in self.ops:
            counts[op.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "desired": self.desired_name,
            "observed_serial": self.observed_serial,
            "summary": self.summary(),
            "ops": [op.to_dict() for op in self.ops],
        }
