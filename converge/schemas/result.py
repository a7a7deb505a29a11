"""
Apply result schemas - tracking the outcome of each consumed ChangeOp.

OpOutcome tracks the result of executing a single op within an apply.
ApplyResult groups outcomes into applied, failed and skipped.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .change import ChangeAction


class OpStatus(str, Enum):
    """Status of an op execution."""
    PENDING = "pending"
    RUNNING = "running"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class OpOutcome:
    """
    The outcome of executing a single op.

    Attributes:
        name: Resource name of the op
        action: The op's action
        status: Execution status (applied, failed, skipped)
        started_at: When execution started (null if skipped)
        completed_at: When execution completed (null if skipped)
        attempts: Number of adapter attempts made
        error_kind: Classified error kind if status is failed
        message: Error message if failed, skip reason if skipped
        skipped_because: Failed op whose failure caused this skip
    """
    name: str
    action: ChangeAction
    status: OpStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    error_kind: Optional[str] = None
    message: Optional[str] = None
    skipped_because: Optional[str] = None

    def __post_init__(self):
        if self.status in (OpStatus.APPLIED, OpStatus.FAILED):
            if self.started_at is None or self.completed_at is None:
                raise ValueError(f"{self.status.value} ops must have started_at and completed_at")
        if self.status == OpStatus.FAILED and self.error_kind is None:
            raise ValueError("Failed ops must carry an error_kind")

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "name": self.name,
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.error_kind is not None:
            result["error_kind"] = self.error_kind
        if self.message is not None:
            result["message"] = self.message
        if self.skipped_because is not None:
            result["skipped_because"] = self.skipped_because
        return result


@dataclass(frozen=True)
class ApplyResult:
    """
    Result of applying a ChangeSet.

    A failed apply leaves observed state reflecting exactly the applied ops;
    nothing is rolled back.
    """
    applied: tuple[OpOutcome, ...] = field(default_factory=tuple)
    failed: tuple[OpOutcome, ...] = field(default_factory=tuple)
    skipped: tuple[OpOutcome, ...] = field(default_factory=tuple)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped

    @property
    def applied_names(self) -> list[str]:
        return [o.name for o in self.applied]

    @property
    def failed_names(self) -> list[str]:
        return [o.name for o in self.failed]

    @property
    def skipped_names(self) -> list[str]:
        return [o.name for o in self.skipped]

    def get_outcome(self, name: str) -> Optional[OpOutcome]:
        for outcome in self.applied + self.failed + self.skipped:
            if outcome.name == name:
                return outcome
        return None

    def failure_report(self) -> list[str]:
        """
        Human-readable lines for each terminal failure.

        Each line names the failed op, its classified error kind, the
        message, and the dependents skipped because of it.
        """
        lines = []
        for failure in self.failed:
            dependents = sorted(
                o.name for o in self.skipped if o.skipped_because == failure.name
            )
            line = (
                f"{failure.action.value} {failure.name} failed "
                f"[{failure.error_kind}]: {failure.message}"
            )
            if dependents:
                line += f" (skipped dependents: {', '.join(dependents)})"
            lines.append(line)
        if self.cancelled:
            cancelled = sorted(o.name for o in self.skipped if o.skipped_because is None)
            if cancelled:
                lines.append(f"cancelled before start: {', '.join(cancelled)}")
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "applied": [o.to_dict() for o in self.applied],
            "failed": [o.to_dict() for o in self.failed],
            "skipped": [o.to_dict() for o in self.skipped],
        }
