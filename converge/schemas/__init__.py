"""
converge.schemas - Schema definitions for the reconciler.

This module defines the core data structures for converge:

DesiredState -> ChangeSet -> ApplyResult -> ObservedState

Lifecycle:
1. DesiredState: Loaded from a document, immutable set of ResourceSpecs
2. ObservedState: Last-known live state, owned by the State Store
3. ChangeSet: Ordered ChangeOps produced by the planner from (1) and (2)
4. ApplyResult: Applied/failed/skipped outcomes of consuming a ChangeSet
5. ReleaseDescriptor: Deployed artifact version, written by the orchestrator
6. LockToken: Exclusive hold over the State Store for one run
"""

from .resource import (
    ResourceKind,
    ResourceSpec,
    DesiredState,
    INFRA_KINDS,
    RELEASE_KINDS,
    REF_PATTERN,
    find_refs,
)
from .release import (
    ReleaseDescriptor,
    ReleaseTrigger,
)
from .observed import (
    ObservedResource,
    ObservedState,
    observed_from_spec,
)
from .change import (
    ChangeAction,
    ChangeOp,
    ChangeSet,
)
from .result import (
    ApplyResult,
    OpOutcome,
    OpStatus,
)
from .lock import LockToken

__all__ = [
    # Resources
    "ResourceKind",
    "ResourceSpec",
    "DesiredState",
    "INFRA_KINDS",
    "RELEASE_KINDS",
    "REF_PATTERN",
    "find_refs",
    # Releases
    "ReleaseDescriptor",
    "ReleaseTrigger",
    # Observed
    "ObservedResource",
    "ObservedState",
    "observed_from_spec",
    # Changes
    "ChangeAction",
    "ChangeOp",
    "ChangeSet",
    # Results
    "ApplyResult",
    "OpOutcome",
    "OpStatus",
    # Lock
    "LockToken",
]
