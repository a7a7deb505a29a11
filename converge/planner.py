"""
Planner - diff desired state against observed state into an ordered ChangeSet.

For every resource:
- in desired, absent from observed          -> create
- in both, config hash differs             -> update
- in observed, absent from desired          -> delete
- in both, same hash                       -> noop (omitted)

Ordering:
- Creates and updates first, in forward dependency order over the desired graph
- Deletes after, in reverse dependency order over the dependencies recorded
  in observed state (dependents removed before their dependencies)
- A delete also waits for any create/update of a resource that used to
  depend on it
- Ties broken by resource name

Planning never touches live state.
"""

import logging

from converge.errors import ValidationError
from converge.graph import ancestors_within, restrict, topological_order
from converge.schemas import (
    ChangeAction,
    ChangeOp,
    ChangeSet,
    DesiredState,
    ObservedState,
)

logger = logging.getLogger(__name__)


def plan(desired: DesiredState, observed: ObservedState) -> ChangeSet:
    """
    Compute the ChangeSet that reconciles observed to desired.

    Args:
        desired: Target resources
        observed: Last-known live resources

    Returns:
        ChangeSet with non-noop ops in execution order. Each op's `after`
        holds the names of earlier ops it must wait for.

    Raises:
        ValidationError: If an existing resource's kind changed
        CycleError: If the changed subgraph contains a cycle
    """
    upserts: dict[str, ChangeOp] = {}
    for spec in desired:
        current = observed.get(spec.name)
        after_hash = spec.config_hash
        if current is None:
            upserts[spec.name] = ChangeOp(
                action=ChangeAction.CREATE,
                name=spec.name,
                kind=spec.kind,
                after_hash=after_hash,
                spec=spec,
            )
            continue

        if current.kind != spec.kind:
            raise ValidationError(
                f"Resource '{spec.name}' is observed as {current.kind.value} but desired as "
                f"{spec.kind.value}; kinds cannot change in place, rename the resource"
            )
        if current.config_hash != after_hash:
            upserts[spec.name] = ChangeOp(
                action=ChangeAction.UPDATE,
                name=spec.name,
                kind=spec.kind,
                before_hash=current.config_hash,
                after_hash=after_hash,
                spec=spec,
                provider_id=current.provider_id,
            )

    deletes: dict[str, ChangeOp] = {}
    for resource in observed.resources:
        if resource.name not in desired:
            deletes[resource.name] = ChangeOp(
                action=ChangeAction.DELETE,
                name=resource.name,
                kind=resource.kind,
                before_hash=resource.config_hash,
                provider_id=resource.provider_id,
            )

    ordered = _order_upserts(desired, upserts) + _order_deletes(observed, deletes, upserts)
    change_set = ChangeSet(
        ops=tuple(ordered),
        desired_name=desired.name,
        observed_serial=observed.serial,
    )
    logger.debug(f"Planned {len(change_set)} ops for '{desired.name}': {change_set.summary()}")
    return change_set


def _order_upserts(desired: DesiredState, upserts: dict[str, ChangeOp]) -> list[ChangeOp]:
    graph = {spec.name: spec.dependencies for spec in desired}
    edges = restrict(graph, upserts)
    order = topological_order(edges)
    return [_with_after(upserts[name], edges[name]) for name in order]


def _order_deletes(
    observed: ObservedState,
    deletes: dict[str, ChangeOp],
    upserts: dict[str, ChangeOp],
) -> list[ChangeOp]:
    if not deletes:
        return []

    # Reverse the recorded dependency edges: a delete waits on its dependents.
    graph = {r.name: r.dependencies for r in observed.resources}
    reverse: dict[str, set[str]] = {name: set() for name in graph}
    for name, deps in graph.items():
        for dep in deps:
            if dep in reverse:
                reverse[dep].add(name)

    delete_edges = restrict(reverse, deletes)
    order = topological_order(delete_edges)

    ops = []
    for name in order:
        waits = set(delete_edges[name])
        # Updates or creates of former dependents must land before the delete.
        for dependent in ancestors_within(reverse, name, set(upserts)):
            waits.add(dependent)
        ops.append(_with_after(deletes[name], tuple(sorted(waits))))
    return ops


def _with_after(op: ChangeOp, after: tuple[str, ...]) -> ChangeOp:
    return ChangeOp(
        action=op.action,
        name=op.name,
        kind=op.kind,
        before_hash=op.before_hash,
        after_hash=op.after_hash,
        after=tuple(after),
        spec=op.spec,
        provider_id=op.provider_id,
    )
