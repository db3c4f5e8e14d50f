"""Diff a desired-state document against the prior snapshot.

Planning never contacts the control plane. Values that depend on a
resource not yet created are marked UNKNOWN and resolved at apply time.
"""

from typing import Any, Mapping, Optional

import structlog

from sitestack.core.exceptions import PreventDestroyError, UnresolvedReferenceError
from sitestack.engine.expressions import (
    UNKNOWN,
    Reference,
    contains_unknown,
    interpolate,
    walk_path,
)
from sitestack.engine.graph import DependencyGraph
from sitestack.engine.variables import resolve_variables
from sitestack.models.plan import Action, Operation, Plan
from sitestack.models.schemas import Document, ResourceDeclaration, StateSnapshot
from sitestack.providers.base import Provider, ResourceHandler

logger = structlog.get_logger(__name__)

_MISSING = object()


def diff_attributes(before: Mapping[str, Any], after: Mapping[str, Any]) -> list[str]:
    """Keys added, removed, changed, or not yet known."""
    changed = []
    for key in sorted(set(before) | set(after)):
        new = after.get(key, _MISSING)
        if new is not _MISSING and contains_unknown(new):
            changed.append(key)
        elif before.get(key, _MISSING) != new:
            changed.append(key)
    return changed


class Planner:
    """
    Computes the minimal ordered operation list for one document.

    Example:
        planner = Planner(provider)
        plan = planner.plan(document, snapshot, {"domain": "example.com"})
    """

    def __init__(self, provider: Provider):
        self.provider = provider

    def plan(
        self,
        document: Document,
        snapshot: StateSnapshot,
        variables: Optional[Mapping[str, Any]] = None,
        destroy: bool = False,
    ) -> Plan:
        """
        Build a plan.

        Args:
            document: Desired state.
            snapshot: Prior state.
            variables: Values overriding declared defaults.
            destroy: Plan deletion of everything in state instead.

        Raises:
            CycleDetectedError: References form a cycle.
            UnresolvedReferenceError: A reference target is missing.
            VariableError: A variable is missing or mistyped.
            UnknownResourceTypeError: The provider cannot manage a type.
            PreventDestroyError: A protected resource would be destroyed.
        """
        values = resolve_variables(document.variables, variables)
        graph = DependencyGraph.from_document(document)
        levels = graph.levels()
        declarations = document.by_address

        operations: list[Operation] = []
        if destroy:
            orphans = list(snapshot.resources)
        else:
            orphans = [address for address in snapshot.resources if address not in declarations]
        for address in orphans:
            declared = declarations.get(address)
            if declared is not None and declared.lifecycle.prevent_destroy:
                raise PreventDestroyError(address, "destroyed")

        planned: dict[str, Operation] = {}
        if not destroy:
            for index, level in enumerate(levels):
                for address in level:
                    planned[address] = self._plan_resource(
                        declarations[address],
                        index,
                        sorted(graph.dependencies[address]),
                        snapshot,
                        values,
                        planned,
                    )

        deletes = self._plan_teardown(orphans, snapshot, planned)
        operations.extend(op for op in deletes if not op.deferred)
        operations.extend(planned.values())
        operations.extend(op for op in deletes if op.deferred)

        plan = Plan(
            operations=operations,
            serial=snapshot.serial,
            lineage=snapshot.lineage,
            variables=values,
            destroy=destroy,
            document=document,
        )
        logger.info("plan_computed", destroy=destroy, serial=snapshot.serial, **plan.summary())
        return plan

    def _plan_teardown(
        self,
        orphans: list[str],
        snapshot: StateSnapshot,
        planned: Mapping[str, Operation],
    ) -> list[Operation]:
        """
        Order deletes and the delete half of replacements.

        Teardown runs dependents first over the recorded dependencies. An
        orphan that a surviving update still points at is deferred until
        after the apply levels, together with the orphans it depends on.
        Sets ``teardown_level`` on REPLACE operations in ``planned``.
        """
        orphan_set = set(orphans)
        replaced = [op for op in planned.values() if op.action is Action.REPLACE]
        held = [
            dep
            for op in planned.values()
            if op.action is Action.UPDATE and op.prior is not None
            for dep in op.prior.dependencies
            if dep in orphan_set
        ]
        deferred: set[str] = set()
        while held:
            address = held.pop()
            if address in deferred:
                continue
            deferred.add(address)
            held.extend(dep for dep in snapshot.resources[address].dependencies if dep in orphan_set)

        early = {
            address: snapshot.resources[address].dependencies
            for address in orphans
            if address not in deferred
        }
        for op in replaced:
            early[op.address] = op.prior.dependencies if op.prior is not None else []
        late = {address: snapshot.resources[address].dependencies for address in deferred}

        operations = []
        for phase in (early, late):
            for index, level in enumerate(DependencyGraph.from_mapping(phase).reverse_levels()):
                for address in level:
                    if address in planned:
                        planned[address].teardown_level = index
                        continue
                    prior = snapshot.resources[address]
                    # Type must still be known to the provider to delete it
                    self.provider.handler_for(prior.type)
                    operations.append(
                        Operation(
                            action=Action.DELETE,
                            address=address,
                            resource_type=prior.type,
                            level=index,
                            prior=prior,
                            before=dict(prior.inputs),
                            changed=sorted(prior.inputs),
                            dependencies=list(prior.dependencies),
                            teardown_level=index,
                            deferred=address in deferred,
                        )
                    )
        if deferred:
            logger.info("deletes_deferred", addresses=sorted(deferred))
        return operations

    def _plan_resource(
        self,
        declaration: ResourceDeclaration,
        level: int,
        dependencies: list[str],
        snapshot: StateSnapshot,
        values: Mapping[str, Any],
        planned: Mapping[str, Operation],
    ) -> Operation:
        address = declaration.address
        handler = self.provider.handler_for(declaration.type)
        prior = snapshot.get(address)

        def lookup(reference: Reference) -> Any:
            if reference.is_variable:
                return walk_path(values[reference.target], reference, address)
            return walk_path(self._resolve_attribute(reference, planned, address), reference, address)

        after = interpolate(declaration.attributes, lookup)

        op = Operation(
            action=Action.CREATE,
            address=address,
            resource_type=declaration.type,
            level=level,
            declaration=declaration,
            prior=prior,
            after=after,
            dependencies=dependencies,
        )

        if prior is None:
            op.changed = sorted(after)
            return op

        op.before = dict(prior.inputs)
        op.changed = diff_attributes(prior.inputs, after)
        if not op.changed:
            op.action = Action.NOOP
            return op

        op.forces_replacement = [key for key in op.changed if key in handler.force_new]
        if op.forces_replacement:
            if declaration.lifecycle.prevent_destroy:
                raise PreventDestroyError(address, "replaced")
            op.action = Action.REPLACE
        else:
            op.action = Action.UPDATE
        return op

    def _resolve_attribute(
        self,
        reference: Reference,
        planned: Mapping[str, Operation],
        source: str,
    ) -> Any:
        target = planned[reference.target]
        handler: ResourceHandler = self.provider.handler_for(target.resource_type)
        attribute = reference.attribute
        text = "${" + reference.text + "}"

        if attribute != "id" and attribute in target.after:
            return target.after[attribute]

        if target.action in (Action.CREATE, Action.REPLACE):
            if attribute == "id" or attribute in handler.computed:
                return UNKNOWN
            raise UnresolvedReferenceError(text, source, f"{target.address} has no attribute '{attribute}'")

        if target.prior is not None and target.prior.has_attribute(attribute):
            return target.prior.attribute(attribute)
        if attribute in handler.computed:
            return UNKNOWN
        raise UnresolvedReferenceError(text, source, f"{target.address} has no attribute '{attribute}'")
