"""Evaluate document outputs against a materialized snapshot."""

from typing import Any, Mapping

from sitestack.core.exceptions import UnresolvedReferenceError
from sitestack.engine.expressions import Reference, interpolate, walk_path
from sitestack.models.schemas import Document, OutputState, StateSnapshot


def evaluate_outputs(
    document: Document,
    snapshot: StateSnapshot,
    variables: Mapping[str, Any],
) -> dict[str, OutputState]:
    """
    Evaluate every output declaration.

    Raises:
        UnresolvedReferenceError: If an output names a resource or attribute
            absent from the snapshot.
    """
    results: dict[str, OutputState] = {}
    for name, declaration in document.outputs.items():
        source = f"output.{name}"

        def lookup(reference: Reference) -> Any:
            if reference.is_variable:
                if reference.target not in variables:
                    raise UnresolvedReferenceError("${" + reference.text + "}", source, "variable not declared")
                return walk_path(variables[reference.target], reference, source)
            resource = snapshot.get(reference.target)
            if resource is None:
                raise UnresolvedReferenceError("${" + reference.text + "}", source)
            if not resource.has_attribute(reference.attribute):
                raise UnresolvedReferenceError(
                    "${" + reference.text + "}",
                    source,
                    f"{reference.target} has no attribute '{reference.attribute}'",
                )
            return walk_path(resource.attribute(reference.attribute), reference, source)

        results[name] = OutputState(
            value=interpolate(declaration.value, lookup),
            sensitive=declaration.sensitive,
        )
    return results
