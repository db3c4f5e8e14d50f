"""Variable resolution and type coercion."""

import json
from typing import Any, Mapping

import structlog

from sitestack.core.exceptions import VariableError
from sitestack.models.schemas import VariableDeclaration, VariableType

logger = structlog.get_logger(__name__)

_TRUE = {"true", "yes", "1", "on"}
_FALSE = {"false", "no", "0", "off"}


def coerce(name: str, declaration: VariableDeclaration, value: Any) -> Any:
    """Convert ``value`` to the declared type, parsing strings from the CLI."""
    kind = declaration.type

    if kind is VariableType.ANY:
        return value

    if kind is VariableType.STRING:
        if isinstance(value, (dict, list)):
            raise VariableError(name, f"expected string, got {type(value).__name__}")
        return value if isinstance(value, str) else str(value)

    if kind is VariableType.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
        raise VariableError(name, f"expected bool, got {value!r}")

    if kind is VariableType.NUMBER:
        if isinstance(value, bool):
            raise VariableError(name, f"expected number, got {value!r}")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                try:
                    return float(value)
                except ValueError:
                    pass
        raise VariableError(name, f"expected number, got {value!r}")

    expected = list if kind is VariableType.LIST else dict
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            raise VariableError(name, f"expected {kind.value} as JSON, got {value!r}")
    if not isinstance(value, expected):
        raise VariableError(name, f"expected {kind.value}, got {type(value).__name__}")
    return value


def resolve_variables(
    declarations: Mapping[str, VariableDeclaration],
    provided: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Merge provided values over declared defaults.

    Args:
        declarations: Variable declarations from the document.
        provided: Values from --var / --var-file, highest precedence.

    Returns:
        Mapping of variable name to typed value.

    Raises:
        VariableError: If a value is undeclared, missing or of the wrong type.
    """
    provided = dict(provided or {})

    undeclared = sorted(set(provided) - set(declarations))
    if undeclared:
        raise VariableError(undeclared[0], "value provided for an undeclared variable")

    resolved: dict[str, Any] = {}
    for name, declaration in declarations.items():
        if name in provided:
            resolved[name] = coerce(name, declaration, provided[name])
        elif not declaration.required:
            # An explicit null default stays null whatever the type
            default = declaration.default
            resolved[name] = None if default is None else coerce(name, declaration, default)
        else:
            raise VariableError(name, "no value given and no default declared")

    logger.debug(
        "variables_resolved",
        variables={
            name: ("<sensitive>" if declarations[name].sensitive else value)
            for name, value in resolved.items()
        },
    )
    return resolved
