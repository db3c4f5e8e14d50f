"""Reference parsing and string interpolation.

Attribute values may embed references:

    ${var.site_name}                      variable
    ${s3_bucket.site}                     resource id
    ${s3_bucket.site.arn}                 resource attribute
    ${cloudfront_distribution.cdn.origin.domain_name}   nested path

A string that is exactly one reference evaluates to the referenced value
with its native type. References embedded in longer strings are rendered
to text. ``$${`` escapes a literal ``${``.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from sitestack.core.exceptions import DocumentError, UnresolvedReferenceError

REFERENCE_PATTERN = re.compile(r"(\$?)\$\{([^}]*)\}")
WHOLE_REFERENCE_PATTERN = re.compile(r"^\$\{([^}]*)\}$")

VARIABLE_PREFIX = "var"


class Unknown:
    """Placeholder for a value only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (Unknown, ())


UNKNOWN = Unknown()


@dataclass(frozen=True)
class Reference:
    """A parsed ``${...}`` expression."""

    text: str
    target: str
    attribute: str = ""
    path: tuple[str, ...] = ()
    is_variable: bool = False

    @classmethod
    def parse(cls, expression: str) -> "Reference":
        parts = [part.strip() for part in expression.split(".")]
        if not expression.strip() or any(not part for part in parts):
            raise DocumentError(f"Malformed reference: ${{{expression}}}")

        if parts[0] == VARIABLE_PREFIX:
            if len(parts) < 2:
                raise DocumentError(f"Malformed variable reference: ${{{expression}}}")
            return cls(
                text=expression,
                target=parts[1],
                path=tuple(parts[2:]),
                is_variable=True,
            )

        if len(parts) < 2:
            raise DocumentError(
                f"Malformed reference: ${{{expression}}} (expected type.name[.attribute])"
            )
        return cls(
            text=expression,
            target=f"{parts[0]}.{parts[1]}",
            attribute=parts[2] if len(parts) > 2 else "id",
            path=tuple(parts[3:]),
        )


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference found in a (possibly nested) value."""
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            if match.group(1):
                continue
            yield Reference.parse(match.group(2))
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(item) for item in value)
    return False


def walk_path(value: Any, reference: Reference, source: str | None = None) -> Any:
    """Descend into dicts and lists along ``reference.path``."""
    for step in reference.path:
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, dict) and step in value:
            value = value[step]
        elif isinstance(value, list) and step.isdigit() and int(step) < len(value):
            value = value[int(step)]
        else:
            raise UnresolvedReferenceError(
                "${" + reference.text + "}", source, f"no element '{step}'"
            )
    return value


def render(value: Any) -> str:
    """Render a resolved value for embedding in a string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if value is None:
        return ""
    return str(value)


def interpolate(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every reference in ``value`` using ``lookup``."""
    if isinstance(value, dict):
        return {key: interpolate(item, lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate(item, lookup) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = WHOLE_REFERENCE_PATTERN.match(value)
    if whole and not value.startswith("$${"):
        return lookup(Reference.parse(whole.group(1)))

    unknown = False

    def substitute(match: re.Match) -> str:
        nonlocal unknown
        if match.group(1):
            return "${" + match.group(2) + "}"
        resolved = lookup(Reference.parse(match.group(2)))
        if contains_unknown(resolved):
            unknown = True
            return ""
        return render(resolved)

    result = REFERENCE_PATTERN.sub(substitute, value)
    return UNKNOWN if unknown else result
