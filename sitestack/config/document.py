"""
Document Loader.

Loads desired-state documents and variable files from YAML (JSON is
accepted too, being a subset of YAML) and parses ``--var`` arguments.
"""

from pathlib import Path
from typing import Any, Iterable

import structlog
import yaml
from pydantic import ValidationError

from sitestack.core.exceptions import ConfigurationError, DocumentError
from sitestack.models.schemas import Document

logger = structlog.get_logger(__name__)


def _read_yaml(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as file:
            return yaml.safe_load(file)
    except FileNotFoundError:
        raise ConfigurationError(f"File not found: {path}", str(path))
    except yaml.YAMLError as e:
        raise DocumentError(f"Invalid YAML in {path}: {e}", {"path": str(path)}) from e


def parse_document(data: Any, source: str = "<document>") -> Document:
    """Validate raw document data.

    Raises:
        DocumentError: If the structure is invalid.
        DuplicateDeclarationError: If two resources share an identity.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise DocumentError(f"{source} must contain a mapping at the top level")
    try:
        return Document.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise DocumentError(f"Invalid document {source}", {"errors": errors}) from e


def load_document(path: Path | str) -> Document:
    """Load and validate a desired-state document from a file."""
    path = Path(path)
    document = parse_document(_read_yaml(path), str(path))
    logger.debug(
        "document_loaded",
        path=str(path),
        resources=len(document.resources),
        variables=len(document.variables),
        outputs=len(document.outputs),
    )
    return document


def load_variable_file(path: Path | str) -> dict[str, Any]:
    """Load a mapping of variable values from a YAML file."""
    data = _read_yaml(Path(path))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Variable file {path} must contain a mapping", str(path))
    return data


def parse_var_arguments(arguments: Iterable[str]) -> dict[str, str]:
    """Parse ``name=value`` pairs from the command line."""
    values: dict[str, str] = {}
    for argument in arguments:
        name, separator, value = argument.partition("=")
        if not separator or not name.strip():
            raise ConfigurationError(f"Expected NAME=VALUE, got {argument!r}", "var")
        values[name.strip()] = value
    return values


def collect_variables(
    var_files: Iterable[Path | str] = (),
    var_arguments: Iterable[str] = (),
) -> dict[str, Any]:
    """Merge variable files in order, then command line values on top."""
    values: dict[str, Any] = {}
    for path in var_files:
        values.update(load_variable_file(path))
    values.update(parse_var_arguments(var_arguments))
    return values
