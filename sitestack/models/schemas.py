"""Pydantic models for desired-state documents and state snapshots."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sitestack.core.exceptions import DuplicateDeclarationError

IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"

STATE_FORMAT_VERSION = 1


def make_address(resource_type: str, name: str) -> str:
    """Build the ``type.name`` address that identifies a resource."""
    return f"{resource_type}.{name}"


class VariableType(str, Enum):
    """Types a variable may declare."""
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    ANY = "any"


# =============================================================================
# Desired-State Document
# =============================================================================


class Lifecycle(BaseModel):
    """Per-resource lifecycle flags."""

    model_config = ConfigDict(extra="forbid")

    prevent_destroy: bool = False


class ResourceDeclaration(BaseModel):
    """A named configuration block for one managed resource."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(..., pattern=IDENTIFIER_PATTERN)
    name: str = Field(..., pattern=IDENTIFIER_PATTERN)
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @property
    def address(self) -> str:
        return make_address(self.type, self.name)


class VariableDeclaration(BaseModel):
    """A named input substituted into declarations at evaluation time."""

    model_config = ConfigDict(extra="forbid")

    type: VariableType = VariableType.ANY
    default: Any = None
    description: str = ""
    sensitive: bool = False

    @property
    def required(self) -> bool:
        return "default" not in self.model_fields_set


class OutputDeclaration(BaseModel):
    """An expression evaluated after resources are materialized."""

    model_config = ConfigDict(extra="forbid")

    value: Any
    description: str = ""
    sensitive: bool = False


class ProviderConfig(BaseModel):
    """Control plane selection plus provider-specific options."""

    model_config = ConfigDict(extra="allow")

    name: str = "aws"

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class Document(BaseModel):
    """A complete desired-state document."""

    model_config = ConfigDict(extra="forbid")

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    variables: dict[str, VariableDeclaration] = Field(default_factory=dict)
    resources: list[ResourceDeclaration] = Field(default_factory=list)
    outputs: dict[str, OutputDeclaration] = Field(default_factory=dict)

    @field_validator("variables", "outputs")
    @classmethod
    def validate_keys(cls, value: dict[str, Any]) -> dict[str, Any]:
        for key in value:
            if not re.fullmatch(IDENTIFIER_PATTERN, key):
                raise ValueError(f"Invalid name: {key!r}")
        return value

    @model_validator(mode="after")
    def validate_unique_addresses(self) -> "Document":
        seen: set[str] = set()
        for resource in self.resources:
            if resource.address in seen:
                raise DuplicateDeclarationError(resource.address)
            seen.add(resource.address)
        return self

    @property
    def by_address(self) -> dict[str, ResourceDeclaration]:
        return {resource.address: resource for resource in self.resources}


# =============================================================================
# State Snapshot
# =============================================================================


class ResourceState(BaseModel):
    """Last-known remote view of one managed resource."""

    type: str
    name: str
    id: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    prevent_destroy: bool = False
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def address(self) -> str:
        return make_address(self.type, self.name)

    def attribute(self, key: str) -> Any:
        """Look up an attribute, computed values first, then inputs."""
        if key == "id":
            return self.id
        if key in self.outputs:
            return self.outputs[key]
        return self.inputs[key]

    def has_attribute(self, key: str) -> bool:
        return key == "id" or key in self.outputs or key in self.inputs


class OutputState(BaseModel):
    """An evaluated output value."""

    value: Any
    sensitive: bool = False


class StateSnapshot(BaseModel):
    """Persisted mapping of resource identity to last-known attributes."""

    version: int = STATE_FORMAT_VERSION
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid4()))
    resources: dict[str, ResourceState] = Field(default_factory=dict)
    outputs: dict[str, OutputState] = Field(default_factory=dict)

    def get(self, address: str) -> Optional[ResourceState]:
        return self.resources.get(address)
