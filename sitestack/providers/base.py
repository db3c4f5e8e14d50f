"""Base control plane interface for all providers.

A provider maps resource types to handlers. Handlers are the only code
that talks to the remote control plane; the engine treats them as opaque
create/read/update/delete calls.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from sitestack.core.exceptions import UnknownResourceTypeError


@dataclass
class RemoteResource:
    """What the control plane reports for one materialized resource."""

    id: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ResourceHandler(ABC):
    """Abstract base class for one resource type.

    Attributes:
        resource_type: Document type tag handled, e.g. ``s3_bucket``.
        service: Control plane service name used in logs and metrics.
        force_new: Attributes the control plane cannot change in place.
        computed: Attributes only known after the resource exists.
    """

    resource_type: ClassVar[str] = ""
    service: ClassVar[str] = "generic"
    force_new: frozenset[str] = frozenset()
    computed: frozenset[str] = frozenset()

    def __init__(self, config: dict[str, Any]):
        """Initialize handler with provider configuration.

        Args:
            config: Provider options from the document merged with settings.
        """
        self.config = config

    def differs(self, key: str, expected: Any, actual: Any) -> bool:
        """Whether a remote value counts as drift from the recorded one."""
        return expected != actual

    @abstractmethod
    async def create(self, attributes: dict[str, Any], token: str) -> RemoteResource:
        """Create the resource. ``token`` is stable across retries."""
        ...

    @abstractmethod
    async def read(
        self, resource_id: str, attributes: dict[str, Any]
    ) -> Optional[RemoteResource]:
        """Return the current remote view, or None if the resource is gone."""
        ...

    @abstractmethod
    async def update(
        self,
        resource_id: str,
        attributes: dict[str, Any],
        changed: list[str],
        token: str,
    ) -> RemoteResource:
        """Apply changed attributes in place."""
        ...

    @abstractmethod
    async def delete(self, resource_id: str, attributes: dict[str, Any], token: str) -> None:
        """Delete the resource. Deleting a missing resource must not fail."""
        ...


class Provider(ABC):
    """Abstract base class for control plane providers."""

    name: ClassVar[str] = ""

    def __init__(self, config: Optional[dict[str, Any]] = None):
        self.config = dict(config or {})
        self._handlers: dict[str, ResourceHandler] = {}

    @abstractmethod
    def resource_types(self) -> list[str]:
        """List supported resource types."""
        ...

    @abstractmethod
    def _build_handler(self, resource_type: str) -> ResourceHandler:
        ...

    def supports(self, resource_type: str) -> bool:
        return resource_type in self.resource_types()

    def handler_for(self, resource_type: str) -> ResourceHandler:
        """Get the (cached) handler for a type.

        Raises:
            UnknownResourceTypeError: If the provider does not manage this type.
        """
        if not self.supports(resource_type):
            raise UnknownResourceTypeError(self.name, resource_type)
        if resource_type not in self._handlers:
            self._handlers[resource_type] = self._build_handler(resource_type)
        return self._handlers[resource_type]
