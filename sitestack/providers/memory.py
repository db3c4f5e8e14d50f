"""In-process control plane.

Used for dry runs of a document (``--provider memory``) and as the test
double for the engine. Accepts any resource type, honors idempotency
tokens, and can inject faults or simulate out-of-band drift.

Example:
    plane = MemoryControlPlane()
    provider = MemoryProvider({"control_plane": plane, "force_new": {"bucket": ["name"]}})
    plane.fail_next("create", "bucket", ControlPlaneThrottledError("memory", "slow down"))
"""

import asyncio
import copy
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from sitestack.core.exceptions import ControlPlaneNotFoundError
from sitestack.providers.aws import AWS_HANDLERS
from sitestack.providers.base import Provider, RemoteResource, ResourceHandler
from sitestack.providers.registry import register_provider

logger = structlog.get_logger(__name__)


@dataclass
class _Fault:
    error: BaseException
    after_commit: bool = False


@dataclass
class MemoryControlPlane:
    """Remote resources held in a dict, plus knobs for tests."""

    latency: float = 0.0
    resources: dict[str, dict[str, Any]] = field(default_factory=dict)
    types: dict[str, str] = field(default_factory=dict)
    calls: list[tuple[str, str, str]] = field(default_factory=list)
    max_in_flight: int = 0

    _tokens: dict[str, str] = field(default_factory=dict)
    _faults: dict[tuple[str, str], deque] = field(default_factory=lambda: defaultdict(deque))
    _counter: int = 0
    _in_flight: int = 0

    def fail_next(
        self,
        method: str,
        resource_type: str,
        error: BaseException,
        times: int = 1,
        after_commit: bool = False,
    ) -> None:
        """Queue ``error`` for the next ``times`` calls of ``method`` on a type.

        With ``after_commit`` the change is applied remotely before the
        error is raised, like a response lost on the way back.
        """
        for _ in range(times):
            self._faults[(method, resource_type)].append(_Fault(error, after_commit))

    def drift(self, resource_id: str, **attributes: Any) -> None:
        """Change a remote resource behind the engine's back."""
        self.resources[resource_id].update(attributes)

    def remove(self, resource_id: str) -> None:
        """Delete a remote resource behind the engine's back."""
        self.resources.pop(resource_id, None)
        self.types.pop(resource_id, None)

    def of_type(self, resource_type: str) -> dict[str, dict[str, Any]]:
        return {
            resource_id: attrs
            for resource_id, attrs in self.resources.items()
            if self.types.get(resource_id) == resource_type
        }

    def next_id(self, resource_type: str) -> str:
        self._counter += 1
        return f"{resource_type}-{self._counter:04d}"

    async def enter(self, method: str, resource_type: str, resource_id: str = "") -> Optional[_Fault]:
        self.calls.append((method, resource_type, resource_id))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
        finally:
            self._in_flight -= 1

        queue = self._faults.get((method, resource_type))
        if not queue:
            return None
        fault = queue.popleft()
        if not fault.after_commit:
            raise fault.error
        return fault


class MemoryHandler(ResourceHandler):
    """Generic handler that stores attributes verbatim."""

    service = "memory"

    def __init__(
        self,
        config: dict[str, Any],
        plane: MemoryControlPlane,
        resource_type: str,
        force_new: frozenset[str] = frozenset(),
        computed: frozenset[str] = frozenset(),
    ):
        super().__init__(config)
        self.plane = plane
        self.resource_type = resource_type
        self.force_new = force_new
        self.computed = computed

    def _computed_values(self, resource_id: str) -> dict[str, Any]:
        values = {}
        for name in self.computed:
            if name == "arn":
                values[name] = f"arn:memory:{self.resource_type}:::{resource_id}"
            else:
                values[name] = f"{name}.{resource_id}"
        return values

    def _remote(self, resource_id: str) -> RemoteResource:
        return RemoteResource(id=resource_id, attributes=copy.deepcopy(self.plane.resources[resource_id]))

    async def create(self, attributes: dict[str, Any], token: str) -> RemoteResource:
        existing = self.plane._tokens.get(token)
        if existing and existing in self.plane.resources:
            logger.debug("memory_create_replayed", resource_type=self.resource_type, id=existing)
            await self.plane.enter("create", self.resource_type, existing)
            return self._remote(existing)

        resource_id = self.plane.next_id(self.resource_type)
        fault = await self.plane.enter("create", self.resource_type, resource_id)
        self.plane.resources[resource_id] = {
            **copy.deepcopy(attributes),
            **self._computed_values(resource_id),
        }
        self.plane.types[resource_id] = self.resource_type
        self.plane._tokens[token] = resource_id
        if fault:
            raise fault.error
        return self._remote(resource_id)

    async def read(self, resource_id: str, attributes: dict[str, Any]) -> Optional[RemoteResource]:
        await self.plane.enter("read", self.resource_type, resource_id)
        if resource_id not in self.plane.resources:
            return None
        return self._remote(resource_id)

    async def update(
        self,
        resource_id: str,
        attributes: dict[str, Any],
        changed: list[str],
        token: str,
    ) -> RemoteResource:
        fault = await self.plane.enter("update", self.resource_type, resource_id)
        if resource_id not in self.plane.resources:
            raise ControlPlaneNotFoundError(
                self.service, f"{self.resource_type} {resource_id} does not exist"
            )
        current = self.plane.resources[resource_id]
        for key in list(current):
            if key not in attributes and key not in self.computed:
                del current[key]
        current.update(copy.deepcopy(attributes))
        if fault:
            raise fault.error
        return self._remote(resource_id)

    async def delete(self, resource_id: str, attributes: dict[str, Any], token: str) -> None:
        fault = await self.plane.enter("delete", self.resource_type, resource_id)
        self.plane.remove(resource_id)
        if fault:
            raise fault.error


@register_provider("memory")
class MemoryProvider(Provider):
    """
    Provider backed by a MemoryControlPlane.

    Config options:
        control_plane: Share a MemoryControlPlane between providers.
        types: Restrict accepted resource types (default: any).
        force_new: Mapping of type to attributes that force replacement.
        computed: Mapping of type to attributes known only after create.

    Types managed by the aws provider default to the same force_new and
    computed attributes, so documents written for AWS plan identically.
    """

    def __init__(self, config: Optional[dict[str, Any]] = None):
        super().__init__(config)
        self.plane: MemoryControlPlane = self.config.get("control_plane") or MemoryControlPlane()
        self._force_new = {k: frozenset(v) for k, v in self.config.get("force_new", {}).items()}
        self._computed = {k: frozenset(v) for k, v in self.config.get("computed", {}).items()}
        self._types = self.config.get("types")

    def resource_types(self) -> list[str]:
        if self._types is not None:
            return sorted(self._types)
        return sorted(set(AWS_HANDLERS) | set(self._force_new) | set(self._computed))

    def supports(self, resource_type: str) -> bool:
        if self._types is not None:
            return resource_type in self._types
        return True

    def _build_handler(self, resource_type: str) -> ResourceHandler:
        template = AWS_HANDLERS.get(resource_type)
        force_new = self._force_new.get(
            resource_type, template.force_new if template else frozenset()
        )
        computed = self._computed.get(
            resource_type, template.computed if template else frozenset()
        )
        return MemoryHandler(self.config, self.plane, resource_type, force_new, computed)
