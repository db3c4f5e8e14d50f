"""Plan and apply result containers.

These are in-memory only. A plan is bound to the state serial it was
computed against and is rejected by apply if the snapshot has moved on.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from sitestack.models.schemas import Document, ResourceDeclaration, ResourceState


class Action(str, Enum):
    """What apply will do to one resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.NOOP: " ",
}


@dataclass
class Operation:
    """One planned change against the control plane."""

    action: Action
    address: str
    resource_type: str
    level: int
    declaration: Optional[ResourceDeclaration] = None
    prior: Optional[ResourceState] = None
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)
    changed: list[str] = field(default_factory=list)
    forces_replacement: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    # Position among teardowns (deletes and the delete half of replacements)
    teardown_level: int = 0
    # Delete waits until survivors that pointed at it have been updated
    deferred: bool = False

    @property
    def symbol(self) -> str:
        return ACTION_SYMBOLS[self.action]


@dataclass
class Plan:
    """Ordered operations plus the snapshot identity they were diffed against."""

    operations: list[Operation]
    serial: int
    lineage: str
    variables: dict[str, Any] = field(default_factory=dict)
    destroy: bool = False
    document: Optional[Document] = None

    @property
    def changes(self) -> list[Operation]:
        return [op for op in self.operations if op.action is not Action.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def by_action(self, action: Action) -> list[Operation]:
        return [op for op in self.operations if op.action is action]

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    def delete_levels(self) -> list[list[Operation]]:
        """Deletes and the delete half of replacements, dependents first.

        Deferred deletes are excluded; see ``cleanup_levels``.
        """
        ops = [
            op
            for op in self.operations
            if op.action is Action.REPLACE or (op.action is Action.DELETE and not op.deferred)
        ]
        return _group(ops, teardown=True)

    def apply_levels(self) -> list[list[Operation]]:
        """Creates, updates and the create half of replacements, in topological order."""
        ops = [
            op
            for op in self.operations
            if op.action in (Action.CREATE, Action.UPDATE, Action.REPLACE)
        ]
        return _group(ops)

    def cleanup_levels(self) -> list[list[Operation]]:
        """Deletes that run after the apply levels, dependents first."""
        return _group([op for op in self.by_action(Action.DELETE) if op.deferred], teardown=True)


def _group(operations: list[Operation], teardown: bool = False) -> list[list[Operation]]:
    levels: dict[int, list[Operation]] = {}
    for op in operations:
        levels.setdefault(op.teardown_level if teardown else op.level, []).append(op)
    return [levels[level] for level in sorted(levels)]


@dataclass
class ApplyResult:
    """Outcome of a successful apply."""

    completed: list[str]
    skipped: list[str]
    outputs: dict[str, Any]
    serial: int

    @property
    def changed_count(self) -> int:
        return len(self.completed)
