"""Data models for desired-state documents, state snapshots and plans."""

from sitestack.models.schemas import (
    Document,
    Lifecycle,
    OutputDeclaration,
    OutputState,
    ProviderConfig,
    ResourceDeclaration,
    ResourceState,
    StateSnapshot,
    VariableDeclaration,
    VariableType,
    make_address,
)
from sitestack.models.plan import Action, ApplyResult, Operation, Plan

__all__ = [
    "Document",
    "Lifecycle",
    "OutputDeclaration",
    "OutputState",
    "ProviderConfig",
    "ResourceDeclaration",
    "ResourceState",
    "StateSnapshot",
    "VariableDeclaration",
    "VariableType",
    "make_address",
    "Action",
    "ApplyResult",
    "Operation",
    "Plan",
]
