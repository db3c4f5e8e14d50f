"""
Core modules for sitestack.

Provides common utilities used across the application:
- exceptions: Standardized exception hierarchy
"""

from sitestack.core.exceptions import (
    SitestackError,
    RetryableError,
    PermanentError,
    DocumentError,
    DuplicateDeclarationError,
    UnresolvedReferenceError,
    CycleDetectedError,
    VariableError,
    UnknownResourceTypeError,
    PreventDestroyError,
    StateError,
    StateLockedError,
    StateCorruptedError,
    ControlPlaneError,
    ControlPlaneThrottledError,
    ControlPlaneUnavailableError,
    ControlPlaneNotFoundError,
    ControlPlaneRejectedError,
    RemoteConflictError,
    StalePlanError,
    ApplyError,
    ConfigurationError,
)

__all__ = [
    "SitestackError",
    "RetryableError",
    "PermanentError",
    # Document
    "DocumentError",
    "DuplicateDeclarationError",
    "UnresolvedReferenceError",
    "CycleDetectedError",
    "VariableError",
    "UnknownResourceTypeError",
    "PreventDestroyError",
    # State
    "StateError",
    "StateLockedError",
    "StateCorruptedError",
    # Control plane
    "ControlPlaneError",
    "ControlPlaneThrottledError",
    "ControlPlaneUnavailableError",
    "ControlPlaneNotFoundError",
    "ControlPlaneRejectedError",
    "RemoteConflictError",
    "StalePlanError",
    # Apply
    "ApplyError",
    # Configuration
    "ConfigurationError",
]
