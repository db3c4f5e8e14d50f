"""
Core exception hierarchy for sitestack.

Provides standardized exception types with categorization for retry logic.
All components should use these exceptions instead of generic Exception.
"""

from typing import Any, Optional


# =============================================================================
# Base Exceptions
# =============================================================================


class SitestackError(Exception):
    """Base exception for all sitestack errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RetryableError(SitestackError):
    """
    Transient errors that should be retried.

    Examples: API throttling, timeouts, 5xx responses from the control plane.
    """

    pass


class PermanentError(SitestackError):
    """
    Errors that won't be fixed by retrying.

    Examples: Invalid documents, missing variables, access denied.
    """

    pass


# =============================================================================
# Document Errors
# =============================================================================


class DocumentError(PermanentError):
    """Raised when a desired-state document is malformed."""

    pass


class DuplicateDeclarationError(DocumentError):
    """Raised when two resources share the same (type, name) identity."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Duplicate resource declaration: {address}", {"address": address})


class UnresolvedReferenceError(DocumentError):
    """Raised when a reference points at a missing declaration or attribute."""

    def __init__(self, reference: str, source: Optional[str] = None, reason: str = "not declared"):
        self.reference = reference
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(
            f"Unresolved reference '{reference}'{where}: {reason}",
            {"reference": reference, "source": source},
        )


class CycleDetectedError(DocumentError):
    """Raised when the reference graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}", {"cycle": cycle})


class VariableError(DocumentError):
    """Raised when a variable is missing, undeclared or of the wrong type."""

    def __init__(self, variable: str, message: str):
        self.variable = variable
        super().__init__(f"[var.{variable}] {message}", {"variable": variable})


class UnknownResourceTypeError(DocumentError):
    """Raised when no handler exists for a resource type."""

    def __init__(self, provider: str, resource_type: str):
        self.provider = provider
        self.resource_type = resource_type
        super().__init__(
            f"Provider '{provider}' does not support resource type '{resource_type}'",
            {"provider": provider, "resource_type": resource_type},
        )


class PreventDestroyError(PermanentError):
    """Raised when a plan would destroy a resource marked prevent_destroy."""

    def __init__(self, address: str, action: str):
        self.address = address
        super().__init__(
            f"{address} has lifecycle.prevent_destroy set and cannot be {action}",
            {"address": address, "action": action},
        )


# =============================================================================
# State Errors
# =============================================================================


class StateError(PermanentError):
    """Base exception for state snapshot errors."""

    pass


class StateLockedError(StateError):
    """Raised when another run holds the state lock."""

    def __init__(self, lock_path: str, holder: Optional[dict[str, Any]] = None):
        self.lock_path = lock_path
        self.holder = holder or {}
        super().__init__(f"State is locked: {lock_path}", {"holder": self.holder})


class StateCorruptedError(StateError):
    """Raised when the state file cannot be parsed."""

    pass


# =============================================================================
# Control Plane Errors
# =============================================================================


class ControlPlaneError(SitestackError):
    """Base exception for control plane call failures."""

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ):
        self.service = service
        super().__init__(f"[{service}] {message}", details)


class ControlPlaneThrottledError(ControlPlaneError, RetryableError):
    """Raised when the control plane throttles requests."""

    pass


class ControlPlaneUnavailableError(ControlPlaneError, RetryableError):
    """Raised when the control plane is temporarily unavailable."""

    pass


class ControlPlaneNotFoundError(ControlPlaneError, PermanentError):
    """Raised when a remote resource does not exist."""

    pass


class ControlPlaneRejectedError(ControlPlaneError, PermanentError):
    """Raised when the control plane rejects a request outright."""

    pass


class RemoteConflictError(PermanentError):
    """
    Raised when remote state drifted from the snapshot in a way that
    invalidates the plan. The plan must be recomputed.
    """

    def __init__(self, address: str, message: str, details: Optional[dict[str, Any]] = None):
        self.address = address
        super().__init__(f"[{address}] {message}", details)


class StalePlanError(RemoteConflictError):
    """Raised when the snapshot changed between plan and apply."""

    def __init__(self, expected_serial: int, actual_serial: int):
        self.expected_serial = expected_serial
        self.actual_serial = actual_serial
        super().__init__(
            "state",
            f"Plan was computed against serial {expected_serial}, state is at {actual_serial}",
            {"expected_serial": expected_serial, "actual_serial": actual_serial},
        )


# =============================================================================
# Apply Errors
# =============================================================================


class ApplyError(SitestackError):
    """Raised when one or more operations fail during apply."""

    def __init__(
        self,
        failures: dict[str, BaseException],
        completed: list[str],
        skipped: Optional[list[str]] = None,
    ):
        self.failures = failures
        self.completed = completed
        self.skipped = skipped or []
        failed = ", ".join(sorted(failures))
        super().__init__(
            f"Apply failed for {failed}",
            {
                "errors": {address: str(err) for address, err in failures.items()},
                "completed": completed,
                "skipped": self.skipped,
            },
        )


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        details = {"config_key": config_key} if config_key else None
        super().__init__(message, details)
