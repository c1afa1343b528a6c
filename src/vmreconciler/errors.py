"""Error taxonomy for reconciliation passes.

Every error raised by the engine derives from ReconcileError so callers can
catch the whole family. The subclasses tell the caller what to do next:

- AttributeValidationError: fix the configuration, never retried
- AlreadyExistsError: import the existing resource
- RemoteRejectionError: the remote API refused the call (terminal)
- OperationTimeoutError: outcome unknown, re-running the pass is safe
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for all reconciliation failures."""

    pass


class AttributeValidationError(ReconcileError):
    """Raised when desired attributes violate a constraint.

    Always raised before any remote call is issued.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        if len(self.violations) == 1:
            message = self.violations[0]
        else:
            message = "Configuration is invalid:\n  - " + "\n  - ".join(self.violations)
        super().__init__(message)


class AlreadyExistsError(ReconcileError):
    """Raised when a create precheck finds the resource already present."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(
            f"A resource with the ID {resource_id!r} already exists - "
            "it needs to be imported to be managed"
        )


class RemoteRejectionError(ReconcileError):
    """Raised when the remote API returns a terminal failure."""

    def __init__(
        self,
        operation: str,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        self.error_code = error_code
        detail = f"{operation} failed"
        if status_code is not None:
            detail += f" ({status_code})"
        super().__init__(f"{detail}: {message}")


class SubResourceRejectionError(RemoteRejectionError):
    """Raised when an operation against a sub-resource (the OS disk) fails."""

    pass


class OperationTimeoutError(ReconcileError, TimeoutError):
    """Raised when the local deadline expires while waiting on the remote API.

    The remote operation may still be running; it is not cancelled.
    """

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} did not complete within {timeout_seconds:.0f}s")
