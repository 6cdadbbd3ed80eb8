"""
CTF Range Orchestrator - Error Taxonomy

User-facing errors (validation, capacity, conflicts) are terminal for the
request that raised them. Runtime errors carry enough context for the caller
to retry the specific container operation.
"""

from typing import Any, Dict, Optional


class RangeError(Exception):
    """Base class for all orchestrator errors."""

    error_code = "RANGE_ERROR"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "detail": self.message,
            **({"context": self.context} if self.context else {}),
        }


class ValidationError(RangeError):
    """Bad input: missing fields, out-of-range values, unknown level keys."""
    error_code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStatusTransition(ValidationError):
    """Requested session status change is not allowed."""
    error_code = "INVALID_STATUS_TRANSITION"


class SessionNotJoinable(ValidationError):
    """Session exists but is no longer pending or active."""
    error_code = "SESSION_NOT_JOINABLE"


class CapacityError(ValidationError):
    """Session or team is full."""
    error_code = "CAPACITY_ERROR"
    status_code = 409


class SessionFullError(CapacityError):
    """No container can take another player."""
    error_code = "SESSION_FULL"


class ConflictError(ValidationError):
    """Uniqueness conflict."""
    error_code = "CONFLICT"
    status_code = 409


class DuplicateNameError(ConflictError):
    """Display name already taken in the session (case-insensitive)."""
    error_code = "DUPLICATE_NAME"


class NotFoundError(RangeError):
    """Requested session, container or player does not exist."""
    error_code = "NOT_FOUND"
    status_code = 404


class CodeGenerationExhausted(RangeError):
    """Join-code sampling kept colliding; the code space is exhausted."""
    error_code = "CODE_SPACE_EXHAUSTED"
    status_code = 500


class ContainerRuntimeError(RangeError):
    """
    Container engine call failed.

    Raised by the runtime adapter, never retried by it. ``retryable`` hints
    whether repeating the same operation may succeed.
    """
    error_code = "CONTAINER_RUNTIME_ERROR"
    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        container: Optional[str] = None,
        retryable: bool = False,
        **context: Any,
    ):
        super().__init__(
            message,
            operation=operation,
            container=container,
            retryable=retryable,
            **context,
        )
        self.operation = operation
        self.container = container
        self.retryable = retryable
