"""
Shared error handling for the Access Policy Decision Point.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for policy service errors."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthorizationError(AccessLayerException):
    """Raised when a policy decision denies the requested action."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(AccessLayerException):
    """Malformed policy, predicate or request data."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InvalidContextError(AccessLayerException):
    """Evaluation context is missing one of its four attribute groups."""

    def __init__(self, message: str = "Invalid evaluation context", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CONTEXT", message, details)


class DuplicateKeyError(AccessLayerException):
    """A policy with the same policy_id already exists."""

    status_code = 409

    def __init__(self, policy_id: str):
        super().__init__(
            "DUPLICATE_KEY",
            f"Policy '{policy_id}' already exists",
            {"policy_id": policy_id}
        )


class NotFoundError(AccessLayerException):
    """The requested policy does not exist."""

    status_code = 404

    def __init__(self, policy_id: str, message: Optional[str] = None):
        super().__init__(
            "NOT_FOUND",
            message or f"Policy '{policy_id}' not found",
            {"policy_id": policy_id}
        )


class ProtectedPolicyError(AccessLayerException):
    """Core policies can be deactivated but never deleted."""

    status_code = 403

    def __init__(self, policy_id: str):
        super().__init__(
            "PROTECTED_POLICY",
            f"Policy '{policy_id}' is a core policy and cannot be deleted; deactivate it instead",
            {"policy_id": policy_id}
        )


class ConflictError(AccessLayerException):
    """Optimistic concurrency failure: the stored version moved on."""

    status_code = 409

    def __init__(self, policy_id: str, expected_version: int, actual_version: Optional[int] = None):
        details: Dict[str, Any] = {"policy_id": policy_id, "expected_version": expected_version}
        if actual_version is not None:
            details["actual_version"] = actual_version
        super().__init__(
            "CONFLICT",
            f"Policy '{policy_id}' was modified concurrently (expected version {expected_version})",
            details
        )


class StoreUnavailableError(AccessLayerException):
    """Backing store unreachable or too slow."""

    status_code = 503

    def __init__(self, store: str, message: str = "Backing store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", f"{store}: {message}", details)
