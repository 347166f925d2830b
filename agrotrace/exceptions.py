"""AgroTrace Exception Hierarchy.

Exceptions raised by the certification core, each carrying a stable error
code and a context dictionary so callers (and the transport layer sitting
in front of this package) can render actionable feedback.

Exception Hierarchy:
    AgroTraceException (base)
    ├── ValidationError
    │   └── InvalidStageOrderError
    ├── StateConflictError
    │   ├── InvalidStatusTransitionError
    │   ├── InvalidCertificateTransitionError
    │   └── ConcurrentModificationError
    ├── PermissionDeniedError
    ├── EligibilityError
    ├── QuotaExceededError
    ├── ExternalServiceError
    │   └── AnchorRejectedError
    └── NotFoundError

Propagation policy:
- Validation and eligibility errors are caller-correctable and are raised
  with full detail.
- External-service failures during certificate approval are converted by
  the issuer into a persisted BLOCKCHAIN_FAILED state.
- Quota errors abort a satellite analysis without persisting anything.

Example:
    >>> from agrotrace.exceptions import InvalidStageOrderError
    >>> raise InvalidStageOrderError(
    ...     message="Expected HARVEST, got PACKING",
    ...     context={"expected": "HARVEST", "requested": "PACKING"},
    ... )

Author: AgroTrace Platform Team
Date: October 2026
Status: Production Ready
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ==============================================================================
# Base Exception
# ==============================================================================

class AgroTraceException(Exception):
    """Base exception for all AgroTrace errors.

    Attributes:
        message: Human-readable error message
        error_code: Stable error identifier (e.g., "INVALID_ORDER")
        context: Dictionary with error-specific details
        timestamp: When the error occurred (UTC)
    """

    ERROR_PREFIX = "AT"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the exception with rich context.

        Args:
            message: Human-readable error message
            error_code: Error identifier (auto-generated if not provided)
            context: Dictionary with error-specific details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self._generate_error_code()
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def _generate_error_code(self) -> str:
        """Generate an error code from the exception class name.

        Returns:
            Error code like "AT_STATE_CONFLICT_ERROR"
        """
        class_name = self.__class__.__name__
        error_type = re.sub(r'(?<!^)(?=[A-Z])', '_', class_name).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary with all error details
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        """Convert exception to JSON string."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}')"
        )


# ==============================================================================
# Validation
# ==============================================================================

class ValidationError(AgroTraceException):
    """Malformed or out-of-range input.

    Example:
        >>> raise ValidationError(
        ...     message="Rejection reason too short",
        ...     invalid_fields={"reason": "must be at least 10 characters"},
        ... )
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        invalid_fields: Optional[Dict[str, str]] = None,
    ):
        """Initialize validation error.

        Args:
            message: Error message
            error_code: Optional explicit error code
            context: Error context
            invalid_fields: Dictionary of field_name -> reason
        """
        if invalid_fields:
            context = context or {}
            context["invalid_fields"] = invalid_fields
        super().__init__(message, error_code=error_code, context=context)


class InvalidStageOrderError(ValidationError):
    """A stage was requested out of the fixed custody order."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code="INVALID_ORDER", context=context)


# ==============================================================================
# State conflicts
# ==============================================================================

class StateConflictError(AgroTraceException):
    """The requested change conflicts with the current entity state."""


class InvalidStatusTransitionError(StateConflictError):
    """A verification stage status transition is not allowed.

    Example:
        >>> raise InvalidStatusTransitionError(
        ...     message="APPROVED -> PENDING not allowed",
        ...     context={"from_status": "APPROVED", "to_status": "PENDING"},
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message, error_code="INVALID_STATUS_TRANSITION", context=context,
        )


class InvalidCertificateTransitionError(StateConflictError):
    """A certificate lifecycle transition is not allowed."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            error_code="INVALID_CERTIFICATE_TRANSITION",
            context=context,
        )


class ConcurrentModificationError(StateConflictError):
    """An optimistic version check failed because another writer won."""

    def __init__(
        self,
        message: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        super().__init__(
            message,
            error_code="CONCURRENT_MODIFICATION",
            context={
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


# ==============================================================================
# Authorization
# ==============================================================================

class PermissionDeniedError(AgroTraceException):
    """The acting role may not perform the requested stage operation."""

    def __init__(
        self,
        message: str,
        role: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(
            message,
            error_code="PERMISSION_DENIED",
            context={"role": role, "operation": operation},
        )


# ==============================================================================
# Eligibility
# ==============================================================================

class EligibilityError(AgroTraceException):
    """A requested certificate grade is not (yet) achievable.

    Carries the full evaluation result so the caller can show every unmet
    requirement together with its required and actual values.

    Example:
        >>> raise EligibilityError(
        ...     message="Batch not eligible for EXPORT",
        ...     errors=[{"code": "INSUFFICIENT_INSPECTIONS",
        ...              "field": "inspections", "required": 4, "actual": 2}],
        ... )
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        result: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize eligibility error.

        Args:
            message: Error message
            errors: Serialized validation issues
            result: The ValidationResult that failed
            context: Additional context
        """
        context = context or {}
        context["errors"] = errors or []
        super().__init__(message, error_code="NOT_ELIGIBLE", context=context)
        self.errors = errors or []
        self.result = result

    @property
    def error_codes(self) -> List[str]:
        """Return the codes of all unmet requirements."""
        return [e.get("code", "") for e in self.errors]


# ==============================================================================
# Quota
# ==============================================================================

class QuotaExceededError(AgroTraceException):
    """The monthly satellite processing-unit budget would be exceeded."""

    def __init__(
        self,
        message: str,
        used: float = 0.0,
        limit: float = 0.0,
        requested: float = 0.0,
    ):
        super().__init__(
            message,
            error_code="QUOTA_EXCEEDED",
            context={"used": used, "limit": limit, "requested": requested},
        )
        self.used = used
        self.limit = limit
        self.requested = requested


# ==============================================================================
# External services
# ==============================================================================

class ExternalServiceError(AgroTraceException):
    """An external collaborator (anchor, pin, imagery) failed.

    Attributes:
        service: Name of the failing collaborator
        retryable: Whether repeating the call may succeed
    """

    def __init__(
        self,
        message: str,
        service: str = "unknown",
        retryable: bool = True,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        context.update({"service": service, "retryable": retryable})
        super().__init__(
            message,
            error_code=error_code or "EXTERNAL_SERVICE_ERROR",
            context=context,
        )
        self.service = service
        self.retryable = retryable


class AnchorRejectedError(ExternalServiceError):
    """The anchoring service permanently rejected the submission."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            service="blockchain_anchor",
            retryable=False,
            error_code="ANCHOR_REJECTED",
            context=context,
        )


# ==============================================================================
# Lookup
# ==============================================================================

class NotFoundError(AgroTraceException):
    """A referenced entity does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            error_code="NOT_FOUND",
            context={"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


# ==============================================================================
# Exception Utilities
# ==============================================================================

def format_exception_chain(exc: Exception) -> str:
    """Format exception chain for logging/display.

    Args:
        exc: Exception to format

    Returns:
        Formatted string with full exception chain
    """
    lines = []
    current = exc

    while current is not None:
        if isinstance(current, AgroTraceException):
            lines.append(str(current))
            lines.append(f"  Context: {current.context}")
        else:
            lines.append(f"{type(current).__name__}: {current}")

        current = getattr(current, "__cause__", None)

    return "\n".join(lines)


def is_retriable(exc: Exception) -> bool:
    """Check if an operation that raised ``exc`` should be retried.

    Args:
        exc: Exception to check

    Returns:
        True if operation should be retried
    """
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    # Quota resets monthly; retrying within the same call never helps.
    return False


__all__ = [
    "AgroTraceException",
    "ValidationError",
    "InvalidStageOrderError",
    "StateConflictError",
    "InvalidStatusTransitionError",
    "InvalidCertificateTransitionError",
    "ConcurrentModificationError",
    "PermissionDeniedError",
    "EligibilityError",
    "QuotaExceededError",
    "ExternalServiceError",
    "AnchorRejectedError",
    "NotFoundError",
    "format_exception_chain",
    "is_retriable",
]
