"""
Custom exception classes for the listing post scheduler.

This module defines all exception classes used throughout the codebase.
Exceptions follow the fail-fast philosophy: configuration problems and
infrastructure failures surface immediately; per-item publishing problems
are captured on the item and the enclosing run keeps going.

Hierarchy:
    Exception
    +-- SchedulerBaseError (base for all scheduler-specific errors)
    |   +-- LockHeldError
    |   +-- InvalidTransitionError
    |   +-- VerificationError
    |   +-- PublishError
    |       +-- TransientPublishError
    |       +-- PermanentPublishError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- ConfigurationError
    |   +-- TemplateConfigurationError
    +-- RetryExhaustedError
"""

from datetime import datetime
from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class SchedulerBaseError(Exception):
    """Base exception for all scheduler-related errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# SCHEDULING EXCEPTIONS
# =============================================================================


class TemplateConfigurationError(ConfigurationError):
    """Raised when a schedule template cannot produce slots.

    Attributes:
        template_id: ID of the offending template.
        reason: What is wrong with it.
    """

    def __init__(self, template_id: str, reason: str):
        self.template_id = template_id
        self.reason = reason
        super().__init__(f"Template {template_id} is misconfigured: {reason}")


class LockHeldError(SchedulerBaseError):
    """Raised when an advisory lock is already held by another run.

    Expected under overlapping invocations. Callers skip the cycle rather
    than retrying immediately.

    Attributes:
        resource_id: The locked resource (listing ID, vision session ID).
        holder: Execution ID of the current holder, when known.
        locked_at: When the current holder acquired the lock, when known.
    """

    def __init__(
        self,
        resource_id: str,
        holder: Optional[str] = None,
        locked_at: Optional[datetime] = None,
    ):
        self.resource_id = resource_id
        self.holder = holder
        self.locked_at = locked_at
        detail = f" by {holder}" if holder else ""
        super().__init__(f"Lock on {resource_id} is held{detail}")


class InvalidTransitionError(SchedulerBaseError):
    """Raised when a status or phase transition is not allowed.

    Attributes:
        current: The current state value.
        target: The requested state value.
    """

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from '{current}' to '{target}'")


class VerificationError(SchedulerBaseError):
    """Raised when a verification row cannot be processed as requested."""

    pass


# =============================================================================
# PUBLISHING EXCEPTIONS
# =============================================================================


class PublishError(SchedulerBaseError):
    """Base class for upload-post publishing failures.

    Attributes:
        platform: Platform the publish call targeted.
        status_code: HTTP status code returned, if any.
        request_id: Upload-post request ID, if the service assigned one.
    """

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        self.platform = platform
        self.status_code = status_code
        self.request_id = request_id
        super().__init__(message)


class TransientPublishError(PublishError):
    """Timeouts, 5xx and rate limiting. Retried with bounded attempts."""

    pass


class PermanentPublishError(PublishError):
    """Invalid media, revoked platform auth, rejected content. Never retried."""

    pass


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "SchedulerBaseError",
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
    # Scheduling
    "TemplateConfigurationError",
    "LockHeldError",
    "InvalidTransitionError",
    "VerificationError",
    # Publishing
    "PublishError",
    "TransientPublishError",
    "PermanentPublishError",
]
