"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class PolicyNotFoundError(DomainException):
    """
    No SLA policy is configured for a (request_type, priority) pair.

    Never replaced by a default: an unmatched critical request must surface
    as an error, not as a request that never breaches.
    """

    def __init__(
        self,
        request_type: str,
        priority: str,
        details: Optional[dict] = None
    ):
        self.request_type = request_type
        self.priority = priority
        super().__init__(
            f"No SLA policy configured for request_type='{request_type}' priority='{priority}'",
            details or {"request_type": request_type, "priority": priority}
        )


class InvalidPolicyError(ConfigurationException):
    """An SLA policy has non-positive allowances or an out-of-range threshold."""


class InvalidStatusTransitionError(DomainException):
    """A lifecycle change is not allowed from the request's current status."""

    def __init__(
        self,
        request_id: str,
        current_status: str,
        target_status: str,
        details: Optional[dict] = None
    ):
        self.request_id = request_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Request {request_id} cannot move from '{current_status}' to '{target_status}'",
            details or {
                "request_id": request_id,
                "current_status": current_status,
                "target_status": target_status
            }
        )


class ClockSkewWarning(UserWarning):
    """Evaluation time precedes the request's creation time."""
