"""
Custom Exceptions for the Billing Reconciler

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class BillingError(Exception):
    """Base exception for all billing reconciler errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class AuthenticationError(BillingError):
    """Raised when a shared secret or provider signature is missing or invalid."""
    pass


class ValidationError(BillingError):
    """Raised when input validation fails."""
    pass


class DatabaseError(BillingError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class PaymentGatewayError(BillingError):
    """Raised when a payment provider call fails."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if provider:
            details["provider"] = provider
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class InvalidTransitionError(BillingError):
    """Raised when a subscription cannot move along the requested edge."""

    def __init__(
        self,
        message: str,
        status: Optional[str] = None,
        event: Optional[str] = None,
    ):
        details = {}
        if status:
            details["status"] = status
        if event:
            details["event"] = event
        super().__init__(message, details)


class RateLimitError(BillingError):
    """Raised when a caller exceeds its request window."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(message, details=details, original_error=original_error)
        self.retry_after = retry_after
        self.headers = headers or {}


class ConfigurationError(BillingError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
