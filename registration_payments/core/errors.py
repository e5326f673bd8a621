"""Domain exceptions shared by the order and payment services."""
from enum import Enum
from typing import Any, Dict, Optional


class RegistrationError(Exception):
    """Base exception for order lifecycle errors."""

    status_code = 500


class ValidationError(RegistrationError):
    """Raised when input is invalid or the registration window is closed."""

    status_code = 400


class NotFoundError(RegistrationError):
    """Raised when an event, modality or order does not exist."""

    status_code = 404


class AccessDeniedError(RegistrationError):
    """Raised when the principal may not act on the requested orders."""

    status_code = 403


class ConflictError(RegistrationError):
    """Raised on duplicate active orders or exhausted inventory."""

    status_code = 409


class CredentialError(RegistrationError):
    """Raised when a stored processor credential cannot be used."""

    status_code = 422


class GatewayErrorType(Enum):
    """Classification of processor errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(RegistrationError):
    """Raised when the payment processor call fails."""

    status_code = 502

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType = GatewayErrorType.PERMANENT,
        http_status: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            http_status: HTTP status returned by the processor, if any
            payload: Decoded error body returned by the processor
        """
        super().__init__(message)
        self.error_type = error_type
        self.http_status = http_status
        self.payload = payload or {}

    @property
    def is_retryable(self) -> bool:
        return self.error_type in (GatewayErrorType.TRANSIENT, GatewayErrorType.RATE_LIMIT)


class SandboxCounterpartError(GatewayError):
    """
    Raised when the processor refuses a split payment because one side is a
    sandbox account and the other is not.
    """

    status_code = 400


class ReconciliationError(RegistrationError):
    """Raised when a single order cannot be reconciled."""

    status_code = 502
