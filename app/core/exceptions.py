"""
Payment Error Taxonomy

Every failure the gateway core can raise derives from PaymentGatewayError.
The HTTP layer maps each class onto a status code (see app.main), and the
callback processor uses the class to decide between rejecting a delivery
and queueing it for retry.

    ConfigurationError      bad key material / settings, fatal at startup
    AuthenticationError     callback signature mismatch, never retried
    NotFoundError           unknown correlation id or order, never retried
    TransientStorageError   reconciliation storage failure, retried
    GatewayError            provider rejected a synchronous request
    InvalidTransitionError  state machine precondition violated (refunds)
"""

from typing import Optional


class PaymentGatewayError(Exception):
    """Base class for payment gateway failures."""

    status_code: int = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def category(self) -> str:
        return type(self).__name__


class ConfigurationError(PaymentGatewayError):
    status_code = 500


class AuthenticationError(PaymentGatewayError):
    status_code = 400


class NotFoundError(PaymentGatewayError):
    status_code = 404


class TransientStorageError(PaymentGatewayError):
    status_code = 503


class GatewayError(PaymentGatewayError):
    status_code = 502

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, detail)
        self.code = code


class InvalidTransitionError(PaymentGatewayError):
    status_code = 409


__all__ = [
    "PaymentGatewayError",
    "ConfigurationError",
    "AuthenticationError",
    "NotFoundError",
    "TransientStorageError",
    "GatewayError",
    "InvalidTransitionError",
]
