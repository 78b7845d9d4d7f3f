"""
Core module initialization.
Exports configuration, logging utilities and the payment error taxonomy.
"""

from app.core.config import get_settings, Settings, EnvironmentMode
from app.core.exceptions import (
    PaymentGatewayError,
    ConfigurationError,
    AuthenticationError,
    NotFoundError,
    TransientStorageError,
    GatewayError,
    InvalidTransitionError,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "PaymentGatewayError",
    "ConfigurationError",
    "AuthenticationError",
    "NotFoundError",
    "TransientStorageError",
    "GatewayError",
    "InvalidTransitionError",
]
