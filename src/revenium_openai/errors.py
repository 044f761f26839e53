"""
Errors
======
Exception types raised by the middleware and error classification helpers.
"""

from enum import Enum
from typing import Any, Optional

import openai

from revenium_openai.constants import CONFIG_ERROR_PATTERNS, NETWORK_ERROR_PATTERNS


class ErrorType(str, Enum):
    """Coarse classification of an upstream failure."""

    NETWORK = "network"
    CONFIG = "config"
    UNKNOWN = "unknown"


class ReveniumError(Exception):
    """Base class for middleware errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigurationError(ReveniumError):
    """Raised when middleware settings are missing or invalid."""


class NetworkError(ReveniumError):
    """
    Raised in place of a network-shaped upstream failure.

    The original exception is always available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        duration_ms: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.error_type = ErrorType.NETWORK
        self.duration_ms = duration_ms


class MeteringDeliveryError(ReveniumError):
    """A metering request was answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
        self.retryable = retryable


def classify_error(error: BaseException) -> ErrorType:
    """
    Classify an exception as network, configuration, or unknown.

    SDK connection and timeout errors are network errors. Other exceptions
    are matched on well-known message fragments, then on the exception's
    type name so wrapped transport errors from other clients still count.
    """
    if isinstance(error, openai.APIConnectionError):
        return ErrorType.NETWORK
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorType.CONFIG

    message = str(error).lower()
    if any(pattern in message for pattern in NETWORK_ERROR_PATTERNS):
        return ErrorType.NETWORK
    if any(pattern in message for pattern in CONFIG_ERROR_PATTERNS):
        return ErrorType.CONFIG

    type_name = type(error).__name__
    if "Timeout" in type_name or "Connection" in type_name:
        return ErrorType.NETWORK
    return ErrorType.UNKNOWN
