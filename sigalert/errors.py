"""
Error taxonomy for the dispatch pipeline.
"""

from typing import Optional


class SigalertError(Exception):
    """Base class for all service errors."""

    pass


class ValidationError(SigalertError):
    """Raised when input is malformed or a required field is missing."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field
        self.message = message


class ConfigurationError(SigalertError):
    """Raised when a delivery channel is not set up for a user."""

    pass


class TransientDeliveryError(SigalertError):
    """Raised for network, timeout, or provider 5xx failures."""

    pass


class ConcurrencyConflict(SigalertError):
    """A conditional transition lost a race to another worker."""

    pass


class NotFoundError(SigalertError):
    """Raised when a referenced row does not exist."""

    pass


class InvalidTransitionError(SigalertError):
    """Raised when a state change is not allowed from the current status."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status
