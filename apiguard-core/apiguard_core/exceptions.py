"""
Guard Exceptions
================
Exception hierarchy for the API protection subsystem.
"""

from typing import Any, Optional


class GuardError(Exception):
    """Base exception for all apiguard errors."""
    def __init__(self, message: str, details: Any = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(GuardError):
    """Raised when caller input is rejected before any store access."""
    pass


class InvalidIPAddressError(ValidationError):
    """Raised for a malformed IPv4/IPv6 address."""
    def __init__(self, ip: Optional[str]):
        self.ip = ip
        super().__init__(f"Invalid IP address: {ip!r}")


class ConfigurationError(GuardError):
    """Raised when a threshold or setting fails validation at load time."""
    def __init__(self, message: str, key: Optional[str] = None, value: Any = None):
        self.key = key
        self.value = value
        super().__init__(message, details={"key": key, "value": value})


class StoreUnavailableError(GuardError):
    """Raised when the event/access store cannot be reached or a statement fails."""
    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(f"[{operation}] {message}")


class GeolocationError(GuardError):
    """Raised when the geolocation service cannot resolve an address."""
    pass


class AlertDeliveryError(GuardError):
    """Raised by an alert sink when delivery fails."""
    pass
