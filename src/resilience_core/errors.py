"""Shared error types for resilience_core."""


class ResilienceError(Exception):
    """Base exception for errors raised by the resilience layers themselves."""


class DependencyUnavailableError(ResilienceError):
    """Raised when a dependency is rejected without invoking the operation."""


class FallbackConfigurationError(ResilienceError):
    """Raised when a fallback chain cannot run as configured."""


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""
