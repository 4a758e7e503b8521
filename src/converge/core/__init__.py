"""Core primitives shared across converge."""

from converge.core.errors import (
    CapabilityMissingError,
    ConfigurationError,
    ConvergeError,
    DeclarationError,
    ExitCode,
    HandlerError,
    PolicyViolationError,
    PollCancelledError,
    ReadinessError,
    ReadinessFailedError,
    ReadinessTimeoutError,
)

__all__ = [
    "CapabilityMissingError",
    "ConfigurationError",
    "ConvergeError",
    "DeclarationError",
    "ExitCode",
    "HandlerError",
    "PolicyViolationError",
    "PollCancelledError",
    "ReadinessError",
    "ReadinessFailedError",
    "ReadinessTimeoutError",
]
