"""
Unified error handling for converge.

Every failure that aborts a reconciliation run is a ``ConvergeError``
subclass carrying an exit code, so the CLI can report it consistently.

Exit Codes:
- 0: Success
- 1: Drift detected (plan only, changes pending)
- 10: Configuration error (bad declaration, identity mismatch)
- 11: Handler error (external service failure)
- 12: Capability missing (an action is required the handler cannot perform)
- 13: Readiness error (poll timed out, failed or was cancelled)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CHANGES_PENDING = 1
    CONFIG_ERROR = 10
    HANDLER_ERROR = 11
    CAPABILITY_MISSING = 12
    READINESS_ERROR = 13
    UNKNOWN_ERROR = 127


class ConvergeError(Exception):
    """Base exception for converge errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(ConvergeError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class DeclarationError(ConfigurationError):
    """Raised when a declaration tree is malformed."""


class PolicyViolationError(ConfigurationError):
    """Raised when a declared identity field disagrees with its instance key."""


class CapabilityMissingError(ConvergeError):
    """Raised when an action is required but the handler cannot perform it."""

    exit_code = ExitCode.CAPABILITY_MISSING


class HandlerError(ConvergeError):
    """Raised when a handler's get/create/update/delete call fails."""

    exit_code = ExitCode.HANDLER_ERROR
    show_traceback = True


class ReadinessError(ConvergeError):
    """Base class for readiness poll failures."""

    exit_code = ExitCode.READINESS_ERROR


class ReadinessTimeoutError(ReadinessError):
    """Raised when a poll exceeds its time or attempt bound."""


class ReadinessFailedError(ReadinessError):
    """Raised when a readiness check reports a terminal failure."""


class PollCancelledError(ReadinessError):
    """Raised when a poll is cancelled through its cancel event."""


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI commands that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - ConvergeError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except ConvergeError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: ConvergeError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
