"""
Error taxonomy for the policy engine and its CLI.

Engine errors never cross the dispatcher boundary: evaluation failures are
fail-closed, resolution failures abort a single event, scheduling and
execution failures end up on ExecutionRecord.status. The CLI maps the same
classes to exit codes.

Exit Codes:
- 0: Success
- 1: Warning (advisory, operation succeeded with warnings)
- 2: Blocked
- 10: Configuration error
- 11: Provider error (external collaborator failure)
- 12: Validation error
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
    WARNING = 1
    BLOCKED = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    UNKNOWN_ERROR = 127


class InsiderGuardError(Exception):
    """Base exception for engine errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(InsiderGuardError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class PolicyValidationError(InsiderGuardError):
    """Raised when a policy definition is rejected at save/load time."""

    exit_code = ExitCode.VALIDATION_ERROR


class EvaluationError(InsiderGuardError):
    """Malformed condition value or context. Always treated as a false condition."""

    exit_code = ExitCode.VALIDATION_ERROR


class ResolutionError(InsiderGuardError):
    """Subject or policy lookup failed; aborts dispatch of one event."""

    exit_code = ExitCode.PROVIDER_ERROR


class SchedulingError(InsiderGuardError):
    """Deferred execution facility is unavailable."""

    exit_code = ExitCode.PROVIDER_ERROR


class ExecutionError(InsiderGuardError):
    """A single action failed. Transient errors are retried."""

    exit_code = ExitCode.PROVIDER_ERROR
    transient: bool = False


class DeliveryError(ExecutionError):
    """Mail collaborator reported a transport failure."""

    transient = True


class InvalidRecipientError(ExecutionError):
    """Mail collaborator rejected a recipient; not retried."""


class ActionConfigError(ExecutionError):
    """Action configuration cannot be executed; not retried."""


def describe_error(error: BaseException) -> str:
    """Stable string stored on failed execution records."""
    message = error.message if isinstance(error, InsiderGuardError) else str(error)
    return f"{type(error).__name__}: {message}"


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Exit codes:
        - InsiderGuardError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except InsiderGuardError as e:
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
