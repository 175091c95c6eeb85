"""Core modules - centralized error taxonomy and time source."""

from insiderguard.core.clock import Clock, SystemClock, utcnow
from insiderguard.core.errors import (
    ActionConfigError,
    ConfigurationError,
    DeliveryError,
    EvaluationError,
    ExecutionError,
    ExitCode,
    InsiderGuardError,
    InvalidRecipientError,
    PolicyValidationError,
    ResolutionError,
    SchedulingError,
    describe_error,
    main_with_error_handling,
)

__all__ = [
    # Errors
    "ExitCode",
    "InsiderGuardError",
    "ConfigurationError",
    "PolicyValidationError",
    "EvaluationError",
    "ResolutionError",
    "SchedulingError",
    "ExecutionError",
    "DeliveryError",
    "InvalidRecipientError",
    "ActionConfigError",
    "describe_error",
    "main_with_error_handling",
    # Time
    "Clock",
    "SystemClock",
    "utcnow",
]
