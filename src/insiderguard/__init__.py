"""InsiderGuard security policy rule engine."""

__version__ = "0.1.0"
