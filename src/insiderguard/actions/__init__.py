"""Action execution: handler registry, the six handlers and the executor."""

from insiderguard.actions.base import ActionContext, ActionHandler, HandlerRegistry
from insiderguard.actions.executor import ActionExecutor, ActionResult
from insiderguard.actions.handlers import build_registry

__all__ = [
    "ActionContext",
    "ActionExecutor",
    "ActionHandler",
    "ActionResult",
    "HandlerRegistry",
    "build_registry",
]
