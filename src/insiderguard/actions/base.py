"""Action handler protocol and registry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from insiderguard.domain.models import ActionType, ExecutionKey, Policy, TriggerEvent


@dataclass
class ActionContext:
    """Shared context passed to every action handler."""

    policy: Policy
    action: Any  # one of the Action variants
    event: TriggerEvent
    now: datetime

    @property
    def key(self) -> ExecutionKey:
        assert self.policy.id is not None
        return ExecutionKey(self.policy.id, self.event.id, self.action.order)

    @property
    def subject_id(self) -> str:
        return self.event.subject.user_id


@runtime_checkable
class ActionHandler(Protocol):
    """Performs one side effect for one action type."""

    @property
    def action_type(self) -> ActionType:
        ...

    async def execute(self, ctx: ActionContext) -> Dict[str, Any]:
        """Run the side effect and return details stored on the ledger record."""
        ...


class HandlerRegistry:
    """In-memory registry of action handlers keyed by action type."""

    def __init__(self) -> None:
        self._handlers: Dict[ActionType, ActionHandler] = {}

    def register(self, handler: ActionHandler) -> None:
        self._handlers[handler.action_type] = handler

    def get(self, action_type: ActionType | str) -> Optional[ActionHandler]:
        return self._handlers.get(ActionType(action_type))

    def list(self) -> List[ActionType]:
        return list(self._handlers.keys())
