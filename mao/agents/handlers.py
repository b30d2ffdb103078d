"""
Agent Handlers — What an agent of a given type does with a task.

Agent behaviour is a dispatch table keyed by AgentType, not a class
hierarchy: each type maps to one AgentHandler wrapping an async execute
function and an optional result validator.

Usage:
    from mao.agents.handlers import handler, HandlerTable

    @handler(AgentType.EXECUTOR, "Drives the browser through navigation and form steps.")
    async def executor(task: Task, ctx: TaskContext) -> dict:
        if task.type == "submit" and not await ctx.request_consensus("submit"):
            raise PermissionError("submission was not approved")
        return {"status": "ok"}

    table = HandlerTable()
    table.register(executor)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from mao.core.models import AgentType, Task

if TYPE_CHECKING:
    from mao.core.runtime import TaskContext

logger = logging.getLogger("mao.agents")

# Type aliases for handler functions
ExecuteFn = Callable[[Task, "TaskContext"], Coroutine[Any, Any, Any]]
ValidateFn = Callable[[Task, Any], bool]


@dataclass
class AgentHandler:
    """The behaviour bound to one agent type."""
    agent_type: AgentType
    description: str
    execute: ExecuteFn | None = None
    validate: ValidateFn | None = None

    async def __call__(self, task: Task, ctx: "TaskContext") -> Any:
        """Run the handler's execute function."""
        if self.execute is None:
            raise RuntimeError(f"Handler for '{self.agent_type.value}' has no execute function.")
        return await self.execute(task, ctx)

    def check(self, task: Task, result: Any) -> bool:
        """Validate a result; handlers without a validator accept everything."""
        if self.validate is None:
            return True
        return bool(self.validate(task, result))

    def validator(self, fn: ValidateFn) -> ValidateFn:
        """Decorator attaching a result validator to this handler."""
        self.validate = fn
        return fn


def handler(agent_type: AgentType | str, description: str) -> Callable[[ExecuteFn], AgentHandler]:
    """
    Decorator to define the handler of an agent type.

    Args:
        agent_type: The agent type whose tasks this function executes.
        description: Human-readable description of what the handler does.

    Returns:
        A decorator that wraps an async function into an AgentHandler.
    """
    def decorator(fn: ExecuteFn) -> AgentHandler:
        return AgentHandler(agent_type=AgentType(agent_type), description=description, execute=fn)
    return decorator


class HandlerTable:
    """Dispatch table from agent type to handler."""

    def __init__(self, handlers: list[AgentHandler] | None = None) -> None:
        self._handlers: dict[AgentType, AgentHandler] = {}
        for h in handlers or []:
            self.register(h)

    def register(self, agent_handler: AgentHandler, replace: bool = False) -> None:
        """
        Bind a handler to its agent type.

        Raises:
            ValueError: If the type already has a handler and `replace` is False.
        """
        if agent_handler.agent_type in self._handlers and not replace:
            raise ValueError(f"A handler for '{agent_handler.agent_type.value}' is already registered.")
        self._handlers[agent_handler.agent_type] = agent_handler
        logger.info("Handler bound: %s — %s", agent_handler.agent_type.value, agent_handler.description)

    def get(self, agent_type: AgentType | str) -> AgentHandler | None:
        """Look up the handler of an agent type. Returns None if not bound."""
        return self._handlers.get(AgentType(agent_type))

    def list_handlers(self) -> list[AgentHandler]:
        return list(self._handlers.values())

    def describe_all(self) -> str:
        """One line per bound handler."""
        if not self._handlers:
            return "(No handlers registered)"
        return "\n".join(f"- {h.agent_type.value}: {h.description}" for h in self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, agent_type: object) -> bool:
        try:
            return AgentType(agent_type) in self._handlers
        except ValueError:
            return False
