"""
MAO — Multi-Agent Orchestrator

Coordinates a roster of cooperating worker agents (planner, critic, executor,
researcher, fixer): a dependency-aware task scheduler, a message bus, weighted
consensus voting and a shared knowledge store behind one façade.
"""

__version__ = "0.1.0"

from mao.core.orchestrator import Orchestrator
from mao.core.runtime import Runtime, TaskContext
from mao.agents.handlers import HandlerTable, handler
from mao.agents.builtins import create_builtin_handlers
from mao.core.models import AgentStatus, AgentType, TaskStatus

__all__ = [
    "Orchestrator",
    "Runtime",
    "TaskContext",
    "HandlerTable",
    "handler",
    "create_builtin_handlers",
    "AgentType",
    "AgentStatus",
    "TaskStatus",
    "__version__",
]
