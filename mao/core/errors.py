"""
Error taxonomy for MAO.

Every component raises one of these instead of a bare ValueError/RuntimeError so
callers (the façade, the HTTP layer, the runtime) can decide per error whether
to retry, surface it, or refuse the mutation.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class UnknownTask(OrchestratorError, LookupError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found.")


class InvalidDependency(OrchestratorError):
    """A submitted task references an unknown dependency. Not retried."""

    def __init__(self, task_id: str, missing: list[str]) -> None:
        self.task_id = task_id
        self.missing = missing
        super().__init__(f"Task '{task_id}' has unknown dependencies: {', '.join(missing)}")


class CapabilityMismatch(OrchestratorError):
    """No eligible agent for a task right now. The task stays pending."""

    def __init__(self, task_id: str, required: list[str]) -> None:
        self.task_id = task_id
        self.required = required
        super().__init__(
            f"No available agent for task '{task_id}' (requires: {', '.join(required) or '-'})"
        )


class TaskTimeout(OrchestratorError):
    def __init__(self, task_id: str, timeout: float, attempt: int) -> None:
        self.task_id = task_id
        self.timeout = timeout
        self.attempt = attempt
        super().__init__(f"Task '{task_id}' exceeded {timeout:g}s (attempt {attempt})")


class QueueLimitExceeded(OrchestratorError):
    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Task queue limit reached ({limit} open tasks).")


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class AgentUnavailable(OrchestratorError):
    """Agent control on an unknown agent, or one whose state forbids it."""

    def __init__(self, agent_id: str, reason: str = "not found") -> None:
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Agent '{agent_id}' unavailable: {reason}")


class InvalidTransition(OrchestratorError):
    def __init__(self, agent_id: str, from_status: str, to_status: str) -> None:
        self.agent_id = agent_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Agent '{agent_id}' cannot go from {from_status} to {to_status}")


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------

class UnknownRequest(OrchestratorError, LookupError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Consensus request '{request_id}' not found.")


class AlreadyResolved(OrchestratorError):
    def __init__(self, request_id: str, status: str) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__(f"Consensus request '{request_id}' is already {status}.")


class DuplicateVote(OrchestratorError):
    def __init__(self, request_id: str, agent_id: str) -> None:
        self.request_id = request_id
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' already voted on '{request_id}'.")


class NotEligible(OrchestratorError):
    def __init__(self, request_id: str, agent_id: str) -> None:
        self.request_id = request_id
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' is not a voter on '{request_id}'.")


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

class UnknownParticipant(OrchestratorError):
    def __init__(self, participant: str, role: str) -> None:
        self.participant = participant
        self.role = role
        super().__init__(f"Unknown message {role}: '{participant}'")


# ---------------------------------------------------------------------------
# Internal consistency
# ---------------------------------------------------------------------------

class InvariantViolation(OrchestratorError):
    """A mutation would leave inconsistent state; it was refused."""
