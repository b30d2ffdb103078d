"""
Agent Registry — Registration, lifecycle and metrics of worker agents.

The registry exclusively owns Agent records. Every status change goes through
the state machine below and is reported to the `on_change` callback, which the
Orchestrator turns into an `agent-update` event:

    idle → thinking → working → validating → idle  (success)
                                           ↘ error (failure)
    working / validating → waiting → (back to the prior state)

`pause` forces any active agent to idle (its tasks go back to pending),
`resume` is only valid from idle, and `reset` returns any agent to idle with
zeroed metrics unless it is in the middle of a consensus vote.

Usage:
    registry = AgentRegistry()
    agent_id = registry.register(AgentType.EXECUTOR)
    registry.assign(agent_id, "task-1")
    registry.transition(agent_id, AgentStatus.WORKING)
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from mao.core.errors import AgentUnavailable, InvalidTransition, InvariantViolation
from mao.core.models import (
    ACTIVE_STATUSES,
    Agent,
    AgentMetrics,
    AgentSettings,
    AgentStatus,
    AgentType,
    StatusChange,
    TaskOutcome,
    TypeStats,
    new_id,
)
from mao.core.store import AGENT_SETTINGS, AGENTS, InMemoryBackend, StateBackend

logger = logging.getLogger("mao.agents")

# Capability sets each agent type is registered with unless told otherwise.
DEFAULT_CAPABILITIES: dict[AgentType, list[str]] = {
    AgentType.PLANNER: [
        "task-decomposition", "dependency-analysis", "resource-planning", "timeline-estimation",
    ],
    AgentType.CRITIC: [
        "data-validation", "quality-assessment", "error-detection", "compliance-checking",
    ],
    AgentType.EXECUTOR: [
        "browser-automation", "data-extraction", "form-filling", "navigation", "screenshot-capture",
    ],
    AgentType.RESEARCHER: [
        "web-search", "data-analysis", "pattern-recognition", "information-synthesis",
    ],
    AgentType.FIXER: [
        "error-recovery", "retry-logic", "fallback-execution", "state-restoration",
    ],
}

TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.IDLE: frozenset({AgentStatus.THINKING}),
    AgentStatus.THINKING: frozenset({AgentStatus.WORKING, AgentStatus.ERROR}),
    AgentStatus.WORKING: frozenset({AgentStatus.VALIDATING, AgentStatus.WAITING, AgentStatus.ERROR}),
    AgentStatus.VALIDATING: frozenset({
        AgentStatus.IDLE, AgentStatus.ERROR, AgentStatus.WAITING, AgentStatus.WORKING,
    }),
    AgentStatus.WAITING: frozenset({AgentStatus.ERROR}),
    AgentStatus.ERROR: frozenset(),
}

ChangeCallback = Callable[[Agent, StatusChange | None], None]


class AgentRegistry:
    """
    Owner of every Agent record and its state machine.

    All mutations take the registry lock; callers only ever receive copies.
    """

    def __init__(
        self,
        backend: StateBackend | None = None,
        on_change: ChangeCallback | None = None,
        vote_guard: Callable[[str], bool] | None = None,
    ) -> None:
        self._agents: dict[str, Agent] = {}
        self._backend = backend or InMemoryBackend()
        self._on_change = on_change
        self._vote_guard = vote_guard
        self._lock = threading.RLock()

    def set_on_change(self, callback: ChangeCallback | None) -> None:
        self._on_change = callback

    def set_vote_guard(self, guard: Callable[[str], bool] | None) -> None:
        """`guard(agent_id)` returns True while the agent is mid-vote."""
        self._vote_guard = guard

    # ------------------------------------------------------------------
    # Registration & lookup
    # ------------------------------------------------------------------

    def register(
        self,
        agent_type: AgentType | str,
        capabilities: list[str] | None = None,
        settings: AgentSettings | None = None,
        agent_id: str | None = None,
    ) -> str:
        """
        Register a new agent.

        Args:
            agent_type: One of the five agent roles.
            capabilities: Capability strings; defaults to the type's built-in set.
            settings: Initial settings; defaults to AgentSettings().
            agent_id: Explicit id (default: "<type>-<random>").

        Returns:
            The new agent id.

        Raises:
            ValueError: If `agent_id` is already registered.
        """
        agent_type = AgentType(agent_type)
        agent = Agent(
            id=agent_id or new_id(agent_type.value),
            type=agent_type,
            capabilities=list(capabilities) if capabilities is not None
            else list(DEFAULT_CAPABILITIES[agent_type]),
            settings=settings.model_copy(deep=True) if settings else AgentSettings(),
        )
        with self._lock:
            if agent.id in self._agents:
                raise ValueError(f"Agent '{agent.id}' is already registered.")
            self._agents[agent.id] = agent
            self._persist(agent, settings=True)
            snapshot = agent.model_copy(deep=True)
        logger.info("Registered agent: %s (%s)", agent.id, ", ".join(agent.capabilities))
        self._notify(snapshot, None)
        return agent.id

    def load(self, agents: list[Agent]) -> None:
        """Restore previously persisted agents (no events are emitted)."""
        with self._lock:
            for agent in agents:
                self._agents[agent.id] = agent.model_copy(deep=True)

    def get(self, agent_id: str) -> Agent:
        with self._lock:
            return self._require(agent_id).model_copy(deep=True)

    def list_agents(self) -> list[Agent]:
        with self._lock:
            return [a.model_copy(deep=True) for a in self._agents.values()]

    def settings_for(self, agent_id: str) -> AgentSettings:
        with self._lock:
            return self._require(agent_id).settings.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def update_settings(self, agent_id: str, settings: AgentSettings) -> Agent:
        """Replace an agent's settings; the only way settings change."""
        with self._lock:
            agent = self._require(agent_id)
            agent.settings = settings.model_copy(deep=True)
            self._persist(agent, settings=True)
            snapshot = agent.model_copy(deep=True)
        logger.info("Settings updated for %s", agent_id)
        self._notify(snapshot, None)
        return snapshot

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(self, agent_id: str, new_status: AgentStatus, reason: str = "") -> Agent:
        """
        Move an agent along the state machine.

        Re-entering the current state is a no-op. An agent holding several
        tasks may move freely between thinking, working and validating.

        Raises:
            InvalidTransition: If the move is not allowed from the current state.
            ValueError: If `new_status` names no status.
        """
        new_status = AgentStatus(new_status)
        with self._lock:
            agent = self._require(agent_id)
            old = agent.status
            if new_status == old:
                return agent.model_copy(deep=True)
            multi = agent.load > 1 and old in ACTIVE_STATUSES and new_status in ACTIVE_STATUSES \
                and AgentStatus.WAITING not in (old, new_status)
            if not multi and new_status not in TRANSITIONS[old]:
                raise InvalidTransition(agent_id, old.value, new_status.value)
            agent.status = new_status
            change = self._record(agent, old, reason)
            snapshot = agent.model_copy(deep=True)
        self._notify(snapshot, change)
        return snapshot

    def block(self, agent_id: str, on: str, reason: str = "") -> Agent:
        """Put a working/validating agent into `waiting` on a consensus request or task."""
        with self._lock:
            agent = self._require(agent_id)
            old = agent.status
            if old not in (AgentStatus.WORKING, AgentStatus.VALIDATING):
                raise InvalidTransition(agent_id, old.value, AgentStatus.WAITING.value)
            agent.resume_status = old
            agent.blocked_on = on
            agent.status = AgentStatus.WAITING
            change = self._record(agent, old, reason or f"blocked on {on}")
            snapshot = agent.model_copy(deep=True)
        self._notify(snapshot, change)
        return snapshot

    def unblock(self, agent_id: str, on: str | None = None) -> Agent | None:
        """
        Return a waiting agent to the state it was in before blocking.

        Returns None (and changes nothing) when the agent is no longer waiting
        on `on`, e.g. because it was paused or reset meanwhile.
        """
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None or agent.status != AgentStatus.WAITING:
                return None
            if on is not None and agent.blocked_on != on:
                return None
            old = agent.status
            agent.status = agent.resume_status or AgentStatus.WORKING
            agent.resume_status = None
            agent.blocked_on = None
            change = self._record(agent, old, f"unblocked from {on}" if on else "unblocked")
            snapshot = agent.model_copy(deep=True)
        self._notify(snapshot, change)
        return snapshot

    # ------------------------------------------------------------------
    # Task assignment bookkeeping
    # ------------------------------------------------------------------

    def is_available(self, agent: Agent) -> bool:
        """Whether an agent snapshot can take one more task right now."""
        if agent.paused or agent.status == AgentStatus.ERROR or agent.at_capacity:
            return False
        if agent.load == 0:
            return agent.status == AgentStatus.IDLE
        return agent.status != AgentStatus.WAITING

    def assign(self, agent_id: str, task_id: str) -> Agent:
        """
        Record that `task_id` now runs on this agent.

        Raises:
            InvariantViolation: If the agent cannot hold another task.
        """
        with self._lock:
            agent = self._require(agent_id)
            if task_id in agent.active_tasks:
                raise InvariantViolation(f"Task '{task_id}' is already assigned to '{agent_id}'.")
            if not self.is_available(agent):
                raise InvariantViolation(
                    f"Agent '{agent_id}' cannot take task '{task_id}' "
                    f"(status={agent.status.value}, load={agent.load}, paused={agent.paused})"
                )
            old = agent.status
            agent.active_tasks.append(task_id)
            agent.current_task = task_id
            change = None
            if old == AgentStatus.IDLE:
                agent.status = AgentStatus.THINKING
                change = self._record(agent, old, f"assigned {task_id}")
            else:
                self._persist(agent)
            snapshot = agent.model_copy(deep=True)
        self._notify(snapshot, change)
        return snapshot

    def finish_task(self, agent_id: str, task_id: str, outcome: TaskOutcome) -> Agent:
        """
        Report the end of a task: metrics are updated and the agent leaves
        `validating` for idle (success) or error (failure). An agent that still
        holds other tasks goes back to working instead.
        """
        with self._lock:
            agent = self._require(agent_id)
            self._drop_task(agent, task_id)
            self._apply_outcome(agent, outcome)
            old = agent.status
            if agent.active_tasks:
                agent.status = AgentStatus.WORKING
            elif outcome.success:
                agent.status = AgentStatus.IDLE
            else:
                agent.status = AgentStatus.ERROR
            agent.blocked_on = None
            agent.resume_status = None
            reason = f"{'completed' if outcome.success else 'failed'} {task_id}"
            change = self._record(agent, old, reason)
            snapshot = agent.model_copy(deep=True)
        self._notify(snapshot, change)
        return snapshot

    def release_task(self, agent_id: str, task_id: str, outcome: TaskOutcome | None = None) -> Agent | None:
        """
        Detach a task without the normal completion path (timeout, requeue).

        The agent is forced back to idle once it holds no task. An optional
        outcome is still counted in the metrics.
        """
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None or task_id not in agent.active_tasks:
                return None
            self._drop_task(agent, task_id)
            if outcome is not None:
                self._apply_outcome(agent, outcome)
            change = None
            if not agent.active_tasks and agent.status != AgentStatus.ERROR:
                old = agent.status
                agent.status = AgentStatus.IDLE
                agent.blocked_on = None
                agent.resume_status = None
                if old != AgentStatus.IDLE:
                    change = self._record(agent, old, f"released {task_id}")
            self._persist(agent)
            snapshot = agent.model_copy(deep=True)
        self._notify(snapshot, change)
        return snapshot

    def update_metrics(self, agent_id: str, outcome: TaskOutcome) -> Agent:
        """Fold one task outcome into the agent's metrics and confidence."""
        with self._lock:
            agent = self._require(agent_id)
            self._apply_outcome(agent, outcome)
            self._persist(agent)
            snapshot = agent.model_copy(deep=True)
        self._notify(snapshot, None)
        return snapshot

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def pause(self, agent_id: str) -> tuple[Agent, list[str]]:
        """
        Force an agent to idle and stop scheduling onto it.

        Returns:
            The agent snapshot and the ids of tasks it was holding; the caller
            returns those tasks to `pending`.

        Raises:
            AgentUnavailable: If the agent is unknown or in error.
        """
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise AgentUnavailable(agent_id)
            if agent.status == AgentStatus.ERROR:
                raise AgentUnavailable(agent_id, "agent is in error; reset it first")
            released = list(agent.active_tasks)
            old = agent.status
            agent.paused = True
            agent.active_tasks.clear()
            agent.current_task = None
            agent.blocked_on = None
            agent.resume_status = None
            agent.status = AgentStatus.IDLE
            change = self._record(agent, old, "paused")
            snapshot = agent.model_copy(deep=True)
        logger.info("Agent %s paused (%d task(s) returned to pending)", agent_id, len(released))
        self._notify(snapshot, change)
        return snapshot, released

    def resume(self, agent_id: str) -> Agent:
        """
        Make a paused agent schedulable again. Only valid from idle.

        Raises:
            AgentUnavailable: If the agent is unknown or in error.
            InvalidTransition: If the agent is not idle.
        """
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise AgentUnavailable(agent_id)
            if agent.status == AgentStatus.ERROR:
                raise AgentUnavailable(agent_id, "agent is in error; reset it first")
            if agent.status != AgentStatus.IDLE:
                raise InvalidTransition(agent_id, agent.status.value, "resumed")
            agent.paused = False
            self._persist(agent)
            snapshot = agent.model_copy(deep=True)
        logger.info("Agent %s resumed", agent_id)
        self._notify(snapshot, None)
        return snapshot

    def reset(self, agent_id: str) -> tuple[Agent, list[str]]:
        """
        Return an agent to idle with default metrics, from any state.

        Returns:
            The agent snapshot and the ids of tasks it was holding.

        Raises:
            AgentUnavailable: If the agent is unknown or mid-vote.
        """
        if agent_id not in self._agents:
            raise AgentUnavailable(agent_id)
        # Checked before taking the lock: the guard consults the consensus engine.
        if self._vote_guard is not None and self._vote_guard(agent_id):
            raise AgentUnavailable(agent_id, "agent is in the middle of a consensus vote")

        with self._lock:
            agent = self._require(agent_id)
            released = list(agent.active_tasks)
            old = agent.status
            agent.status = AgentStatus.IDLE
            agent.active_tasks.clear()
            agent.current_task = None
            agent.blocked_on = None
            agent.resume_status = None
            agent.paused = False
            agent.metrics = AgentMetrics()
            agent.confidence = 0.0
            change = self._record(agent, old, "reset")
            snapshot = agent.model_copy(deep=True)
        logger.info("Agent %s reset", agent_id)
        self._notify(snapshot, change)
        return snapshot, released

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentUnavailable(agent_id)
        return agent

    def _drop_task(self, agent: Agent, task_id: str) -> None:
        if task_id not in agent.active_tasks:
            raise InvariantViolation(f"Agent '{agent.id}' does not hold task '{task_id}'.")
        agent.active_tasks.remove(task_id)
        if agent.current_task == task_id:
            agent.current_task = agent.active_tasks[-1] if agent.active_tasks else None

    def _apply_outcome(self, agent: Agent, outcome: TaskOutcome) -> None:
        m = agent.metrics
        if outcome.success:
            m.tasks_completed += 1
            # Running average over completed tasks only.
            n = m.tasks_completed
            m.average_time_ms = outcome.duration_ms if n == 1 else (
                (m.average_time_ms * (n - 1) + outcome.duration_ms) / n
            )
        else:
            m.tasks_failed += 1
        total = m.tasks_completed + m.tasks_failed
        m.success_rate = m.tasks_completed / total * 100 if total else None
        if outcome.task_type:
            stats = m.by_task_type.setdefault(outcome.task_type, TypeStats())
            if outcome.success:
                stats.completed += 1
            else:
                stats.failed += 1
        agent.confidence = m.success_rate or 0.0

    def _record(self, agent: Agent, old: AgentStatus, reason: str) -> StatusChange:
        change = StatusChange(agent_id=agent.id, from_status=old, to_status=agent.status, reason=reason)
        self._persist(agent)
        logger.debug("Agent %s: %s -> %s (%s)", agent.id, old.value, agent.status.value, reason)
        return change

    def _persist(self, agent: Agent, settings: bool = False) -> None:
        self._backend.save(AGENTS, agent.id, agent)
        if settings:
            self._backend.save(AGENT_SETTINGS, agent.id, agent.settings)

    def _notify(self, agent: Agent, change: StatusChange | None) -> None:
        if self._on_change is not None:
            self._on_change(agent, change)
