"""
Orchestrator — The façade that wires every component together.

This is the single entry point for callers (the HTTP/WebSocket server, the
async runtime, the CLI, tests). It owns one instance of each component,
translates their change callbacks into events on the EventHub, and implements
the cross-component flows:

- pause / reset return the agent's in-progress tasks to `pending`;
- consensus resolution unblocks the proposer and every agent waiting on the
  request, and sends the proposer a `consensus` message;
- a task that fails for good can trigger a recovery task for a fixer agent;
- every terminal failure (task failed, agent error, consensus rejected or
  expired) is published as an `error` event.

The façade does not schedule on its own: call `tick()` (the runtime does so
on a timer and after every state change).

Usage:
    orch = Orchestrator()
    orch.register_agent(AgentType.EXECUTOR)
    task_id = orch.submit_task("navigate", "Open the pricing page", priority=5)
    orch.tick()
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from mao.agents.registry import AgentRegistry
from mao.core.bus import MessageBus
from mao.core.consensus import ConsensusEngine
from mao.core.errors import AgentUnavailable, QueueLimitExceeded
from mao.core.events import Event, EventHub, EventType
from mao.core.models import (
    ORCHESTRATOR,
    Agent,
    AgentSettings,
    AgentStatus,
    AgentType,
    ConsensusRequest,
    ConsensusStatus,
    GlobalSettings,
    KnowledgeEntry,
    Message,
    MessageType,
    StatusChange,
    Task,
    TaskStatus,
)
from mao.core.scheduler import Assignment, Expiry, TaskScheduler
from mao.core.store import (
    AGENTS,
    CONSENSUS,
    GLOBAL_SETTINGS,
    KNOWLEDGE,
    MESSAGES,
    TASKS,
    StateBackend,
    create_backend,
)
from mao.memory.knowledge import KnowledgeStore
from mao.observability.metrics import MetricsCollector
from mao.utils.config import MAOConfig
from mao.utils.log import set_debug

logger = logging.getLogger("mao.orchestrator")

RECOVERY_PRIORITY = 3
GLOBAL_KEY = "global"


class Orchestrator:
    """
    The Multi-Agent Orchestrator.

    Args:
        config: Configuration object. If None, defaults are used.
        backend: Persistence backend. If None, built from `config.storage`.
        global_settings: Initial global settings.
        clock: Time source shared by every component (seconds).
    """

    def __init__(
        self,
        config: MAOConfig | None = None,
        backend: StateBackend | None = None,
        global_settings: GlobalSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or MAOConfig()
        self._clock = clock
        self._backend = backend or create_backend(
            self._config.storage.backend, self._config.storage.redis_url
        )
        self._global = global_settings or GlobalSettings()
        self._settings_lock = threading.Lock()
        # Assignments made by passes the façade ran on its own, handed out by the next tick().
        self._unclaimed: list[Assignment] = []
        self._unclaimed_lock = threading.Lock()

        self.events = EventHub(history_size=self._config.orchestrator.event_history)
        self.metrics = MetricsCollector()
        self.events.subscribe(self.metrics.observe)

        self.registry = AgentRegistry(
            backend=self._backend,
            on_change=self._on_agent_change,
            vote_guard=self._is_mid_vote,
        )
        self.bus = MessageBus(
            is_known=self.registry.__contains__,
            history_size=self._config.bus.history_size,
            backend=self._backend,
        )
        self.bus.on_message(self._on_message)
        self.scheduler = TaskScheduler(
            registry=self.registry,
            global_settings=self.global_settings,
            backend=self._backend,
            on_change=self._on_task_change,
            clock=clock,
            max_retry_delay_ms=self._config.scheduler.max_retry_delay_ms,
        )
        self.consensus = ConsensusEngine(
            registry=self.registry,
            global_settings=self.global_settings,
            backend=self._backend,
            on_change=self._on_consensus_change,
            default_ttl=self._config.consensus.default_ttl,
            clock=clock,
        )
        self.consensus.add_listener(self._on_consensus_resolved)
        self.knowledge = KnowledgeStore(
            agent_lookup=self.registry.get,
            global_settings=self.global_settings,
            backend=self._backend,
            on_change=self._on_knowledge_change,
            default_confidence=self._config.knowledge.default_confidence,
            clock=clock,
        )
        set_debug(self._global.debug_mode)

        logger.info(
            "Orchestrator initialized: backend=%s, auto_recover=%s",
            self._config.storage.backend, self._config.orchestrator.auto_recover,
        )

    @property
    def config(self) -> MAOConfig:
        return self._config

    def now(self) -> float:
        return self._clock()

    def global_settings(self) -> GlobalSettings:
        """The current global settings. Replaced wholesale, never mutated in place."""
        return self._global

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def register_agent(
        self,
        agent_type: AgentType | str,
        capabilities: list[str] | None = None,
        settings: AgentSettings | None = None,
        agent_id: str | None = None,
    ) -> str:
        agent_id = self.registry.register(agent_type, capabilities, settings, agent_id)
        self._emit_agents_list()
        return agent_id

    def register_default_roster(self) -> list[str]:
        """Register one agent of every type with its default capabilities."""
        return [self.register_agent(agent_type) for agent_type in AgentType]

    def pause_agent(self, agent_id: str) -> Agent:
        """Pause an agent; its in-progress tasks go back to `pending`."""
        agent, released = self.registry.pause(agent_id)
        self._requeue(released)
        return agent

    def resume_agent(self, agent_id: str) -> Agent:
        return self.registry.resume(agent_id)

    def reset_agent(self, agent_id: str) -> Agent:
        """Reset an agent to idle with fresh metrics; its tasks go back to `pending`."""
        agent, released = self.registry.reset(agent_id)
        self._requeue(released)
        return agent

    def _requeue(self, task_ids: list[str]) -> None:
        for task_id in task_ids:
            task = self.scheduler.get(task_id)
            if task.status == TaskStatus.IN_PROGRESS:
                self.scheduler.requeue(task_id)
        if task_ids:
            self._reschedule()

    def report_status(self, agent_id: str, status: AgentStatus, reason: str = "") -> Agent:
        """An agent reports progress along its state machine."""
        return self.registry.transition(agent_id, status, reason)

    def block_agent(self, agent_id: str, on: str) -> Agent:
        return self.registry.block(agent_id, on)

    def unblock_agent(self, agent_id: str, on: str | None = None) -> Agent | None:
        return self.registry.unblock(agent_id, on)

    def _is_mid_vote(self, agent_id: str) -> bool:
        if self.consensus.is_proposing(agent_id):
            return True
        blocked_on = self.registry.get(agent_id).blocked_on
        return blocked_on is not None and blocked_on in self.consensus.pending_ids()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def submit_task(
        self,
        task_type: str,
        description: str = "",
        priority: int = 2,
        dependencies: list[str] | None = None,
        required_capabilities: list[str] | None = None,
        context: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> str:
        """
        Submit a task. It is assigned on the next `tick()`.

        Raises:
            InvalidDependency: If a dependency id is unknown.
            QueueLimitExceeded: If the open-task limit is reached.
        """
        fields: dict[str, Any] = {
            "type": task_type,
            "description": description,
            "priority": priority,
            "dependencies": list(dependencies or []),
            "required_capabilities": list(required_capabilities or []),
            "context": dict(context or {}),
        }
        if task_id is not None:
            fields["id"] = task_id
        return self.scheduler.submit(Task(**fields))

    def tick(self) -> list[Assignment]:
        """
        Run one scheduling pass.

        Returns:
            The assignments of this pass, preceded by any made when a
            completion, failure or requeue freed capacity since the last call.
        """
        assignments = self.scheduler.tick(self._clock())
        with self._unclaimed_lock:
            unclaimed, self._unclaimed = self._unclaimed, []
        # A pause or timeout since then may have taken the task back (or handed it out again).
        unclaimed = list({a.task_id: a for a in unclaimed if self._holds(a)}.values())
        return unclaimed + assignments

    def _holds(self, assignment: Assignment) -> bool:
        task = self.scheduler.get(assignment.task_id)
        return task.status == TaskStatus.IN_PROGRESS and task.assigned_agent == assignment.agent_id

    def _reschedule(self) -> None:
        assignments = self.scheduler.tick(self._clock())
        if assignments:
            with self._unclaimed_lock:
                self._unclaimed.extend(assignments)

    def check_timeouts(self) -> list[Expiry]:
        """Fail (and maybe retry) timed-out tasks; recover the ones that failed for good."""
        expiries = self.scheduler.check_timeouts(self._clock())
        for expiry in expiries:
            if expiry.retry is None:
                self._recover(expiry.task)
        return expiries

    def complete_task(self, task_id: str, result: Any = None) -> Task:
        """Complete a task and schedule whatever its completion unblocked."""
        task = self.scheduler.complete(task_id, result, self._clock())
        self._reschedule()
        return task

    def fail_task(self, task_id: str, error: str) -> list[Task]:
        """Fail a task after an agent-internal error; its agent moves to `error`."""
        failed = self.scheduler.fail(task_id, error, self._clock())
        self._recover(failed[0])
        self._reschedule()
        return failed

    def _recover(self, task: Task) -> None:
        """Hand a permanently failed task to a fixer agent, if configured and available."""
        if not self._config.orchestrator.auto_recover or task.type == "fix":
            return
        if not any(a.type == AgentType.FIXER for a in self.registry.list_agents()):
            return
        try:
            fix_id = self.submit_task(
                "fix",
                f"Recover from failure in task {task.id}",
                priority=RECOVERY_PRIORITY,
                context={"failed_task": task.id, "task_type": task.type, "error": task.error or ""},
            )
        except QueueLimitExceeded as e:
            logger.warning("No recovery for %s: %s", task.id, e)
            return
        logger.info("Recovery task %s submitted for %s", fix_id, task.id)

    # ------------------------------------------------------------------
    # Consensus
    # ------------------------------------------------------------------

    def propose(
        self,
        action: str,
        proposer: str,
        description: str = "",
        context: Any = None,
        required_votes: float | None = None,
        ttl: float | None = None,
    ) -> str:
        return self.consensus.propose(
            action, proposer, description, context, required_votes, ttl, now=self._clock()
        )

    def vote(self, request_id: str, agent_id: str, approve: bool) -> ConsensusRequest:
        return self.consensus.vote(request_id, agent_id, approve, now=self._clock())

    def expire_consensus(self) -> list[ConsensusRequest]:
        return self.consensus.expire_due(self._clock())

    def _on_consensus_resolved(self, request: ConsensusRequest) -> None:
        waiting = [
            a.id for a in self.registry.list_agents()
            if a.status == AgentStatus.WAITING and a.blocked_on == request.id
        ]
        for agent_id in waiting:
            self.registry.unblock(agent_id, request.id)
        if request.proposer in self.registry:
            self.bus.send(Message(
                from_agent=ORCHESTRATOR,
                to_agent=request.proposer,
                type=MessageType.CONSENSUS,
                content={"requestId": request.id, "action": request.action, "status": request.status.value},
                timestamp=self._clock(),
                correlation_id=request.id,
            ))

    # ------------------------------------------------------------------
    # Messages & knowledge
    # ------------------------------------------------------------------

    def send_message(
        self,
        from_agent: str,
        to_agent: str,
        message_type: MessageType | str,
        content: Any = None,
        correlation_id: str | None = None,
    ) -> Message:
        return self.bus.send(Message(
            from_agent=from_agent,
            to_agent=to_agent,
            type=MessageType(message_type),
            content=content,
            timestamp=self._clock(),
            correlation_id=correlation_id,
        ))

    def remember(
        self,
        agent_id: str,
        category: str,
        key: str,
        value: Any,
        outcome: float = 1.0,
        tags: list[str] | None = None,
    ) -> KnowledgeEntry | None:
        return self.knowledge.upsert(agent_id, category, key, value, outcome, tags)

    def recall(self, requester: str | None = None, **filters: Any) -> list[KnowledgeEntry]:
        return self.knowledge.query(requester=requester, **filters)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def save_settings(
        self,
        agent_settings: dict[str, AgentSettings] | None = None,
        global_settings: GlobalSettings | None = None,
    ) -> dict[str, Any]:
        """
        Persist agent and/or global settings.

        Every agent id is checked before anything is written, so an unknown
        id leaves all settings untouched.

        Raises:
            AgentUnavailable: If an agent id is unknown.
        """
        agent_settings = agent_settings or {}
        unknown = [agent_id for agent_id in agent_settings if agent_id not in self.registry]
        if unknown:
            raise AgentUnavailable(unknown[0])

        for agent_id, settings in agent_settings.items():
            self.registry.update_settings(agent_id, settings)
        if global_settings is not None:
            with self._settings_lock:
                self._global = global_settings.model_copy(deep=True)
                self._backend.save(GLOBAL_SETTINGS, GLOBAL_KEY, self._global)
            set_debug(self._global.debug_mode)
            logger.info("Global settings updated: %s", self._global.model_dump())

        snapshot = self.settings()
        self.events.emit(EventType.SETTINGS_UPDATE, snapshot)
        return snapshot

    def settings(self) -> dict[str, Any]:
        return {
            "agentSettings": {a.id: a.settings.to_wire() for a in self.registry.list_agents()},
            "globalSettings": self._global.to_wire(),
        }

    # ------------------------------------------------------------------
    # Snapshots & subscription
    # ------------------------------------------------------------------

    def agents(self) -> list[Agent]:
        return self.registry.list_agents()

    def tasks(self, status: TaskStatus | None = None) -> list[Task]:
        return self.scheduler.list_tasks(status)

    def messages(self, limit: int | None = None) -> list[Message]:
        return self.bus.history(limit)

    def consensus_requests(self, status: ConsensusStatus | None = None) -> list[ConsensusRequest]:
        return self.consensus.list_requests(status)

    def knowledge_entries(self, **filters: Any) -> list[KnowledgeEntry]:
        """Shared knowledge as seen by an external observer."""
        return self.knowledge.query(**filters)

    def subscribe(
        self,
        callback: Callable[[Event], None],
        types: list[EventType] | None = None,
    ) -> Callable[[], None]:
        """Subscribe to the event stream; returns the unsubscribe function."""
        return self.events.subscribe(callback, types)

    def stats(self) -> dict[str, Any]:
        agents = self.registry.list_agents()
        by_status: dict[str, int] = {}
        for a in agents:
            by_status[a.status.value] = by_status.get(a.status.value, 0) + 1
        return {
            "agents": {"total": len(agents), "by_status": by_status},
            "tasks": self.scheduler.counts(),
            "messages": len(self.bus),
            "consensus": {"total": len(self.consensus), "pending": len(self.consensus.pending_ids())},
            "knowledge": self.knowledge.stats(),
        }

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self) -> dict[str, int]:
        """
        Reload state from the persistence backend after a restart.

        Agents come back idle (in-flight work died with the old process) and
        their in-progress tasks come back pending.
        """
        agents = [Agent.model_validate(r) for r in self._backend.load_all(AGENTS)]
        for agent in agents:
            agent.active_tasks.clear()
            agent.current_task = None
            agent.blocked_on = None
            agent.resume_status = None
            if agent.status != AgentStatus.ERROR:
                agent.status = AgentStatus.IDLE
        self.registry.load(agents)

        self.scheduler.load([Task.model_validate(r) for r in self._backend.load_all(TASKS)])
        messages = [Message.model_validate(r) for r in self._backend.load_all(MESSAGES)]
        self.bus.load(sorted(messages, key=lambda m: m.timestamp))
        self.consensus.load([ConsensusRequest.model_validate(r) for r in self._backend.load_all(CONSENSUS)])
        self.knowledge.load([KnowledgeEntry.model_validate(r) for r in self._backend.load_all(KNOWLEDGE)])
        for record in self._backend.load_all(GLOBAL_SETTINGS):
            self._global = GlobalSettings.model_validate(record)
        set_debug(self._global.debug_mode)

        counts = {
            "agents": len(agents),
            "tasks": len(self.scheduler),
            "messages": len(messages),
            "consensus": len(self.consensus),
            "knowledge": len(self.knowledge),
        }
        logger.info("State restored: %s", counts)
        self._emit_agents_list()
        return counts

    # ------------------------------------------------------------------
    # Component callbacks -> events
    # ------------------------------------------------------------------

    def _emit_agents_list(self) -> None:
        self.events.emit(EventType.AGENTS_LIST, {"agents": [a.to_wire() for a in self.registry.list_agents()]})

    def _on_agent_change(self, agent: Agent, change: StatusChange | None) -> None:
        self.events.emit(EventType.AGENT_UPDATE, {
            "agent": agent.to_wire(),
            "change": change.to_wire() if change else None,
        })
        if change is not None and change.to_status == AgentStatus.ERROR:
            self._emit_error(f"Agent {agent.id} entered error: {change.reason}", agentId=agent.id)

    def _on_task_change(self, task: Task, detail: str | None) -> None:
        self.events.emit(EventType.TASK_UPDATE, {"task": task.to_wire(), "detail": detail})
        if task.status == TaskStatus.FAILED:
            self._emit_error(f"Task {task.id} failed: {task.error}", taskId=task.id)

    def _on_message(self, message: Message) -> None:
        self.events.emit(EventType.MESSAGE, {"message": message.to_wire()})

    def _on_consensus_change(self, request: ConsensusRequest) -> None:
        self.events.emit(EventType.CONSENSUS_REQUEST, {"request": request.to_wire()})
        if request.status in (ConsensusStatus.REJECTED, ConsensusStatus.EXPIRED):
            self._emit_error(
                f"Consensus {request.id} on '{request.action}' {request.status.value}: {request.reason}",
                requestId=request.id,
            )

    def _on_knowledge_change(self, entry: KnowledgeEntry) -> None:
        self.events.emit(EventType.KNOWLEDGE_UPDATE, {"entry": entry.to_wire()})

    def _emit_error(self, message: str, **ids: str) -> None:
        self.events.emit(EventType.ERROR, {"error": message, **ids})

