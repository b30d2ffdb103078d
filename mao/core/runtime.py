"""
Runtime — Runs agent handlers concurrently on an asyncio loop.

The Orchestrator only keeps books; the runtime makes things happen. Each loop
iteration expires overdue tasks and consensus requests, then runs a
scheduling pass and starts one worker per new assignment. A worker walks its
agent through thinking → working → validating while the agent's handler runs,
then completes or fails the task through the façade.

The loop wakes every `tick_interval` seconds, and immediately after any event
(a task finishing frees an agent, a vote resolves a request, ...).

A worker is cancelled as soon as its task stops being in progress on its
agent: pause and reset requeue the task, a timeout fails it. Handlers that
await consensus hold their agent in `waiting` until the request resolves.

Usage:
    orch = Orchestrator()
    orch.register_default_roster()
    runtime = Runtime(orch, HandlerTable(create_builtin_handlers()))
    orch.submit_task("plan", "Scrape the pricing page", context={"expand": True})
    await runtime.run_until_idle(timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from mao.agents.handlers import HandlerTable
from mao.core.errors import InvalidTransition, OrchestratorError
from mao.core.events import Event, EventType
from mao.core.models import (
    AgentSettings,
    AgentStatus,
    ConsensusRequest,
    ConsensusStatus,
    KnowledgeEntry,
    Message,
    MessageType,
    Task,
    TaskStatus,
)
from mao.core.orchestrator import Orchestrator
from mao.core.scheduler import Assignment

logger = logging.getLogger("mao.runtime")


class TaskContext:
    """
    What a handler may do while it runs one task.

    Every call goes through the Orchestrator on behalf of the executing
    agent, so messages, knowledge and proposals are attributed to it.
    """

    def __init__(self, runtime: "Runtime", task: Task, agent_id: str) -> None:
        self._runtime = runtime
        self._orch = runtime.orchestrator
        self.task = task
        self.agent_id = agent_id

    @property
    def settings(self) -> AgentSettings:
        return self._orch.registry.settings_for(self.agent_id)

    def send(
        self,
        to: str,
        content: Any = None,
        message_type: MessageType | str = MessageType.NOTIFICATION,
        correlation_id: str | None = None,
    ) -> Message:
        """Send a message from this agent; `to` may be an agent id or "broadcast"."""
        return self._orch.send_message(self.agent_id, to, message_type, content, correlation_id)

    async def request_consensus(
        self,
        action: str,
        description: str = "",
        context: Any = None,
        required_votes: float | None = None,
        ttl: float | None = None,
    ) -> bool:
        """
        Propose `action` and wait for the verdict.

        The agent sits in `waiting` until the request resolves; expiry counts
        as a rejection.

        Returns:
            True if the request was approved.
        """
        request_id = self._orch.propose(action, self.agent_id, description, context, required_votes, ttl)
        return await self._runtime.await_consensus(request_id, self.agent_id)

    def remember(
        self,
        category: str,
        key: str,
        value: Any,
        outcome: float = 1.0,
        tags: list[str] | None = None,
    ) -> KnowledgeEntry | None:
        return self._orch.remember(self.agent_id, category, key, value, outcome, tags)

    def recall(self, **filters: Any) -> list[KnowledgeEntry]:
        """Query the knowledge store as this agent (its private entries included)."""
        return self._orch.recall(requester=self.agent_id, **filters)

    def submit(
        self,
        task_type: str,
        description: str = "",
        priority: int = 2,
        dependencies: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Submit a follow-up task (e.g. a planner expanding its plan)."""
        return self._orch.submit_task(
            task_type, description, priority=priority, dependencies=dependencies, context=context,
        )


class Runtime:
    """
    The asyncio driver of an Orchestrator.

    Args:
        orchestrator: The façade whose tasks are executed.
        handlers: Dispatch table from agent type to handler.
        tick_interval: Seconds between scheduling passes when nothing happens.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        handlers: HandlerTable,
        tick_interval: float | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.handlers = handlers
        self._tick_interval = (
            orchestrator.config.scheduler.tick_interval if tick_interval is None else tick_interval
        )
        self._workers: dict[str, tuple[str, asyncio.Task]] = {}
        self._waiters: dict[str, asyncio.Future] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_workers(self) -> int:
        return len(self._workers)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self, stop_when_idle: bool = False) -> None:
        """
        Drive the orchestrator until `stop()` is called.

        Args:
            stop_when_idle: Return as soon as no worker runs and no task can
                still make progress.
        """
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        unsubscribe = self.orchestrator.subscribe(self._on_event)
        remove_listener = self.orchestrator.consensus.add_listener(self._on_consensus_resolved)
        self._running = True
        logger.info("Runtime started (tick_interval=%gs, handlers=%d)", self._tick_interval, len(self.handlers))

        try:
            while self._running:
                self._wake.clear()
                self.step()
                if stop_when_idle and self.idle:
                    break
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self._tick_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            unsubscribe()
            remove_listener()
            await self._cancel_workers()
            logger.info("Runtime stopped")

    async def run_until_idle(self, timeout: float | None = None) -> bool:
        """
        Run until every runnable task has finished.

        Returns:
            True if the runtime went idle, False if `timeout` elapsed first.
        """
        try:
            await asyncio.wait_for(self.run(stop_when_idle=True), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Runtime did not go idle within %ss", timeout)
            return False
        return True

    def stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        self._running = False
        self._poke()

    def step(self) -> list[Assignment]:
        """One iteration: expire what is overdue, schedule, start workers."""
        try:
            self.orchestrator.check_timeouts()
            self.orchestrator.expire_consensus()
            assignments = self.orchestrator.tick()
        except OrchestratorError as e:
            logger.error("Scheduling pass failed: %s", e)
            return []
        for assignment in assignments:
            self._start_worker(assignment)
        return assignments

    @property
    def idle(self) -> bool:
        """No worker runs, and no pending task is only waiting for its retry backoff."""
        if self._workers:
            return False
        now = self.orchestrator.now()
        for task in self.orchestrator.tasks():
            if task.status == TaskStatus.IN_PROGRESS:
                return False
            if task.status == TaskStatus.PENDING and task.not_before is not None and task.not_before > now:
                return False
        return True

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _start_worker(self, assignment: Assignment) -> None:
        worker = asyncio.create_task(self._work(assignment), name=f"worker-{assignment.task_id}")
        self._workers[assignment.task_id] = (assignment.agent_id, worker)

    async def _work(self, assignment: Assignment) -> None:
        task_id, agent_id = assignment.task_id, assignment.agent_id
        orch = self.orchestrator
        task = orch.scheduler.get(task_id)
        agent = orch.registry.get(agent_id)
        agent_handler = self.handlers.get(agent.type)
        logger.info("Worker started: %s on %s (%s)", task_id, agent_id, agent.type.value)

        try:
            if agent_handler is None:
                raise LookupError(f"no handler bound for agent type '{agent.type.value}'")
            self._advance(agent_id, AgentStatus.WORKING, f"executing {task_id}")
            result = await agent_handler(task, TaskContext(self, task, agent_id))
            self._advance(agent_id, AgentStatus.VALIDATING, f"validating {task_id}")
            if not agent_handler.check(task, result):
                raise ValueError(f"result of {task_id} failed validation")
        except asyncio.CancelledError:
            logger.info("Worker cancelled: %s on %s", task_id, agent_id)
            self._workers.pop(task_id, None)
            raise
        except Exception as e:
            logger.error("Handler failed on %s (%s): %s", task_id, agent_id, e)
            if self._detach(task_id, agent_id):
                self._report(orch.fail_task, task_id, f"{type(e).__name__}: {e}")
            return

        if self._detach(task_id, agent_id):
            self._report(orch.complete_task, task_id, result)

    def _advance(self, agent_id: str, status: AgentStatus, reason: str) -> None:
        """Report progress; a move refused because a sibling task holds the agent in `waiting` is skipped."""
        try:
            self.orchestrator.report_status(agent_id, status, reason)
        except InvalidTransition:
            if self.orchestrator.registry.get(agent_id).status != AgentStatus.WAITING:
                raise
            logger.debug("Agent %s is waiting; skipped move to %s", agent_id, status.value)

    def _detach(self, task_id: str, agent_id: str) -> bool:
        """Forget the worker; True if the task is still ours to report on."""
        self._workers.pop(task_id, None)
        task = self.orchestrator.scheduler.get(task_id)
        return task.status == TaskStatus.IN_PROGRESS and task.assigned_agent == agent_id

    def _report(self, fn: Any, task_id: str, value: Any) -> None:
        try:
            fn(task_id, value)
        except OrchestratorError as e:
            logger.warning("Could not report the end of %s: %s", task_id, e)

    async def _cancel_workers(self) -> None:
        workers = [worker for _, worker in self._workers.values()]
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()

    # ------------------------------------------------------------------
    # Consensus waits
    # ------------------------------------------------------------------

    async def await_consensus(self, request_id: str, agent_id: str) -> bool:
        """Block `agent_id` on a request until it resolves; True if approved."""
        orch = self.orchestrator
        request = orch.consensus.get(request_id)
        if request.resolved:
            return request.status == ConsensusStatus.APPROVED

        future = asyncio.get_running_loop().create_future()
        self._waiters[request_id] = future
        try:
            orch.block_agent(agent_id, request_id)
            request = orch.consensus.get(request_id)
            if request.resolved:
                # Resolved before the block landed; nobody else will unblock us.
                orch.unblock_agent(agent_id, request_id)
                return request.status == ConsensusStatus.APPROVED
            status = await future
        finally:
            self._waiters.pop(request_id, None)
        logger.info("Consensus %s for %s: %s", request_id, agent_id, status.value)
        return status == ConsensusStatus.APPROVED

    def _on_consensus_resolved(self, request: ConsensusRequest) -> None:
        # May run on any thread (votes arrive through the API).
        if request.id in self._waiters and self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._settle, request.id, request.status)

    def _settle(self, request_id: str, status: ConsensusStatus) -> None:
        future = self._waiters.get(request_id)
        if future is not None and not future.done():
            future.set_result(status)

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def _on_event(self, event: Event) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        if event.type == EventType.TASK_UPDATE:
            self._loop.call_soon_threadsafe(self._check_worker, event.data.get("task", {}))
        self._poke()

    def _check_worker(self, task: dict[str, Any]) -> None:
        """Cancel the worker of a task that left in-progress on its agent."""
        entry = self._workers.get(task.get("id", ""))
        if entry is None:
            return
        agent_id, worker = entry
        if task.get("status") == TaskStatus.IN_PROGRESS.value and task.get("assignedAgent") == agent_id:
            return
        logger.info("Task %s is %s; cancelling its worker on %s", task.get("id"), task.get("status"), agent_id)
        self._workers.pop(task["id"], None)
        worker.cancel()

    def _poke(self) -> None:
        if self._loop is None or self._wake is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._wake.set)
