"""
Task Scheduler — The task graph and its assignment to agents.

The scheduler exclusively owns Task records. A scheduling pass (`tick`):

1. Collects `pending` tasks whose dependencies are all `completed` and whose
   retry backoff (`not_before`) has elapsed.
2. Orders them by priority (descending), then creation time (FIFO).
3. For each, picks among available agents whose capabilities cover the task
   the one with the best success rate for the task type, tie-broken by
   lowest load, then preferred-task match, then registration order.
4. Assigns: task → in-progress, agent → thinking.

Timed-out tasks are failed and resubmitted as fresh pending tasks with an
exponential backoff until the agent's retry budget is spent. A retry
supersedes the original: dependents of the original wait for the latest
retry in the chain.

Invariants enforced on every assignment (a violation refuses the mutation):
- a task never goes in-progress with an unmet dependency;
- a task is held by at most one agent;
- an agent holds at most `performance.max_concurrent_tasks` tasks.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from mao.agents.registry import AgentRegistry
from mao.core.errors import (
    CapabilityMismatch,
    InvalidDependency,
    InvariantViolation,
    QueueLimitExceeded,
    TaskTimeout,
    UnknownTask,
)
from mao.core.models import (
    Agent,
    GlobalSettings,
    PerformanceSettings,
    Task,
    TaskOutcome,
    TaskStatus,
)
from mao.core.store import TASKS, InMemoryBackend, StateBackend

logger = logging.getLogger("mao.scheduler")

# Capabilities a task needs when it does not declare any, keyed by task type.
TASK_TYPE_CAPABILITIES: dict[str, list[str]] = {
    "navigate": ["navigation"],
    "wait": ["navigation"],
    "click": ["browser-automation"],
    "identify": ["browser-automation"],
    "execute": ["browser-automation"],
    "fill": ["form-filling"],
    "submit": ["form-filling"],
    "extract": ["data-extraction"],
    "store": ["data-extraction"],
    "validate": ["data-validation"],
    "verify": ["data-validation"],
    "validation": ["data-validation"],
    "analyze": ["data-analysis"],
    "research": ["web-search"],
    "query": ["web-search"],
    "search": ["web-search"],
    "synthesize": ["information-synthesis"],
    "report": ["information-synthesis"],
    "fix": ["error-recovery"],
    "plan": ["task-decomposition"],
    "decompose": ["task-decomposition"],
}

UNTESTED_SUCCESS_RATE = 100.0
DEFAULT_MAX_RETRY_DELAY_MS = 30_000.0


@dataclass(frozen=True)
class Assignment:
    """One task placed on one agent by a scheduling pass."""
    task_id: str
    agent_id: str
    attempt: int = 0


@dataclass
class Expiry:
    """A task failed by `check_timeouts`, and its retry if one was scheduled."""
    task: Task
    error: TaskTimeout
    agent_id: str | None
    retry: Task | None = None


TaskCallback = Callable[[Task, "str | None"], None]


class TaskScheduler:
    """
    Single-writer owner of the task table.

    Args:
        registry: The agent registry assignments are recorded in.
        global_settings: Returns the current GlobalSettings.
        backend: Persistence backend.
        on_change: Called with (task, detail) after every task mutation.
        clock: Time source (seconds).
        max_retry_delay_ms: Upper bound of the retry backoff.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        global_settings: Callable[[], GlobalSettings] | None = None,
        backend: StateBackend | None = None,
        on_change: TaskCallback | None = None,
        clock: Callable[[], float] = time.time,
        max_retry_delay_ms: float = DEFAULT_MAX_RETRY_DELAY_MS,
    ) -> None:
        self._registry = registry
        self._global_settings = global_settings or GlobalSettings
        self._backend = backend or InMemoryBackend()
        self._on_change = on_change
        self._clock = clock
        self._max_retry_delay_ms = max_retry_delay_ms
        self._tasks: dict[str, Task] = {}
        self._seq: dict[str, int] = {}
        self._counter = itertools.count()
        self._unassignable_reported: set[str] = set()
        self._lock = threading.RLock()

    def set_on_change(self, callback: TaskCallback | None) -> None:
        self._on_change = callback

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, task: Task) -> str:
        """
        Add a task to the graph as `pending`.

        Raises:
            InvalidDependency: If a dependency id is unknown (or the task itself).
            QueueLimitExceeded: If the open-task limit is reached.
            InvariantViolation: If the task id is already taken.
        """
        task = task.model_copy(deep=True)
        with self._lock:
            if task.id in self._tasks:
                raise InvariantViolation(f"Task id '{task.id}' is already in use.")
            missing = [d for d in task.dependencies if d == task.id or d not in self._tasks]
            if missing:
                raise InvalidDependency(task.id, missing)
            limit = self._global_settings().task_queue_limit
            if self._open_count() >= limit:
                raise QueueLimitExceeded(limit)

            if not task.required_capabilities:
                task.required_capabilities = list(TASK_TYPE_CAPABILITIES.get(task.type, []))
            task.status = TaskStatus.PENDING
            task.assigned_agent = None
            task.created_at = self._clock()
            self._store(task)
            snapshot = task.model_copy(deep=True)

        logger.info(
            "Task submitted: %s (%s, priority=%d, deps=%s)",
            task.id, task.type, task.priority, task.dependencies or "-",
        )
        self._notify([(snapshot, None)])
        return task.id

    def _store(self, task: Task) -> None:
        if task.id not in self._seq:
            self._seq[task.id] = next(self._counter)
        self._tasks[task.id] = task
        self._backend.save(TASKS, task.id, task)

    def _open_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.terminal)

    # ------------------------------------------------------------------
    # Scheduling pass
    # ------------------------------------------------------------------

    def tick(self, now: float | None = None) -> list[Assignment]:
        """
        Run one scheduling pass.

        Returns:
            The assignments made, in the order they were made.
        """
        now = self._clock() if now is None else now
        if not self._global_settings().enable_all_agents:
            logger.debug("Scheduling disabled (enable_all_agents=False)")
            return []

        assignments: list[Assignment] = []
        changed: list[tuple[Task, str | None]] = []
        with self._lock:
            ready = [t for t in self._tasks.values() if self._is_ready(t, now)]
            ready.sort(key=lambda t: (-t.priority, t.created_at, self._seq[t.id]))
            if not ready:
                return []
            agents = self._registry.list_agents()

            for task in ready:
                eligible = [
                    (index, agent) for index, agent in enumerate(agents)
                    if self._can_take(agent, task)
                ]
                if not eligible:
                    if task.id not in self._unassignable_reported:
                        self._unassignable_reported.add(task.id)
                        mismatch = CapabilityMismatch(task.id, task.required_capabilities)
                        logger.info("%s", mismatch)
                        changed.append((task.model_copy(deep=True), str(mismatch)))
                    continue

                index, agent = min(eligible, key=lambda pair: _rank(pair[1], task, pair[0]))
                self._guard_assignment(task, agent)
                agents[index] = self._registry.assign(agent.id, task.id)

                task.status = TaskStatus.IN_PROGRESS
                task.assigned_agent = agent.id
                task.started_at = now
                self._unassignable_reported.discard(task.id)
                self._store(task)
                assignments.append(Assignment(task.id, agent.id, task.attempt))
                changed.append((task.model_copy(deep=True), None))
                logger.info("Assigned %s (%s) -> %s", task.id, task.type, agent.id)

        self._notify(changed)
        return assignments

    def _is_ready(self, task: Task, now: float) -> bool:
        if task.status != TaskStatus.PENDING:
            return False
        if task.not_before is not None and task.not_before > now:
            return False
        return all(self._latest(dep).status == TaskStatus.COMPLETED for dep in task.dependencies)

    def _can_take(self, agent: Agent, task: Task) -> bool:
        if not self._registry.is_available(agent):
            return False
        if task.type in agent.settings.specialization.avoid_tasks:
            return False
        return set(task.required_capabilities) <= set(agent.capabilities)

    def _guard_assignment(self, task: Task, agent: Agent) -> None:
        if task.assigned_agent is not None or task.status != TaskStatus.PENDING:
            raise InvariantViolation(
                f"Task '{task.id}' is already held by '{task.assigned_agent}' ({task.status.value})."
            )
        unmet = [d for d in task.dependencies if self._latest(d).status != TaskStatus.COMPLETED]
        if unmet:
            raise InvariantViolation(f"Task '{task.id}' has unmet dependencies: {', '.join(unmet)}")
        held = sum(
            1 for t in self._tasks.values()
            if t.status == TaskStatus.IN_PROGRESS and t.assigned_agent == agent.id
        )
        if held >= agent.settings.performance.max_concurrent_tasks:
            raise InvariantViolation(
                f"Agent '{agent.id}' already holds {held} task(s) "
                f"(max {agent.settings.performance.max_concurrent_tasks})."
            )

    def _latest(self, task_id: str) -> Task:
        """Follow the retry chain of a task to its most recent attempt."""
        task = self._tasks[task_id]
        while task.superseded_by is not None:
            task = self._tasks[task.superseded_by]
        return task

    # ------------------------------------------------------------------
    # Completion reporting
    # ------------------------------------------------------------------

    def complete(self, task_id: str, result: Any = None, now: float | None = None) -> Task:
        """
        Mark an in-progress task completed and free its agent.

        Raises:
            UnknownTask: If the task does not exist.
            InvariantViolation: If the task is not in progress.
        """
        now = self._clock() if now is None else now
        with self._lock:
            task = self._require_in_progress(task_id)
            task.status = TaskStatus.COMPLETED
            task.result = result
            task.completed_at = now
            self._store(task)
            agent_id = task.assigned_agent
            if agent_id in self._registry:
                self._registry.finish_task(agent_id, task.id, self._outcome(task, True, now))
            snapshot = task.model_copy(deep=True)

        logger.info("Task completed: %s by %s", task_id, agent_id)
        self._notify([(snapshot, None)])
        return snapshot

    def fail(self, task_id: str, error: str, now: float | None = None) -> list[Task]:
        """
        Permanently fail an in-progress task (agent-internal error).

        The agent moves to `error`; every pending task depending on this one
        fails too.

        Returns:
            The failed task followed by the dependents failed with it.
        """
        now = self._clock() if now is None else now
        with self._lock:
            task = self._require_in_progress(task_id)
            task.status = TaskStatus.FAILED
            task.error = error
            task.completed_at = now
            self._store(task)
            agent_id = task.assigned_agent
            if agent_id in self._registry:
                self._registry.finish_task(agent_id, task.id, self._outcome(task, False, now))
            failed = [task.model_copy(deep=True)] + self._propagate_failure(now)

        logger.warning("Task failed: %s by %s (%s)", task_id, agent_id, error)
        self._notify([(t, t.error) for t in failed])
        return failed

    def _require_in_progress(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTask(task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            raise InvariantViolation(f"Task '{task_id}' is {task.status.value}, not in-progress.")
        return task

    def _outcome(self, task: Task, success: bool, now: float) -> TaskOutcome:
        started = task.started_at if task.started_at is not None else now
        return TaskOutcome(success=success, duration_ms=max(now - started, 0.0) * 1000, task_type=task.type)

    def _propagate_failure(self, now: float) -> list[Task]:
        """Fail pending tasks whose dependency chain ended in a permanent failure."""
        failed: list[Task] = []
        progressed = True
        while progressed:
            progressed = False
            for task in self._tasks.values():
                if task.status != TaskStatus.PENDING:
                    continue
                dead = [d for d in task.dependencies if self._latest(d).status == TaskStatus.FAILED]
                if not dead:
                    continue
                task.status = TaskStatus.FAILED
                task.error = f"dependency failed: {', '.join(dead)}"
                task.completed_at = now
                self._store(task)
                failed.append(task.model_copy(deep=True))
                progressed = True
        for task in failed:
            logger.warning("Task %s failed: %s", task.id, task.error)
        return failed

    # ------------------------------------------------------------------
    # Timeouts & retries
    # ------------------------------------------------------------------

    def check_timeouts(self, now: float | None = None) -> list[Expiry]:
        """
        Fail in-progress tasks that outlived their agent's `task_timeout`.

        While `attempt < retry_attempts` a fresh pending retry is submitted with
        `not_before = now + min(retry_delay * 2**attempt, max_retry_delay)`;
        otherwise the task fails permanently (and its dependents with it).
        The agent returns to idle and the failure counts in its metrics.
        """
        now = self._clock() if now is None else now
        expiries: list[Expiry] = []
        changed: list[tuple[Task, str | None]] = []
        with self._lock:
            for task in list(self._tasks.values()):
                if task.status != TaskStatus.IN_PROGRESS or task.started_at is None:
                    continue
                perf = self._performance(task.assigned_agent)
                if now - task.started_at <= perf.task_timeout:
                    continue

                error = TaskTimeout(task.id, perf.task_timeout, task.attempt)
                agent_id = task.assigned_agent
                task.status = TaskStatus.FAILED
                task.error = str(error)
                task.completed_at = now
                expiry = Expiry(task=task, error=error, agent_id=agent_id)

                if task.attempt < perf.retry_attempts:
                    delay_ms = min(perf.retry_delay * 2 ** task.attempt, self._max_retry_delay_ms)
                    retry = Task(
                        type=task.type,
                        description=task.description,
                        priority=task.priority,
                        dependencies=list(task.dependencies),
                        required_capabilities=list(task.required_capabilities),
                        context=dict(task.context),
                        created_at=now,
                        attempt=task.attempt + 1,
                        retry_of=task.id,
                        not_before=now + delay_ms / 1000,
                    )
                    task.superseded_by = retry.id
                    self._store(retry)
                    expiry.retry = retry.model_copy(deep=True)
                    logger.warning("%s; retry %s in %.0fms", error, retry.id, delay_ms)
                else:
                    logger.warning("%s; retries exhausted", error)
                self._store(task)

                if agent_id is not None:
                    self._registry.release_task(agent_id, task.id, self._outcome(task, False, now))
                expiry.task = task.model_copy(deep=True)
                expiries.append(expiry)
                changed.append((expiry.task, f"timeout: {error}"))
                if expiry.retry is not None:
                    changed.append((expiry.retry, None))

            if expiries:
                changed.extend((t, t.error) for t in self._propagate_failure(now))

        self._notify(changed)
        return expiries

    def _performance(self, agent_id: str | None) -> PerformanceSettings:
        if agent_id is not None and agent_id in self._registry:
            return self._registry.settings_for(agent_id).performance
        return PerformanceSettings()

    # ------------------------------------------------------------------
    # Requeue (pause / reset)
    # ------------------------------------------------------------------

    def requeue(self, task_id: str) -> Task:
        """Return an in-progress task to `pending` and clear its assignment."""
        with self._lock:
            task = self._require_in_progress(task_id)
            agent_id = task.assigned_agent
            task.status = TaskStatus.PENDING
            task.assigned_agent = None
            task.started_at = None
            self._store(task)
            if agent_id is not None:
                self._registry.release_task(agent_id, task.id)
            snapshot = task.model_copy(deep=True)

        logger.info("Task %s returned to pending (was on %s)", task_id, agent_id)
        self._notify([(snapshot, None)])
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise UnknownTask(task_id)
            return task.model_copy(deep=True)

    def latest(self, task_id: str) -> Task:
        """The most recent attempt of a task (itself when never retried)."""
        with self._lock:
            if task_id not in self._tasks:
                raise UnknownTask(task_id)
            return self._latest(task_id).model_copy(deep=True)

    def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        """Tasks in submission order, optionally filtered by status."""
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: self._seq[t.id])
            return [t.model_copy(deep=True) for t in tasks if status is None or t.status == status]

    def counts(self) -> dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in TaskStatus}
            for t in self._tasks.values():
                counts[t.status.value] += 1
            return counts

    def open_count(self) -> int:
        with self._lock:
            return self._open_count()

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def check_invariants(self) -> list[str]:
        """Return a description of every violated task-graph invariant (empty when sound)."""
        problems: list[str] = []
        with self._lock:
            held: dict[str, int] = {}
            for task in self._tasks.values():
                if task.status != TaskStatus.IN_PROGRESS:
                    continue
                if task.assigned_agent is None:
                    problems.append(f"{task.id} is in-progress without an agent")
                    continue
                held[task.assigned_agent] = held.get(task.assigned_agent, 0) + 1
                unmet = [d for d in task.dependencies if self._latest(d).status != TaskStatus.COMPLETED]
                if unmet:
                    problems.append(f"{task.id} is in-progress with unmet dependencies {unmet}")
            for agent_id, count in held.items():
                if agent_id not in self._registry:
                    continue
                bound = self._registry.settings_for(agent_id).performance.max_concurrent_tasks
                if count > bound:
                    problems.append(f"{agent_id} holds {count} tasks (max {bound})")
        return problems

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def load(self, tasks: list[Task]) -> None:
        """
        Restore persisted tasks (no events are emitted). Tasks that were in
        progress when the state was saved go back to pending.
        """
        with self._lock:
            for task in sorted(tasks, key=lambda t: t.created_at):
                task = task.model_copy(deep=True)
                if task.status == TaskStatus.IN_PROGRESS:
                    task.status = TaskStatus.PENDING
                    task.assigned_agent = None
                    task.started_at = None
                self._store(task)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(self, changed: list[tuple[Task, str | None]]) -> None:
        if self._on_change is None:
            return
        for task, detail in changed:
            self._on_change(task, detail)


def _rank(agent: Agent, task: Task, index: int) -> tuple:
    """Sort key: best success rate first, then lowest load, preferred task, registration order."""
    rate = agent.metrics.rate_for(task.type)
    if rate is None:
        rate = UNTESTED_SUCCESS_RATE
    preferred = task.type in agent.settings.specialization.preferred_tasks
    return (-rate, agent.load, 0 if preferred else 1, index)
