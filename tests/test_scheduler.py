"""Tests for the Task Scheduler."""

import random

import pytest

from mao.agents.registry import AgentRegistry
from mao.core.errors import (
    InvalidDependency,
    InvariantViolation,
    QueueLimitExceeded,
    UnknownTask,
)
from mao.core.models import (
    AgentSettings,
    AgentStatus,
    AgentType,
    GlobalSettings,
    PerformanceSettings,
    SpecializationSettings,
    Task,
    TaskOutcome,
    TaskStatus,
)
from mao.core.scheduler import TaskScheduler


class SchedulerTestBase:
    def setup_method(self) -> None:
        self.now = 1000.0
        self.global_settings = GlobalSettings()
        self.updates = []
        self.registry = AgentRegistry()
        self.scheduler = TaskScheduler(
            registry=self.registry,
            global_settings=lambda: self.global_settings,
            on_change=lambda task, detail: self.updates.append((task, detail)),
            clock=lambda: self.now,
        )

    def add_agent(self, agent_id: str, agent_type: AgentType = AgentType.EXECUTOR, **performance) -> str:
        settings = AgentSettings(performance=PerformanceSettings(**performance))
        return self.registry.register(agent_type, settings=settings, agent_id=agent_id)

    def submit(self, task_type: str = "navigate", **fields) -> str:
        return self.scheduler.submit(Task(type=task_type, **fields))


class TestSubmission(SchedulerTestBase):
    def test_submit_pending_with_default_capabilities(self) -> None:
        task_id = self.submit("navigate")
        task = self.scheduler.get(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.required_capabilities == ["navigation"]
        assert task.created_at == 1000.0
        assert self.updates[-1][0].id == task_id

    def test_explicit_capabilities_kept(self) -> None:
        task_id = self.submit("navigate", required_capabilities=["screenshot-capture"])
        assert self.scheduler.get(task_id).required_capabilities == ["screenshot-capture"]

    def test_unknown_dependency(self) -> None:
        with pytest.raises(InvalidDependency) as exc:
            self.submit(dependencies=["ghost"])
        assert exc.value.missing == ["ghost"]
        assert len(self.scheduler) == 0

    def test_self_dependency(self) -> None:
        with pytest.raises(InvalidDependency):
            self.submit(id="loop", dependencies=["loop"])

    def test_duplicate_id(self) -> None:
        self.submit(id="t1")
        with pytest.raises(InvariantViolation):
            self.submit(id="t1")

    def test_queue_limit(self) -> None:
        self.global_settings = GlobalSettings(task_queue_limit=2)
        self.submit()
        self.submit()
        with pytest.raises(QueueLimitExceeded):
            self.submit()

    def test_queue_limit_counts_open_tasks_only(self) -> None:
        self.global_settings = GlobalSettings(task_queue_limit=1)
        self.add_agent("e")
        task_id = self.submit()
        self.scheduler.tick()
        self.scheduler.complete(task_id)
        self.submit()
        assert self.scheduler.open_count() == 1


class TestTick(SchedulerTestBase):
    def test_scenario_assign_to_idle_capable_agent(self) -> None:
        self.add_agent("e")
        task_id = self.submit("navigate", priority=5)
        assignments = self.scheduler.tick()
        assert [(a.task_id, a.agent_id) for a in assignments] == [(task_id, "e")]
        task = self.scheduler.get(task_id)
        agent = self.registry.get("e")
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assigned_agent == "e"
        assert task.started_at == 1000.0
        assert agent.status == AgentStatus.THINKING
        assert agent.current_task == task_id

    def test_priority_then_fifo(self) -> None:
        self.add_agent("e")
        low = self.submit(priority=1)
        self.now += 1
        high_late = self.submit(priority=5)
        self.now += 1
        high_later = self.submit(priority=5)
        order = []
        for _ in range(3):
            (assignment,) = self.scheduler.tick()
            order.append(assignment.task_id)
            self.scheduler.complete(assignment.task_id)
        assert order == [high_late, high_later, low]

    def test_dependencies_gate_assignment(self) -> None:
        self.add_agent("e1")
        self.add_agent("e2")
        first = self.submit()
        second = self.submit(dependencies=[first])
        assert [a.task_id for a in self.scheduler.tick()] == [first]
        self.scheduler.complete(first)
        assert [a.task_id for a in self.scheduler.tick()] == [second]

    def test_capability_mismatch_stays_pending_and_reported_once(self) -> None:
        self.add_agent("e")
        task_id = self.submit("fly", required_capabilities=["flight"])
        self.updates.clear()
        assert self.scheduler.tick() == []
        assert self.scheduler.tick() == []
        assert self.scheduler.get(task_id).status == TaskStatus.PENDING
        details = [d for t, d in self.updates if t.id == task_id]
        assert len(details) == 1
        assert "flight" in details[0]

    def test_mismatch_assigned_once_capable_agent_joins(self) -> None:
        task_id = self.submit("research")
        assert self.scheduler.tick() == []
        self.add_agent("r", AgentType.RESEARCHER)
        assert [a.task_id for a in self.scheduler.tick()] == [task_id]

    def test_disabled_scheduling(self) -> None:
        self.add_agent("e")
        self.submit()
        self.global_settings = GlobalSettings(enable_all_agents=False)
        assert self.scheduler.tick() == []

    def test_best_success_rate_wins(self) -> None:
        self.add_agent("weak")
        self.add_agent("strong")
        self.registry.update_metrics("weak", TaskOutcome(success=False, task_type="navigate"))
        self.registry.update_metrics("strong", TaskOutcome(success=True, task_type="navigate"))
        self.submit("navigate")
        assert self.scheduler.tick()[0].agent_id == "strong"

    def test_untested_agent_ranks_as_perfect(self) -> None:
        self.add_agent("tested")
        self.add_agent("fresh")
        self.registry.update_metrics("tested", TaskOutcome(success=False))
        self.submit("navigate")
        assert self.scheduler.tick()[0].agent_id == "fresh"

    def test_preferred_task_breaks_ties(self) -> None:
        self.add_agent("plain")
        preferred = AgentSettings(specialization=SpecializationSettings(preferred_tasks=["navigate"]))
        self.registry.register(AgentType.EXECUTOR, settings=preferred, agent_id="fan")
        self.submit("navigate")
        assert self.scheduler.tick()[0].agent_id == "fan"

    def test_registration_order_breaks_remaining_ties(self) -> None:
        self.add_agent("first")
        self.add_agent("second")
        self.submit("navigate")
        assert self.scheduler.tick()[0].agent_id == "first"

    def test_avoided_task_type(self) -> None:
        avoid = AgentSettings(specialization=SpecializationSettings(avoid_tasks=["navigate"]))
        self.registry.register(AgentType.EXECUTOR, settings=avoid, agent_id="picky")
        self.submit("navigate")
        assert self.scheduler.tick() == []

    def test_concurrency_bound(self) -> None:
        self.add_agent("e", max_concurrent_tasks=2)
        for _ in range(4):
            self.submit("navigate")
        assert len(self.scheduler.tick()) == 2
        assert self.registry.get("e").load == 2
        assert self.scheduler.tick() == []
        assert self.scheduler.check_invariants() == []

    def test_paused_agent_skipped(self) -> None:
        self.add_agent("e")
        self.registry.pause("e")
        self.submit()
        assert self.scheduler.tick() == []


class TestCompletion(SchedulerTestBase):
    def setup_method(self) -> None:
        super().setup_method()
        self.add_agent("e")

    def test_complete(self) -> None:
        task_id = self.submit()
        self.scheduler.tick()
        self.now += 2
        task = self.scheduler.complete(task_id, {"ok": True})
        assert task.status == TaskStatus.COMPLETED
        assert task.result == {"ok": True}
        assert task.completed_at == 1002.0
        agent = self.registry.get("e")
        assert agent.status == AgentStatus.IDLE
        assert agent.metrics.tasks_completed == 1
        assert agent.metrics.average_time_ms == pytest.approx(2000.0)

    def test_complete_requires_in_progress(self) -> None:
        task_id = self.submit()
        with pytest.raises(InvariantViolation):
            self.scheduler.complete(task_id)
        with pytest.raises(UnknownTask):
            self.scheduler.complete("ghost")

    def test_fail_moves_agent_to_error_and_propagates(self) -> None:
        first = self.submit()
        second = self.submit(dependencies=[first])
        third = self.submit(dependencies=[second])
        self.scheduler.tick()
        failed = self.scheduler.fail(first, "element not found")
        assert [t.id for t in failed] == [first, second, third]
        assert self.scheduler.get(third).error.startswith("dependency failed")
        assert self.registry.get("e").status == AgentStatus.ERROR

    def test_requeue(self) -> None:
        task_id = self.submit()
        self.scheduler.tick()
        task = self.scheduler.requeue(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.assigned_agent is None
        assert self.registry.get("e").status == AgentStatus.IDLE
        assert self.scheduler.tick()[0].task_id == task_id

    def test_counts(self) -> None:
        self.submit()
        self.submit()
        self.scheduler.tick()
        counts = self.scheduler.counts()
        assert counts["pending"] == 1
        assert counts["in-progress"] == 1
        assert counts["completed"] == 0


class TestTimeouts(SchedulerTestBase):
    def setup_method(self) -> None:
        super().setup_method()
        self.add_agent("e", task_timeout=10, retry_attempts=2, retry_delay=1000)

    def test_scenario_retries_with_backoff_then_fails(self) -> None:
        original = self.submit()
        attempts = [original]
        delays = []
        for _ in range(2):
            assert self.scheduler.tick()[0].task_id == attempts[-1]
            self.now += 11
            (expiry,) = self.scheduler.check_timeouts()
            assert expiry.task.status == TaskStatus.FAILED
            assert expiry.retry is not None
            assert self.registry.get("e").status == AgentStatus.IDLE
            delays.append(expiry.retry.not_before - self.now)
            assert self.scheduler.tick() == []
            attempts.append(expiry.retry.id)
            self.now = expiry.retry.not_before

        assert delays == [1.0, 2.0]
        assert self.scheduler.tick()[0].task_id == attempts[-1]
        self.now += 11
        (expiry,) = self.scheduler.check_timeouts()
        assert expiry.retry is None
        assert expiry.task.attempt == 2
        assert [self.scheduler.get(t).status for t in attempts] == [TaskStatus.FAILED] * 3
        assert self.scheduler.latest(original).id == attempts[-1]
        assert self.registry.get("e").metrics.tasks_failed == 3

    def test_within_timeout_untouched(self) -> None:
        self.submit()
        self.scheduler.tick()
        self.now += 10
        assert self.scheduler.check_timeouts() == []

    def test_dependents_follow_the_retry_chain(self) -> None:
        first = self.submit()
        dependent = self.submit(dependencies=[first])
        self.scheduler.tick()
        self.now += 11
        (expiry,) = self.scheduler.check_timeouts()
        assert self.scheduler.get(dependent).status == TaskStatus.PENDING
        self.now = expiry.retry.not_before
        assert self.scheduler.tick()[0].task_id == expiry.retry.id
        self.scheduler.complete(expiry.retry.id)
        assert self.scheduler.tick()[0].task_id == dependent

    def test_timeout_detail_reported(self) -> None:
        self.submit()
        self.scheduler.tick()
        self.now += 11
        self.updates.clear()
        self.scheduler.check_timeouts()
        failed = [(t, d) for t, d in self.updates if t.status == TaskStatus.FAILED]
        assert failed[0][1].startswith("timeout")
        assert failed[0][0].superseded_by is not None

    def test_load_returns_in_progress_to_pending(self) -> None:
        task_id = self.submit()
        self.scheduler.tick()
        restored = TaskScheduler(registry=AgentRegistry(), clock=lambda: self.now)
        restored.load(self.scheduler.list_tasks())
        task = restored.get(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.assigned_agent is None


class TestDependencyProperty(SchedulerTestBase):
    """Random DAGs: nothing starts before its dependencies completed, no agent is over-assigned."""

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    def test_random_graphs(self, seed: int) -> None:
        rng = random.Random(seed)
        for i in range(3):
            self.add_agent(f"e{i}", max_concurrent_tasks=rng.randint(1, 3))
        ids: list[str] = []
        for i in range(40):
            deps = rng.sample(ids, k=min(len(ids), rng.randint(0, 3)))
            ids.append(self.submit("generic", id=f"t{i}", priority=rng.randint(1, 5), dependencies=deps))

        started: set[str] = set()
        for _ in range(500):
            for assignment in self.scheduler.tick():
                task = self.scheduler.get(assignment.task_id)
                for dep in task.dependencies:
                    assert self.scheduler.get(dep).status == TaskStatus.COMPLETED
                started.add(task.id)
            assert self.scheduler.check_invariants() == []
            for agent in self.registry.list_agents():
                assert agent.load <= agent.settings.performance.max_concurrent_tasks
            running = self.scheduler.list_tasks(TaskStatus.IN_PROGRESS)
            if not running:
                break
            for task in rng.sample(running, k=rng.randint(1, len(running))):
                self.scheduler.complete(task.id)

        assert started == set(ids)
        assert self.scheduler.counts()["completed"] == 40
