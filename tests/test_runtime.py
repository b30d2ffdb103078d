"""Tests for the asyncio Runtime driving handlers through the Orchestrator."""

import asyncio

from mao.agents.builtins import create_builtin_handlers
from mao.agents.handlers import HandlerTable, handler
from mao.core.models import (
    AgentSettings,
    AgentStatus,
    AgentType,
    ConsensusSettings,
    ConsensusStatus,
    MessageType,
    PerformanceSettings,
    TaskStatus,
)
from mao.core.orchestrator import Orchestrator
from mao.core.runtime import Runtime

TICK = 0.01


class RuntimeTestBase:
    def setup_method(self) -> None:
        self.orch = Orchestrator()

    def runtime(self, *handlers) -> Runtime:
        return Runtime(self.orch, HandlerTable(list(handlers)), tick_interval=TICK)


class TestBuiltinChain(RuntimeTestBase):
    def test_expanded_plan_runs_to_completion(self) -> None:
        self.orch.register_default_roster()
        runtime = Runtime(self.orch, HandlerTable(create_builtin_handlers()), tick_interval=TICK)
        plan_id = self.orch.submit_task(
            "plan", "Collect the pricing table with web-scraping", priority=5, context={"expand": True},
        )

        assert asyncio.run(runtime.run_until_idle(timeout=10))

        tasks = self.orch.tasks()
        assert len(tasks) == 6
        assert all(t.status == TaskStatus.COMPLETED for t in tasks)
        plan = self.orch.scheduler.get(plan_id)
        assert plan.result["strategy"] == "web-scraping"
        steps = [self.orch.scheduler.get(t) for t in plan.result["submitted"]]
        assert [s.type for s in steps] == ["navigate", "wait", "extract", "validate", "store"]
        for earlier, later in zip(steps, steps[1:]):
            assert earlier.completed_at <= later.started_at
        assert all(a.status == AgentStatus.IDLE for a in self.orch.agents())
        assert any(m.content.get("event") == "plan-ready" for m in self.orch.messages())
        assert runtime.active_workers == 0
        assert not runtime.running

    def test_form_plan_submits_through_executor_vote(self) -> None:
        self.orch.register_default_roster()
        executor = next(a for a in self.orch.agents() if a.type == AgentType.EXECUTOR)
        settings = executor.settings.model_copy(deep=True)
        settings.consensus.auto_approve = ["submit"]
        self.orch.save_settings({executor.id: settings})
        runtime = Runtime(self.orch, HandlerTable(create_builtin_handlers()), tick_interval=TICK)
        plan_id = self.orch.submit_task(
            "plan", "Sign up through form-automation", priority=5, context={"expand": True},
        )

        assert asyncio.run(runtime.run_until_idle(timeout=10))

        plan = self.orch.scheduler.get(plan_id)
        steps = [self.orch.scheduler.get(t) for t in plan.result["submitted"]]
        (submit,) = [s for s in steps if s.type == "submit"]
        assert submit.status == TaskStatus.COMPLETED
        assert submit.assigned_agent == executor.id
        (request,) = self.orch.consensus_requests()
        assert request.action == "submit"
        assert request.proposer == executor.id
        assert request.status == ConsensusStatus.APPROVED


class TestWorkerOutcomes(RuntimeTestBase):
    def setup_method(self) -> None:
        super().setup_method()
        self.orch.register_agent(AgentType.EXECUTOR, agent_id="e")

    def test_handler_exception_fails_task_and_agent(self) -> None:
        @handler(AgentType.EXECUTOR, "Always breaks.")
        async def broken(task, ctx):
            raise RuntimeError("element not found")

        task_id = self.orch.submit_task("navigate")
        assert asyncio.run(self.runtime(broken).run_until_idle(timeout=5))
        task = self.orch.scheduler.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == "RuntimeError: element not found"
        assert self.orch.registry.get("e").status == AgentStatus.ERROR

    def test_missing_handler_fails_task(self) -> None:
        task_id = self.orch.submit_task("navigate")
        assert asyncio.run(self.runtime().run_until_idle(timeout=5))
        assert self.orch.scheduler.get(task_id).error.startswith("LookupError")

    def test_validator_rejects_result(self) -> None:
        @handler(AgentType.EXECUTOR, "Returns nothing useful.")
        async def empty(task, ctx):
            return None

        @empty.validator
        def _needs_result(task, result):
            return result is not None

        task_id = self.orch.submit_task("navigate")
        assert asyncio.run(self.runtime(empty).run_until_idle(timeout=5))
        task = self.orch.scheduler.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error.startswith("ValueError")

    def test_context_writes_are_attributed_to_the_agent(self) -> None:
        @handler(AgentType.EXECUTOR, "Records what it did.")
        async def recorder(task, ctx):
            ctx.remember("selector", "buy", "#buy")
            ctx.send("broadcast", {"done": task.id})
            return {"seen": [e.key for e in ctx.recall(category="selector")]}

        task_id = self.orch.submit_task("navigate")
        assert asyncio.run(self.runtime(recorder).run_until_idle(timeout=5))
        assert self.orch.scheduler.get(task_id).result == {"seen": ["buy"]}
        (message,) = self.orch.messages()
        assert message.from_agent == "e"
        assert message.type == MessageType.NOTIFICATION
        assert self.orch.knowledge_entries()[0].agent_id == "e"

    def test_timeout_cancels_worker(self) -> None:
        settings = AgentSettings(performance=PerformanceSettings(task_timeout=0.05, retry_attempts=0))
        self.orch.save_settings({"e": settings})
        cancelled = []

        @handler(AgentType.EXECUTOR, "Hangs.")
        async def hangs(task, ctx):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(task.id)
                raise

        task_id = self.orch.submit_task("navigate")
        assert asyncio.run(self.runtime(hangs).run_until_idle(timeout=5))
        task = self.orch.scheduler.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert "exceeded" in task.error
        assert cancelled == [task_id]
        assert self.orch.registry.get("e").status == AgentStatus.IDLE

    def test_run_until_idle_times_out(self) -> None:
        @handler(AgentType.EXECUTOR, "Hangs.")
        async def hangs(task, ctx):
            await asyncio.sleep(10)

        self.orch.submit_task("navigate")
        assert not asyncio.run(self.runtime(hangs).run_until_idle(timeout=0.1))


class TestPause(RuntimeTestBase):
    def test_pause_cancels_the_worker(self) -> None:
        self.orch.register_agent(AgentType.EXECUTOR, agent_id="e")
        cancelled = []

        @handler(AgentType.EXECUTOR, "Hangs until cancelled.")
        async def hangs(task, ctx):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(task.id)
                raise

        task_id = self.orch.submit_task("navigate")
        runtime = self.runtime(hangs)

        async def scenario() -> None:
            run = asyncio.create_task(runtime.run())
            for _ in range(200):
                if runtime.active_workers:
                    break
                await asyncio.sleep(TICK)
            assert runtime.active_workers == 1
            self.orch.pause_agent("e")
            await asyncio.sleep(0.1)
            runtime.stop()
            await run

        asyncio.run(scenario())
        assert cancelled == [task_id]
        task = self.orch.scheduler.get(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.assigned_agent is None
        agent = self.orch.registry.get("e")
        assert agent.paused
        assert agent.status == AgentStatus.IDLE


class TestConsensusWait(RuntimeTestBase):
    def setup_method(self) -> None:
        super().setup_method()
        self.orch.register_agent(AgentType.EXECUTOR, agent_id="e")
        self.orch.register_agent(AgentType.CRITIC, agent_id="c")
        self.statuses = []

        @handler(AgentType.EXECUTOR, "Asks before submitting.")
        async def asks(task, ctx):
            approved = await ctx.request_consensus("submit", "Submit the form", **task.context)
            self.statuses.append(self.orch.registry.get("e").status)
            return {"approved": approved}

        self.handler = asks

    async def _vote_all(self, approve: bool) -> None:
        for _ in range(500):
            pending = self.orch.consensus_requests(ConsensusStatus.PENDING)
            if pending:
                request = pending[0]
                for agent_id, vote in request.votes.items():
                    if vote is None:
                        self.orch.vote(request.id, agent_id, approve)
                return
            await asyncio.sleep(TICK)

    def _run(self, approve: bool | None, **request_args) -> dict:
        task_id = self.orch.submit_task("navigate", context=request_args)
        runtime = self.runtime(self.handler)

        async def scenario() -> bool:
            if approve is None:
                return await runtime.run_until_idle(timeout=5)
            idle, _ = await asyncio.gather(runtime.run_until_idle(timeout=5), self._vote_all(approve))
            return idle

        assert asyncio.run(scenario())
        return self.orch.scheduler.get(task_id).result

    def test_approved(self) -> None:
        assert self._run(True, required_votes=2) == {"approved": True}
        assert self.statuses == [AgentStatus.WORKING]
        assert self.orch.consensus_requests()[0].status == ConsensusStatus.APPROVED

    def test_rejected(self) -> None:
        assert self._run(False, required_votes=2) == {"approved": False}
        assert self.orch.consensus_requests()[0].status == ConsensusStatus.REJECTED

    def test_expiry_counts_as_rejection(self) -> None:
        assert self._run(None, ttl=0.05) == {"approved": False}
        assert self.orch.consensus_requests()[0].status == ConsensusStatus.EXPIRED
        assert self.statuses == [AgentStatus.WORKING]

    def test_auto_approved_without_waiting(self) -> None:
        settings = AgentSettings(consensus=ConsensusSettings(auto_approve=["submit"]))
        self.orch.save_settings({"e": settings})
        assert self._run(None) == {"approved": True}
