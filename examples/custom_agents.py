"""
Custom Agent Example — How to bind your own handler to an agent type.

This example shows how to:
1. Define a handler with the @handler decorator and attach a result validator.
2. Replace the built-in executor with it, keeping the other built-ins.
3. Ask the other agents for consensus before a sensitive step, and vote from
   outside the runtime the way an operator (or the HTTP API) would.

Usage:
    python examples/custom_agents.py
"""

import asyncio
from typing import Any

from mao import HandlerTable, Orchestrator, Runtime, TaskContext, create_builtin_handlers, handler
from mao.core.models import AgentType, ConsensusStatus, Task
from mao.utils.log import setup_logging

FAKE_PAGES = {
    "/pricing": {"plans": ["free", "pro", "team"]},
    "/signup": {"fields": ["email", "password"]},
}


# ---------------------------------------------------------------------------
# Step 1: Define the handler
# ---------------------------------------------------------------------------

@handler(AgentType.EXECUTOR, "Reads pages from an in-memory site and submits forms after a vote.")
async def site_executor(task: Task, ctx: TaskContext) -> dict[str, Any]:
    url = task.context.get("url", "/")
    if task.type == "submit":
        approved = await ctx.request_consensus(
            "submit", f"Submit the form on {url}", context={"url": url}, required_votes=2, ttl=5,
        )
        if not approved:
            raise PermissionError(f"submission on {url} was not approved")
        return {"submitted": url}

    page = FAKE_PAGES.get(url)
    if page is None:
        raise LookupError(f"page not found: {url}")
    ctx.remember("page", url, page, 1.0, tags=["site"])
    return {"url": url, "data": page}


@site_executor.validator
def _has_payload(task: Task, result: Any) -> bool:
    return isinstance(result, dict) and ("data" in result or "submitted" in result)


# ---------------------------------------------------------------------------
# Step 2: Run it alongside the built-ins
# ---------------------------------------------------------------------------

async def approve_everything(orch: Orchestrator, stop: asyncio.Event) -> None:
    """Play the operator: approve every pending request on behalf of all voters."""
    while not stop.is_set():
        for request in orch.consensus_requests(ConsensusStatus.PENDING):
            for agent_id, vote in request.votes.items():
                if vote is None and not orch.consensus.get(request.id).resolved:
                    orch.vote(request.id, agent_id, True)
        await asyncio.sleep(0.05)


async def main() -> None:
    setup_logging("INFO")

    orch = Orchestrator()
    orch.register_default_roster()
    handlers = HandlerTable(create_builtin_handlers())
    handlers.register(site_executor, replace=True)
    runtime = Runtime(orch, handlers, tick_interval=0.05)

    read = orch.submit_task("navigate", "Read the pricing page", priority=4, context={"url": "/pricing"})
    orch.submit_task("submit", "Sign up", priority=3, dependencies=[read], context={"url": "/signup"})
    orch.submit_task("navigate", "Read a page that does not exist", context={"url": "/missing"})

    stop = asyncio.Event()
    voter = asyncio.create_task(approve_everything(orch, stop))
    await runtime.run_until_idle(timeout=30)
    stop.set()
    await voter

    print("\n--- Tasks ---")
    for task in orch.tasks():
        outcome = task.error if task.error else task.result
        print(f"{task.type:<10} {task.status.value:<10} {outcome}")

    print()
    print(orch.metrics.summary_text())


if __name__ == "__main__":
    asyncio.run(main())
