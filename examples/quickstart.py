"""
MAO Quickstart Example — Your first orchestrated run.

This example demonstrates the core MAO workflow:
1. One agent of every type is registered with its default capabilities.
2. A planning task is submitted; the Planner expands it into a dependency chain.
3. The Runtime schedules each step onto the best available agent.
4. Results, messages and knowledge are inspected once everything is idle.

Usage:
    python examples/quickstart.py
"""

import asyncio

from mao import HandlerTable, Orchestrator, Runtime, create_builtin_handlers
from mao.utils.log import setup_logging


async def main() -> None:
    setup_logging("INFO")

    orch = Orchestrator()
    orch.register_default_roster()
    runtime = Runtime(orch, HandlerTable(create_builtin_handlers()), tick_interval=0.05)

    plan_id = orch.submit_task(
        "plan",
        "Collect the pricing table with web-scraping",
        priority=5,
        context={"expand": True},
    )

    idle = await runtime.run_until_idle(timeout=30)

    print(f"\nFinished: {idle}")
    plan = orch.scheduler.get(plan_id)
    print(f"Strategy: {plan.result['strategy']} ({len(plan.result['plan'])} steps)")

    print("\n--- Tasks ---")
    for task in orch.tasks():
        print(f"{task.id:<16} {task.type:<10} {task.status.value:<12} {task.assigned_agent or '-'}")

    print("\n--- Knowledge ---")
    for entry in orch.knowledge_entries(limit=5):
        print(f"{entry.category}/{entry.key}: confidence {entry.confidence:.0f}")

    print()
    print(orch.metrics.summary_text())


if __name__ == "__main__":
    asyncio.run(main())
