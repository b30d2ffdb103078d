"""
MAO CLI — Command-line interface for the Multi-Agent Orchestrator.

Usage:
    mao serve --port 8000
    mao demo "Scrape product prices with web-scraping"
    mao agents
    mao init
"""

from __future__ import annotations

import asyncio
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "in-progress": "yellow",
    "pending": "dim",
}


@click.group()
@click.version_option(package_name="multi-agent-orchestrator")
def main() -> None:
    """MAO — Multi-Agent Orchestrator: scheduling, messaging and consensus for cooperating agents."""
    pass


@main.command()
@click.option("--host", "-h", default=None, help="Bind address (default: from config, 127.0.0.1)")
@click.option("--port", "-p", default=None, type=int, help="Port (default: from config, 8000)")
@click.option("--config", "-c", "config_path", default=None, help="Path to a mao.yaml file")
@click.option("--backend", "-b", default=None, type=click.Choice(["memory", "redis"]), help="State backend")
@click.option("--restore", is_flag=True, help="Reload state from the backend before serving")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose (DEBUG) logging")
def serve(
    host: str | None,
    port: int | None,
    config_path: str | None,
    backend: str | None,
    restore: bool,
    verbose: bool,
) -> None:
    """Run the HTTP/WebSocket API with the built-in agent roster."""
    from mao.utils.config import MAOConfig
    from mao.utils.log import setup_logging

    config = MAOConfig.load(config_path)
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if backend:
        config.storage.backend = backend
    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging.level)

    from mao.agents.builtins import create_builtin_handlers
    from mao.agents.handlers import HandlerTable
    from mao.api.server import create_app
    from mao.core.orchestrator import Orchestrator
    from mao.core.runtime import Runtime

    orch = Orchestrator(config)
    if restore:
        counts = orch.restore()
        console.print(f"[dim]Restored: {counts}[/dim]")
    if not orch.agents():
        orch.register_default_roster()
    runtime = Runtime(orch, HandlerTable(create_builtin_handlers()))
    app = create_app(orch, runtime)

    console.print(Panel(
        f"Agents: {len(orch.agents())} | backend={config.storage.backend}",
        title="[cyan]MAO Server[/cyan]",
        subtitle=f"http://{config.server.host}:{config.server.port}",
        border_style="cyan",
    ))

    import uvicorn
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_level="warning")


@main.command()
@click.argument("goal", default="Collect the pricing table with web-scraping")
@click.option("--timeout", "-t", default=30.0, help="Seconds to wait for the plan to finish (default: 30)")
@click.option("--approve/--reject", default=True, help="How the demo voters answer consensus requests")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose (DEBUG) logging")
def demo(goal: str, timeout: float, approve: bool, verbose: bool) -> None:
    """Plan GOAL with the planner, then run the resulting task chain."""
    from mao.agents.builtins import create_builtin_handlers
    from mao.agents.handlers import HandlerTable
    from mao.core.orchestrator import Orchestrator
    from mao.core.runtime import Runtime
    from mao.utils.config import MAOConfig
    from mao.utils.log import setup_logging

    config = MAOConfig()
    config.scheduler.tick_interval = 0.05
    setup_logging("DEBUG" if verbose else "WARNING")

    orch = Orchestrator(config)
    orch.register_default_roster()
    runtime = Runtime(orch, HandlerTable(create_builtin_handlers()))
    root = orch.submit_task("plan", goal, priority=5, context={"expand": True})

    console.print()
    console.print(Panel(f"[bold]{goal}[/bold]", title="[cyan]MAO Demo[/cyan]", subtitle=f"root task {root}",
                        border_style="cyan"))

    try:
        finished = asyncio.run(_run_demo(orch, runtime, timeout, approve))
    except KeyboardInterrupt:
        console.print("\n[yellow]Demo interrupted by user.[/yellow]")
        sys.exit(1)

    _display_tasks(orch)
    _display_agents(orch)
    console.print(orch.metrics.summary_text())
    if not finished:
        console.print(f"\n[red]Plan did not finish within {timeout:g}s.[/red]")
        sys.exit(1)


async def _run_demo(orch, runtime, timeout: float, approve: bool) -> bool:
    """Run the runtime while every agent answers open consensus requests."""
    from mao.core.errors import OrchestratorError
    from mao.core.models import ConsensusStatus

    async def voters() -> None:
        while True:
            for request in orch.consensus_requests(ConsensusStatus.PENDING):
                for agent_id, cast in request.votes.items():
                    if cast is None:
                        try:
                            orch.vote(request.id, agent_id, approve)
                        except OrchestratorError:
                            break
            await asyncio.sleep(0.05)

    voting = asyncio.create_task(voters())
    try:
        return await runtime.run_until_idle(timeout)
    finally:
        voting.cancel()


@main.command()
def agents() -> None:
    """List the agent types with their default capabilities and handlers."""
    from mao.agents.builtins import create_builtin_handlers
    from mao.agents.registry import DEFAULT_CAPABILITIES

    handlers = {h.agent_type: h for h in create_builtin_handlers()}

    table = Table(title="Agent Types", show_lines=True)
    table.add_column("Type", style="cyan", no_wrap=True)
    table.add_column("Handler", style="white")
    table.add_column("Capabilities", style="green")

    for agent_type, capabilities in DEFAULT_CAPABILITIES.items():
        h = handlers.get(agent_type)
        table.add_row(agent_type.value, h.description if h else "-", ", ".join(capabilities))

    console.print()
    console.print(table)
    console.print()


@main.command()
@click.option("--path", "-o", default="mao.yaml", help="Where to write the file (default: mao.yaml)")
def init(path: str) -> None:
    """Generate a sample mao.yaml configuration file."""
    sample_config = """# MAO Configuration

bus:
  # Messages kept in the bus history
  history_size: 100

scheduler:
  # Seconds between scheduling passes when nothing happens
  tick_interval: 0.5
  # Upper bound of the retry backoff (milliseconds)
  max_retry_delay_ms: 30000

consensus:
  # Seconds before an unresolved request expires
  default_ttl: 10

knowledge:
  # Confidence a new knowledge entry starts from (0-100)
  default_confidence: 50

orchestrator:
  # Hand permanently failed tasks to a fixer agent
  auto_recover: true
  event_history: 1000

storage:
  # State backend: "memory" (zero-dependency) or "redis" (persistent)
  backend: "memory"
  # Redis URL (only used when backend is "redis")
  # redis_url: "redis://localhost:6379/0"

server:
  host: "127.0.0.1"
  port: 8000

logging:
  # Log level: DEBUG, INFO, WARNING, ERROR
  level: "INFO"
"""
    with open(path, "w", encoding="utf-8") as f:
        f.write(sample_config)
    console.print(f"[green]Created {path} with default configuration.[/green]")


def _display_tasks(orch) -> None:
    table = Table(title="Tasks", show_lines=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Priority", justify="right")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Error", style="red")

    for task in sorted(orch.tasks(), key=lambda t: t.created_at):
        style = STATUS_STYLES.get(task.status.value, "white")
        table.add_row(
            task.id,
            task.type,
            str(task.priority),
            task.assigned_agent or "-",
            f"[{style}]{task.status.value}[/{style}]",
            task.error or "",
        )
    console.print(table)


def _display_agents(orch) -> None:
    table = Table(title="Agents", show_lines=True)
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Completed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Confidence", justify="right")

    for agent in orch.agents():
        m = agent.metrics
        table.add_row(
            agent.id,
            agent.status.value,
            str(m.tasks_completed),
            str(m.tasks_failed),
            f"{agent.confidence:.0f}",
        )
    console.print(table)
