"""
Built-in Agent Handlers for MAO.

One handler per agent type, usable as-is or as templates for custom ones.
None of them calls a model: planning, validation and recovery are table
driven so every run is reproducible.

- planner: decomposes a task with a named strategy (web-scraping,
  form-automation, research, or a generic fallback) and, when asked, submits
  the steps as a dependency chain.
- critic: scores data against the extraction / submission / research rules.
- executor: performs browser steps through an external action port; asks for
  consensus before sensitive actions such as submitting a form.
- researcher: searches through the action port, or the shared knowledge store
  when no port is configured.
- fixer: classifies an error, picks a recovery strategy and asks for consensus
  before high-severity fixes.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from mao.agents.handlers import AgentHandler, handler
from mao.core.models import AgentType, Task

if TYPE_CHECKING:
    from mao.core.runtime import TaskContext

logger = logging.getLogger("mao.agents.builtins")

# An external collaborator performing real-world actions: (action, params) -> result.
ActionPort = Callable[[str, dict[str, Any]], Awaitable[Any]]

SENSITIVE_ACTIONS = frozenset({"submit", "purchase", "delete", "send-email"})

PLANNING_STRATEGIES: dict[str, list[tuple[str, str]]] = {
    "web-scraping": [
        ("navigate", "Navigate to target URL"),
        ("wait", "Wait for page load"),
        ("extract", "Extract data from page"),
        ("validate", "Validate extracted data"),
        ("store", "Store results"),
    ],
    "form-automation": [
        ("navigate", "Navigate to form page"),
        ("identify", "Identify form fields"),
        ("fill", "Fill form fields"),
        ("validate", "Validate input"),
        ("submit", "Submit form"),
        ("verify", "Verify submission"),
    ],
    "research": [
        ("query", "Formulate search queries"),
        ("search", "Execute searches"),
        ("analyze", "Analyze results"),
        ("synthesize", "Synthesize information"),
        ("report", "Generate report"),
    ],
}

GENERIC_PLAN = [
    ("analyze", "Analyze task requirements"),
    ("execute", "Execute main task"),
    ("verify", "Verify results"),
]

# Step type -> agent type expected to run it. Every step a strategy can emit is
# listed; the scheduler routes it there through the capabilities it requires.
STEP_AGENTS: dict[str, AgentType] = {
    "navigate": AgentType.EXECUTOR,
    "wait": AgentType.EXECUTOR,
    "identify": AgentType.EXECUTOR,
    "fill": AgentType.EXECUTOR,
    "submit": AgentType.EXECUTOR,
    "extract": AgentType.EXECUTOR,
    "store": AgentType.EXECUTOR,
    "click": AgentType.EXECUTOR,
    "execute": AgentType.EXECUTOR,
    "validate": AgentType.CRITIC,
    "verify": AgentType.CRITIC,
    "query": AgentType.RESEARCHER,
    "search": AgentType.RESEARCHER,
    "analyze": AgentType.RESEARCHER,
    "synthesize": AgentType.RESEARCHER,
    "report": AgentType.RESEARCHER,
    "research": AgentType.RESEARCHER,
    "fix": AgentType.FIXER,
}

ERROR_PATTERNS: dict[str, re.Pattern[str]] = {
    "timeout": re.compile(r"timeout|timed out|took too long|exceeded", re.I),
    "not-found": re.compile(r"not found|cannot find|no such element", re.I),
    "network": re.compile(r"network|connection|fetch failed", re.I),
    "permission": re.compile(r"permission|denied|unauthorized|forbidden|not approved", re.I),
}

FIX_STRATEGIES: dict[str, dict[str, Any]] = {
    "timeout": {
        "strategy": "retry-with-timeout", "action": "Increase timeout and retry",
        "params": {"timeout": 30000},
    },
    "not-found": {
        "strategy": "wait-and-retry", "action": "Wait for element and retry",
        "params": {"wait": 5000, "retries": 3},
    },
    "network": {
        "strategy": "retry-with-backoff", "action": "Retry with exponential backoff",
        "params": {"initial_delay": 1000, "max_retries": 5},
    },
    "permission": {
        "strategy": "alternative-approach", "action": "Try alternative method",
        "params": {"use_alternative": True},
    },
}

SEVERITY = {"timeout": "low", "not-found": "medium", "network": "medium", "permission": "high"}


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def select_strategy(task: Task) -> tuple[str, list[tuple[str, str]]]:
    """Pick the first strategy whose name appears in the task type or description."""
    description = task.description.lower()
    for name, steps in PLANNING_STRATEGIES.items():
        if name in task.type or name in description:
            return name, steps
    return "generic", GENERIC_PLAN


def assess_complexity(task: Task) -> int:
    """Rough 1–10 complexity score from the task's shape."""
    complexity = 1
    words = task.description.lower().split()
    if "and" in words or "then" in words:
        complexity += 2
    if task.type in ("scraping", "extraction"):
        complexity += 1
    if task.type in ("automation", "workflow"):
        complexity += 2
    if task.type in ("research", "analysis"):
        complexity += 3
    return min(complexity, 10)


def build_plan(task: Task) -> dict[str, Any]:
    strategy, steps = select_strategy(task)
    complexity = assess_complexity(task)
    plan = [
        {
            "type": step_type,
            "description": description,
            # Earlier steps first; complex plans get a higher base priority.
            "priority": min(complexity, 5) + len(steps) - index,
        }
        for index, (step_type, description) in enumerate(steps)
    ]
    required = sorted({STEP_AGENTS[s["type"]].value for s in plan if s["type"] in STEP_AGENTS})
    return {
        "strategy": strategy,
        "complexity": complexity,
        "plan": plan,
        "estimated_time_ms": len(plan) * 1000 * complexity,
        "required_agents": required,
    }


# ---------------------------------------------------------------------------
# Validation rules
# ---------------------------------------------------------------------------

def _score(checks: dict[str, bool]) -> float:
    return sum(1 for c in checks.values() if c) / len(checks)


def validate_extraction(data: Any) -> dict[str, Any]:
    data = data if isinstance(data, dict) else {}
    checks = {
        "has_data": bool(data.get("data")),
        "has_source": bool(data.get("source")),
        "has_timestamp": data.get("timestamp") is not None,
    }
    return {"valid": checks["has_data"], "checks": checks, "score": _score(checks)}


def validate_submission(result: Any) -> dict[str, Any]:
    result = result if isinstance(result, dict) else {}
    checks = {
        "submitted": result.get("success") is True,
        "confirmation": bool(result.get("confirmation_id")),
        "no_errors": not result.get("error"),
    }
    return {"valid": checks["submitted"], "checks": checks, "score": 1.0 if checks["submitted"] else 0.0}


def validate_research(data: Any) -> dict[str, Any]:
    data = data if isinstance(data, dict) else {}
    checks = {
        "has_sources": bool(data.get("sources")),
        "has_conclusions": bool(data.get("conclusions")),
        "sufficient_data": len(data.get("data_points") or []) >= 3,
    }
    return {"valid": sum(checks.values()) >= 2, "checks": checks, "score": _score(checks)}


VALIDATION_RULES: dict[str, Callable[[Any], dict[str, Any]]] = {
    "extraction": validate_extraction,
    "submission": validate_submission,
    "research": validate_research,
}


def grade(score: float) -> str:
    for threshold, letter in ((0.9, "A"), (0.8, "B"), (0.7, "C"), (0.6, "D")):
        if score >= threshold:
            return letter
    return "F"


# ---------------------------------------------------------------------------
# Error analysis
# ---------------------------------------------------------------------------

def classify_error(message: str) -> str:
    for error_type, pattern in ERROR_PATTERNS.items():
        if pattern.search(message):
            return error_type
    return "unknown"


def plan_fix(message: str) -> dict[str, Any]:
    error_type = classify_error(message)
    severity = SEVERITY.get(error_type, "medium")
    fix = FIX_STRATEGIES.get(error_type, {"strategy": "retry", "action": "Simple retry", "params": {}})
    return {
        "error_type": error_type,
        "severity": severity,
        "recoverable": severity != "critical",
        **fix,
    }


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def create_builtin_handlers(action_port: ActionPort | None = None) -> list[AgentHandler]:
    """
    Create the built-in handler for every agent type.

    Args:
        action_port: Optional external collaborator used by the executor and
            researcher. Without one the executor reports the step as simulated
            and the researcher searches the shared knowledge store.

    Returns:
        A list of AgentHandler instances ready to be registered.
    """

    # ------------------------------------------------------------------
    # Planner
    # ------------------------------------------------------------------
    @handler(AgentType.PLANNER, "Decomposes a task into ordered steps using a named planning strategy.")
    async def planner(task: Task, ctx: "TaskContext") -> dict[str, Any]:
        result = build_plan(task)
        if task.context.get("expand"):
            previous: list[str] = []
            submitted = []
            for step in result["plan"]:
                step_id = ctx.submit(
                    step["type"], step["description"], priority=step["priority"],
                    dependencies=previous, context={"parent_task": task.id},
                )
                submitted.append(step_id)
                previous = [step_id]
            result["submitted"] = submitted
        ctx.remember("strategy", result["strategy"], {"steps": len(result["plan"])}, 1.0, tags=["plan"])
        ctx.send("broadcast", {"event": "plan-ready", "task": task.id, "strategy": result["strategy"]})
        return result

    @planner.validator
    def _validate_plan(task: Task, result: Any) -> bool:
        return isinstance(result, dict) and bool(result.get("plan"))

    # ------------------------------------------------------------------
    # Critic
    # ------------------------------------------------------------------
    @handler(AgentType.CRITIC, "Validates task results against extraction, submission and research rules.")
    async def critic(task: Task, ctx: "TaskContext") -> dict[str, Any]:
        kind = task.context.get("kind", "extraction")
        rule = VALIDATION_RULES.get(kind, validate_extraction)
        verdict = rule(task.context.get("data"))
        verdict["kind"] = kind
        verdict["grade"] = grade(verdict["score"])
        ctx.send("broadcast", {"event": "validation", "task": task.id, "valid": verdict["valid"]})
        return verdict

    @critic.validator
    def _validate_verdict(task: Task, result: Any) -> bool:
        return isinstance(result, dict) and "valid" in result

    # ------------------------------------------------------------------
    # Executor
    # ------------------------------------------------------------------
    @handler(AgentType.EXECUTOR, "Performs browser steps (navigate, click, fill, extract, submit).")
    async def executor(task: Task, ctx: "TaskContext") -> dict[str, Any]:
        if task.type in SENSITIVE_ACTIONS:
            approved = await ctx.request_consensus(
                task.type, f"Execute '{task.type}': {task.description}", context=task.context,
            )
            if not approved:
                raise PermissionError(f"Action '{task.type}' was not approved by consensus")
        if action_port is not None:
            outcome = await action_port(task.type, dict(task.context))
        else:
            outcome = {"simulated": True}
        ctx.remember("execution", task.type, {"params": sorted(task.context)}, 1.0, tags=[task.type])
        return {"action": task.type, "outcome": outcome}

    @executor.validator
    def _validate_execution(task: Task, result: Any) -> bool:
        return isinstance(result, dict) and result.get("outcome") is not None

    # ------------------------------------------------------------------
    # Researcher
    # ------------------------------------------------------------------
    @handler(AgentType.RESEARCHER, "Gathers and synthesizes information on the task's subject.")
    async def researcher(task: Task, ctx: "TaskContext") -> dict[str, Any]:
        query = task.context.get("query", task.description)
        if action_port is not None:
            sources = list(await action_port("search", {"query": query}) or [])
        else:
            sources = [
                {"key": e.key, "category": e.category, "confidence": e.confidence}
                for e in ctx.recall(text=query, limit=10)
            ]
        conclusions = [f"Based on {len(sources)} sources, the research is complete"]
        ctx.remember("research", query, {"sources": len(sources)}, 1.0 if sources else 0.0, tags=["research"])
        return {"query": query, "sources": sources, "conclusions": conclusions, "data_points": sources}

    # ------------------------------------------------------------------
    # Fixer
    # ------------------------------------------------------------------
    @handler(AgentType.FIXER, "Diagnoses failures and chooses a recovery strategy.")
    async def fixer(task: Task, ctx: "TaskContext") -> dict[str, Any]:
        error = str(task.context.get("error", ""))
        fix = plan_fix(error)
        if fix["severity"] == "high":
            approved = await ctx.request_consensus(
                fix["strategy"], f"Apply '{fix['action']}' after: {error[:80]}",
                context={"failed_task": task.context.get("failed_task")},
            )
            fix["approved"] = approved
            if not approved:
                fix["recoverable"] = False
        ctx.remember("fix-strategy", fix["error_type"], fix["strategy"], 1.0 if fix["recoverable"] else 0.0)
        logger.info("Fix for %s: %s (%s)", task.context.get("failed_task", task.id), fix["strategy"], fix["severity"])
        return fix

    return [planner, critic, executor, researcher, fixer]

