"""
MetricsCollector — Centralized metrics collection for MAO.

Aggregates the orchestrator's event stream into performance metrics:
- Per-agent-type task outcomes (assigned / completed / failed)
- Per-agent-type task latency (min/max/avg/p95)
- Retries, timeouts and tasks waiting for a capable agent
- Consensus outcomes (approved / rejected / expired, votes cast)
- Message counts by type, knowledge writes, agent transitions

The collector is subscribed to the EventHub by the Orchestrator; it can be
exported as a dict (the `/api/metrics` endpoint) or a text summary.
"""

from __future__ import annotations

import logging
import statistics
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from mao.core.events import Event, EventType

logger = logging.getLogger("mao.observability.metrics")


@dataclass
class TypeMetrics:
    """Aggregated task metrics for one agent type."""
    name: str
    assigned: int = 0
    completed: int = 0
    failed: int = 0
    latencies: list[float] = field(default_factory=list)

    @property
    def avg_latency(self) -> float:
        return statistics.mean(self.latencies) if self.latencies else 0.0

    @property
    def p95_latency(self) -> float:
        if len(self.latencies) < 2:
            return self.latencies[0] if self.latencies else 0.0
        sorted_lats = sorted(self.latencies)
        idx = int(len(sorted_lats) * 0.95)
        return sorted_lats[min(idx, len(sorted_lats) - 1)]

    @property
    def success_rate(self) -> float:
        finished = self.completed + self.failed
        if finished == 0:
            return 0.0
        return self.completed / finished

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "assigned": self.assigned,
            "completed": self.completed,
            "failed": self.failed,
            "avg_latency_s": round(self.avg_latency, 3),
            "p95_latency_s": round(self.p95_latency, 3),
            "min_latency_s": round(min(self.latencies), 3) if self.latencies else 0.0,
            "max_latency_s": round(max(self.latencies), 3) if self.latencies else 0.0,
            "success_rate": round(self.success_rate, 4),
        }


@dataclass
class ConsensusMetrics:
    """Aggregated metrics for consensus requests."""
    proposed: int = 0
    approved: int = 0
    rejected: int = 0
    expired: int = 0
    votes: int = 0

    @property
    def approval_rate(self) -> float:
        resolved = self.approved + self.rejected + self.expired
        if resolved == 0:
            return 0.0
        return self.approved / resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposed": self.proposed,
            "approved": self.approved,
            "rejected": self.rejected,
            "expired": self.expired,
            "votes": self.votes,
            "approval_rate": round(self.approval_rate, 4),
        }


class MetricsCollector:
    """
    Event-fed metrics collector.

    Usage:
        collector = MetricsCollector()
        hub.subscribe(collector.observe)
        report = collector.to_dict()
    """

    def __init__(self) -> None:
        self._started = time.time()
        self._types: dict[str, TypeMetrics] = {}
        self._agent_types: dict[str, str] = {}
        self._consensus = ConsensusMetrics()
        self._consensus_seen: dict[str, tuple[str, int]] = {}
        self._message_counts: dict[str, int] = {}
        self._retries = 0
        self._timeouts = 0
        self._unassignable = 0
        self._knowledge_writes = 0
        self._transitions = 0
        self._errors = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Event intake
    # ------------------------------------------------------------------

    def observe(self, event: Event) -> None:
        """Fold one event into the metrics."""
        with self._lock:
            match event.type:
                case EventType.AGENTS_LIST:
                    for agent in event.data.get("agents", []):
                        self._agent_types[agent["id"]] = agent["type"]
                case EventType.AGENT_UPDATE:
                    agent = event.data.get("agent", {})
                    self._agent_types[agent.get("id", "?")] = agent.get("type", "unknown")
                    if event.data.get("change"):
                        self._transitions += 1
                case EventType.TASK_UPDATE:
                    self._record_task(event.data.get("task", {}), event.data.get("detail"))
                case EventType.CONSENSUS_REQUEST:
                    self._record_consensus(event.data.get("request", {}))
                case EventType.MESSAGE:
                    kind = event.data.get("message", {}).get("type", "unknown")
                    self._message_counts[kind] = self._message_counts.get(kind, 0) + 1
                case EventType.KNOWLEDGE_UPDATE:
                    self._knowledge_writes += 1
                case EventType.ERROR:
                    self._errors += 1

    def _type_metrics(self, agent_id: str | None) -> TypeMetrics:
        name = self._agent_types.get(agent_id or "", "unassigned")
        if name not in self._types:
            self._types[name] = TypeMetrics(name=name)
        return self._types[name]

    def _record_task(self, task: dict[str, Any], detail: str | None) -> None:
        status = task.get("status")
        agent_id = task.get("assignedAgent")
        if status == "in-progress":
            self._type_metrics(agent_id).assigned += 1
        elif status == "completed":
            m = self._type_metrics(agent_id)
            m.completed += 1
            if task.get("startedAt") is not None and task.get("completedAt") is not None:
                m.latencies.append(task["completedAt"] - task["startedAt"])
        elif status == "failed":
            if agent_id is not None:
                self._type_metrics(agent_id).failed += 1
            if detail and detail.startswith("timeout"):
                self._timeouts += 1
            if task.get("supersededBy"):
                self._retries += 1
        elif status == "pending" and detail:
            self._unassignable += 1
        logger.debug("Task metric: %s %s", task.get("id"), status)

    def _record_consensus(self, request: dict[str, Any]) -> None:
        request_id = request.get("id", "?")
        status = request.get("status", "pending")
        cast = sum(1 for v in request.get("votes", {}).values() if v is not None)
        previous = self._consensus_seen.get(request_id)
        if previous is None:
            self._consensus.proposed += 1
            previous = ("pending", 0)
        previous_status, previous_cast = previous
        self._consensus.votes += max(cast - previous_cast, 0)
        if status != "pending" and previous_status == "pending":
            setattr(self._consensus, status, getattr(self._consensus, status) + 1)
        self._consensus_seen[request_id] = (status, cast)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @property
    def elapsed_time(self) -> float:
        return time.time() - self._started

    def to_dict(self) -> dict[str, Any]:
        """Export all collected metrics as a structured dictionary."""
        with self._lock:
            types = {name: m.to_dict() for name, m in sorted(self._types.items())}
            return {
                "summary": {
                    "elapsed_time_s": round(self.elapsed_time, 2),
                    "tasks_assigned": sum(m.assigned for m in self._types.values()),
                    "tasks_completed": sum(m.completed for m in self._types.values()),
                    "tasks_failed": sum(m.failed for m in self._types.values()),
                    "retries": self._retries,
                    "timeouts": self._timeouts,
                    "unassignable": self._unassignable,
                    "knowledge_writes": self._knowledge_writes,
                    "agent_transitions": self._transitions,
                    "errors": self._errors,
                },
                "agent_types": types,
                "consensus": self._consensus.to_dict(),
                "messages": dict(self._message_counts),
            }

    def summary_text(self) -> str:
        """Generate a human-readable summary of the metrics."""
        d = self.to_dict()
        s = d["summary"]
        lines = [
            "=== MAO Metrics ===",
            f"Elapsed Time:      {s['elapsed_time_s']:.1f}s",
            f"Tasks Assigned:    {s['tasks_assigned']}",
            f"Tasks Completed:   {s['tasks_completed']}",
            f"Tasks Failed:      {s['tasks_failed']}",
            f"Retries/Timeouts:  {s['retries']}/{s['timeouts']}",
            f"Knowledge Writes:  {s['knowledge_writes']}",
            "",
            "--- Per-Agent-Type Breakdown ---",
        ]
        for name, tm in d["agent_types"].items():
            lines.append(
                f"  {name}: {tm['completed']}/{tm['assigned']} completed, "
                f"avg {tm['avg_latency_s']:.2f}s, "
                f"success {tm['success_rate']:.0%}"
            )

        cm = d["consensus"]
        if cm["proposed"] > 0:
            lines.extend([
                "",
                "--- Consensus ---",
                f"  Proposed:          {cm['proposed']}",
                f"  Approved:          {cm['approved']}",
                f"  Rejected/Expired:  {cm['rejected']}/{cm['expired']}",
                f"  Votes cast:        {cm['votes']}",
            ])
        return "\n".join(lines)
