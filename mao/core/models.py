"""
Core data models for MAO.

Defines agents, tasks, messages, consensus requests and knowledge entries, plus
the per-agent and global settings that drive scheduling and voting decisions.
All models use Pydantic v2 for strict validation and serialization. Field names
are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

BROADCAST = "broadcast"
ORCHESTRATOR = "orchestrator"


def new_id(prefix: str = "") -> str:
    """Return a short random id, optionally prefixed (``task-3f2a9c1d``)."""
    suffix = uuid.uuid4().hex[:8]
    return f"{prefix}-{suffix}" if prefix else suffix


class WireModel(BaseModel):
    """Base model: snake_case attributes, camelCase JSON."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AgentType(str, Enum):
    """The five cooperating worker roles."""
    PLANNER = "planner"
    CRITIC = "critic"
    EXECUTOR = "executor"
    RESEARCHER = "researcher"
    FIXER = "fixer"


class AgentStatus(str, Enum):
    """Lifecycle states of an agent."""
    IDLE = "idle"
    THINKING = "thinking"
    WORKING = "working"
    VALIDATING = "validating"
    WAITING = "waiting"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({
    AgentStatus.THINKING,
    AgentStatus.WORKING,
    AgentStatus.VALIDATING,
    AgentStatus.WAITING,
})


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    CONSENSUS = "consensus"


class ConsensusStatus(str, Enum):
    """Status of a consensus request. Everything but PENDING is terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class PersonalitySettings(WireModel):
    aggressiveness: int = Field(default=50, ge=0, le=100)
    cautiousness: int = Field(default=50, ge=0, le=100)
    creativity: int = Field(default=50, ge=0, le=100)
    collaboration: int = Field(default=70, ge=0, le=100)


class PerformanceSettings(WireModel):
    max_concurrent_tasks: int = Field(default=1, ge=1)
    task_timeout: float = Field(default=300.0, gt=0, description="Seconds.")
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1000.0, ge=0, description="Milliseconds.")


class LearningSettings(WireModel):
    enabled: bool = True
    learning_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    memory_size: int = Field(default=100, ge=1)
    share_knowledge: bool = True


class SpecializationSettings(WireModel):
    preferred_tasks: list[str] = Field(default_factory=list)
    avoid_tasks: list[str] = Field(default_factory=list)
    expertise_areas: list[str] = Field(default_factory=list)


class ConsensusSettings(WireModel):
    vote_weight: int = Field(default=1, ge=1, le=5)
    veto_enabled: bool = False
    auto_approve: list[str] = Field(default_factory=list)


class AgentSettings(WireModel):
    """Per-agent knobs read at scheduling, voting and learning decision points."""
    personality: PersonalitySettings = Field(default_factory=PersonalitySettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)
    learning: LearningSettings = Field(default_factory=LearningSettings)
    specialization: SpecializationSettings = Field(default_factory=SpecializationSettings)
    consensus: ConsensusSettings = Field(default_factory=ConsensusSettings)


class GlobalSettings(WireModel):
    enable_all_agents: bool = True
    global_learning: bool = True
    consensus_threshold: int = Field(default=3, ge=1)
    task_queue_limit: int = Field(default=100, ge=1)
    debug_mode: bool = False


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class TypeStats(WireModel):
    completed: int = 0
    failed: int = 0

    @property
    def success_rate(self) -> float | None:
        total = self.completed + self.failed
        if total == 0:
            return None
        return self.completed / total * 100


class AgentMetrics(WireModel):
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_time_ms: float = 0.0
    success_rate: float | None = None
    by_task_type: dict[str, TypeStats] = Field(default_factory=dict)

    def rate_for(self, task_type: str) -> float | None:
        """Success rate for one task type, falling back to the overall rate."""
        stats = self.by_task_type.get(task_type)
        if stats is not None and stats.success_rate is not None:
            return stats.success_rate
        return self.success_rate


class Agent(WireModel):
    id: str
    type: AgentType
    status: AgentStatus = AgentStatus.IDLE
    current_task: str | None = None
    active_tasks: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0, le=100)
    metrics: AgentMetrics = Field(default_factory=AgentMetrics)
    settings: AgentSettings = Field(default_factory=AgentSettings)
    paused: bool = False
    blocked_on: str | None = None
    resume_status: AgentStatus | None = None
    registered_at: float = Field(default_factory=time.time)

    @property
    def load(self) -> int:
        return len(self.active_tasks)

    @property
    def at_capacity(self) -> bool:
        return self.load >= self.settings.performance.max_concurrent_tasks


class StatusChange(WireModel):
    """Records a single agent state transition."""
    agent_id: str
    from_status: AgentStatus
    to_status: AgentStatus
    reason: str = ""
    timestamp: float = Field(default_factory=time.time)


class TaskOutcome(WireModel):
    """What an agent reports when it finishes (or fails) a task."""
    success: bool
    duration_ms: float = 0.0
    task_type: str | None = None


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

class Task(WireModel):
    id: str = Field(default_factory=lambda: new_id("task"))
    type: str
    description: str = ""
    priority: int = 2
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = Field(default_factory=list)
    required_capabilities: list[str] = Field(default_factory=list)
    assigned_agent: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    attempt: int = 0
    retry_of: str | None = None
    superseded_by: str | None = None
    not_before: float | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------

class Message(WireModel):
    """An immutable message between agents (or the orchestrator)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str = Field(default_factory=lambda: new_id("msg"))
    from_agent: str = Field(alias="from")
    to_agent: str = Field(alias="to")
    type: MessageType
    content: Any = None
    timestamp: float = Field(default_factory=time.time)
    correlation_id: str | None = None

    @property
    def is_broadcast(self) -> bool:
        return self.to_agent == BROADCAST


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------

class ConsensusRequest(WireModel):
    id: str = Field(default_factory=lambda: new_id("consensus"))
    action: str
    proposer: str
    description: str = ""
    context: Any = None
    votes: dict[str, bool | None] = Field(default_factory=dict)
    weights: dict[str, int] = Field(default_factory=dict)
    vetoers: list[str] = Field(default_factory=list)
    required_votes: float = Field(ge=0)
    deadline: float
    status: ConsensusStatus = ConsensusStatus.PENDING
    reason: str = ""
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def resolved(self) -> bool:
        return self.status != ConsensusStatus.PENDING

    @property
    def approve_weight(self) -> float:
        return sum(self.weights.get(a, 1) for a, v in self.votes.items() if v is True)

    @property
    def outstanding_weight(self) -> float:
        return sum(self.weights.get(a, 1) for a, v in self.votes.items() if v is None)

    @property
    def pending_vetoers(self) -> list[str]:
        return [a for a in self.vetoers if self.votes.get(a) is None]


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------

class KnowledgeEntry(WireModel):
    id: str = Field(default_factory=lambda: new_id("kn"))
    agent_id: str
    agent_type: AgentType
    category: str
    key: str
    value: Any = None
    confidence: float = Field(default=50.0, ge=0, le=100)
    usage_count: int = 1
    success_rate: float = Field(default=0.0, ge=0, le=100)
    tags: list[str] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)
