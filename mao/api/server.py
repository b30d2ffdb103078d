"""
MAO API Server — HTTP and WebSocket access to a running Orchestrator.

Provides a FastAPI app that serves:
- /api/agents, /api/tasks, /api/messages, /api/consensus, /api/knowledge,
  /api/settings, /api/metrics → snapshots as JSON (camelCase)
- POST endpoints for task submission, agent control, proposals, votes,
  messages and settings
- /ws/agents → live event stream ({type, data, timestamp}) plus commands

Orchestration errors map to HTTP status codes: unknown ids → 404, invalid
input → 422, state conflicts → 409, a full task queue → 429.

Usage:
    # From code:
    from mao.api.server import create_app
    app = create_app(orchestrator, runtime)
    uvicorn.run(app, host="127.0.0.1", port=8000)

    # From CLI:
    mao serve --port 8000
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import Field
from pydantic.alias_generators import to_camel

from mao.core.errors import (
    AgentUnavailable,
    AlreadyResolved,
    DuplicateVote,
    InvalidDependency,
    InvalidTransition,
    InvariantViolation,
    NotEligible,
    OrchestratorError,
    QueueLimitExceeded,
    UnknownParticipant,
    UnknownRequest,
    UnknownTask,
)
from mao.core.events import Event
from mao.core.models import (
    AgentSettings,
    ConsensusStatus,
    GlobalSettings,
    TaskStatus,
    WireModel,
)
from mao.core.orchestrator import Orchestrator
from mao.core.runtime import Runtime

logger = logging.getLogger("mao.api")

STATUS_CODES: list[tuple[type[Exception], int]] = [
    (UnknownTask, 404),
    (UnknownRequest, 404),
    (InvalidDependency, 422),
    (UnknownParticipant, 422),
    (AlreadyResolved, 409),
    (DuplicateVote, 409),
    (NotEligible, 409),
    (InvalidTransition, 409),
    (InvariantViolation, 409),
    (QueueLimitExceeded, 429),
]


def status_for(error: Exception) -> int:
    """The HTTP status code an error is reported with."""
    if isinstance(error, AgentUnavailable):
        return 404 if error.reason == "not found" else 409
    for error_type, code in STATUS_CODES:
        if isinstance(error, error_type):
            return code
    if isinstance(error, ValueError):
        return 422
    return 400


def error_payload(error: Exception) -> dict[str, Any]:
    """JSON body for an error: its kind, message and the ids it carries."""
    payload: dict[str, Any] = {"error": type(error).__name__, "message": str(error)}
    for name, value in getattr(error, "__dict__", {}).items():
        payload[to_camel(name)] = value
    return payload


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------

class TaskRequest(WireModel):
    type: str
    description: str = ""
    priority: int = 2
    dependencies: list[str] = Field(default_factory=list)
    required_capabilities: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None


class VoteRequest(WireModel):
    agent_id: str
    approve: bool


class ProposalRequest(WireModel):
    action: str
    proposer: str = "orchestrator"
    description: str = ""
    context: Any = None
    required_votes: float | None = None
    ttl: float | None = None


class MessageRequest(WireModel):
    from_agent: str = Field(alias="from")
    to_agent: str = Field(alias="to")
    type: str
    content: Any = None
    correlation_id: str | None = None


class SettingsRequest(WireModel):
    agent_settings: dict[str, AgentSettings] = Field(default_factory=dict)
    global_settings: GlobalSettings | None = None


# ------------------------------------------------------------------
# App
# ------------------------------------------------------------------

def create_app(orchestrator: Orchestrator, runtime: Runtime | None = None) -> FastAPI:
    """
    Create the FastAPI app for an Orchestrator.

    Args:
        orchestrator: The façade every endpoint talks to.
        runtime: If given, run for the lifetime of the app so submitted
            tasks are actually executed.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        worker = asyncio.create_task(runtime.run()) if runtime is not None else None
        try:
            yield
        finally:
            if worker is not None:
                runtime.stop()
                await worker

    app = FastAPI(title="MAO — Multi-Agent Orchestrator", version="0.1.0", lifespan=lifespan)
    orch = orchestrator

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        logger.info("%s %s refused: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_for(exc), content=error_payload(exc))

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content=error_payload(exc))

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    @app.get("/api/agents")
    async def list_agents():
        return {"agents": [a.to_wire() for a in orch.agents()]}

    @app.get("/api/agents/{agent_id}")
    async def get_agent(agent_id: str):
        if agent_id not in orch.registry:
            raise AgentUnavailable(agent_id)
        return {"agent": orch.registry.get(agent_id).to_wire()}

    @app.post("/api/agents/{agent_id}/pause")
    async def pause_agent(agent_id: str):
        return {"agent": orch.pause_agent(agent_id).to_wire()}

    @app.post("/api/agents/{agent_id}/resume")
    async def resume_agent(agent_id: str):
        return {"agent": orch.resume_agent(agent_id).to_wire()}

    @app.post("/api/agents/{agent_id}/reset")
    async def reset_agent(agent_id: str):
        return {"agent": orch.reset_agent(agent_id).to_wire()}

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @app.post("/api/tasks", status_code=201)
    async def submit_task(body: TaskRequest):
        task_id = orch.submit_task(
            body.type,
            body.description,
            priority=body.priority,
            dependencies=body.dependencies,
            required_capabilities=body.required_capabilities,
            context=body.context,
            task_id=body.id,
        )
        return {"taskId": task_id}

    @app.get("/api/tasks")
    async def list_tasks(status: TaskStatus | None = None):
        return {"tasks": [t.to_wire() for t in orch.tasks(status)]}

    @app.get("/api/tasks/{task_id}")
    async def get_task(task_id: str):
        return {"task": orch.scheduler.get(task_id).to_wire()}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @app.get("/api/messages")
    async def list_messages(limit: int | None = None):
        return {"messages": [m.to_wire() for m in orch.messages(limit)]}

    @app.post("/api/messages", status_code=201)
    async def send_message(body: MessageRequest):
        message = orch.send_message(body.from_agent, body.to_agent, body.type, body.content, body.correlation_id)
        return {"message": message.to_wire()}

    # ------------------------------------------------------------------
    # Consensus
    # ------------------------------------------------------------------

    @app.get("/api/consensus")
    async def list_consensus(status: ConsensusStatus | None = None):
        return {"requests": [r.to_wire() for r in orch.consensus_requests(status)]}

    @app.post("/api/consensus", status_code=201)
    async def propose(body: ProposalRequest):
        request_id = orch.propose(
            body.action, body.proposer, body.description, body.context, body.required_votes, body.ttl,
        )
        return {"requestId": request_id}

    @app.post("/api/consensus/{request_id}/vote")
    async def vote(request_id: str, body: VoteRequest):
        return {"request": orch.vote(request_id, body.agent_id, body.approve).to_wire()}

    # ------------------------------------------------------------------
    # Knowledge, settings, metrics
    # ------------------------------------------------------------------

    @app.get("/api/knowledge")
    async def list_knowledge(
        category: str | None = None,
        agent_type: str | None = None,
        text: str | None = None,
        limit: int | None = None,
    ):
        entries = orch.knowledge_entries(category=category, agent_type=agent_type, text=text, limit=limit)
        return {"entries": [e.to_wire() for e in entries], "stats": orch.knowledge.stats()}

    @app.get("/api/settings")
    async def get_settings():
        return orch.settings()

    @app.post("/api/settings")
    async def save_settings(body: SettingsRequest):
        return orch.save_settings(body.agent_settings, body.global_settings)

    @app.get("/api/metrics")
    async def get_metrics():
        return {**orch.metrics.to_dict(), "state": orch.stats()}

    # ------------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------------

    @app.websocket("/ws/agents")
    async def agents_socket(websocket: WebSocket):
        await websocket.accept()
        loop = asyncio.get_running_loop()
        outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=orch.config.orchestrator.event_history)

        def push(event: Event) -> None:
            frame = {"type": event.type.value, "data": event.data, "timestamp": event.timestamp}
            loop.call_soon_threadsafe(_enqueue, outbox, frame)

        async def pump() -> None:
            while True:
                await websocket.send_json(await outbox.get())

        await websocket.send_json(_frame(orch, "agents-list", {"agents": [a.to_wire() for a in orch.agents()]}))
        unsubscribe = orch.subscribe(push)
        sender = asyncio.create_task(pump())
        logger.info("WebSocket client connected")
        try:
            while True:
                command = await websocket.receive_json()
                reply = _handle_command(orch, command)
                if reply is not None:
                    _enqueue(outbox, reply)
        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected")
        finally:
            unsubscribe()
            sender.cancel()

    return app


def _enqueue(outbox: asyncio.Queue, frame: dict[str, Any]) -> None:
    """Queue a frame for a client; a client that falls behind loses its oldest frames."""
    if outbox.full():
        dropped = outbox.get_nowait()
        logger.warning("WebSocket client is behind; dropped a %s frame", dropped["type"])
    outbox.put_nowait(frame)


def _frame(orch: Orchestrator, frame_type: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"type": frame_type, "data": data, "timestamp": orch.now()}


def _handle_command(orch: Orchestrator, command: Any) -> dict[str, Any] | None:
    """Execute one WebSocket command; returns the direct reply, if any."""
    if not isinstance(command, dict):
        return _frame(orch, "error", {"error": "BadCommand", "message": "commands must be JSON objects"})
    kind = command.get("type")
    data = command.get("data") or {}
    try:
        match kind:
            case "ping":
                return _frame(orch, "pong", {})
            case "get-agents":
                return _frame(orch, "agents-list", {"agents": [a.to_wire() for a in orch.agents()]})
            case "create-task":
                body = TaskRequest.model_validate(data)
                task_id = orch.submit_task(
                    body.type, body.description, priority=body.priority,
                    dependencies=body.dependencies, required_capabilities=body.required_capabilities,
                    context=body.context, task_id=body.id,
                )
                return _frame(orch, "task-created", {"taskId": task_id})
            case "pause-agent":
                orch.pause_agent(data["agentId"])
            case "resume-agent":
                orch.resume_agent(data["agentId"])
            case "reset-agent":
                orch.reset_agent(data["agentId"])
            case "vote-consensus":
                orch.vote(data["requestId"], data["agentId"], bool(data["approve"]))
            case "update-config":
                body = SettingsRequest.model_validate(data)
                orch.save_settings(body.agent_settings, body.global_settings)
            case "get-settings":
                return _frame(orch, "settings", orch.settings())
            case "get-knowledge":
                entries = orch.knowledge_entries(**{k: data[k] for k in ("category", "text", "limit") if k in data})
                return _frame(orch, "knowledge", {"entries": [e.to_wire() for e in entries]})
            case _:
                return _frame(orch, "error", {"error": "BadCommand", "message": f"unknown command '{kind}'"})
    except (OrchestratorError, ValueError) as e:
        return _frame(orch, "error", error_payload(e))
    except KeyError as e:
        return _frame(orch, "error", {"error": "BadCommand", "message": f"'{kind}' needs field {e}"})
    return None
