"""Tests for the HTTP / WebSocket API."""

import asyncio

from fastapi.testclient import TestClient

from mao.api.server import _enqueue, create_app, error_payload, status_for
from mao.core.errors import (
    AgentUnavailable,
    AlreadyResolved,
    InvalidDependency,
    QueueLimitExceeded,
    UnknownTask,
)
from mao.core.models import AgentType
from mao.core.orchestrator import Orchestrator


class ApiTestBase:
    def setup_method(self) -> None:
        self.orch = Orchestrator()
        self.orch.register_agent(AgentType.PLANNER, agent_id="p")
        self.orch.register_agent(AgentType.EXECUTOR, agent_id="e")
        self.client = TestClient(create_app(self.orch))


class TestErrorMapping:
    def test_status_codes(self) -> None:
        assert status_for(UnknownTask("t")) == 404
        assert status_for(AgentUnavailable("a")) == 404
        assert status_for(AgentUnavailable("a", "agent is in error")) == 409
        assert status_for(InvalidDependency("t", ["x"])) == 422
        assert status_for(AlreadyResolved("r", "approved")) == 409
        assert status_for(QueueLimitExceeded(3)) == 429
        assert status_for(ValueError("bad")) == 422

    def test_payload_carries_ids(self) -> None:
        payload = error_payload(InvalidDependency("t1", ["ghost"]))
        assert payload["error"] == "InvalidDependency"
        assert payload["taskId"] == "t1"
        assert payload["missing"] == ["ghost"]


class TestAgentEndpoints(ApiTestBase):
    def test_list_and_get(self) -> None:
        agents = self.client.get("/api/agents").json()["agents"]
        assert [a["id"] for a in agents] == ["p", "e"]
        agent = self.client.get("/api/agents/e").json()["agent"]
        assert agent["type"] == "executor"
        assert agent["status"] == "idle"

    def test_unknown_agent(self) -> None:
        response = self.client.get("/api/agents/ghost")
        assert response.status_code == 404
        assert response.json()["agentId"] == "ghost"
        assert self.client.post("/api/agents/ghost/reset").status_code == 404

    def test_pause_resume(self) -> None:
        task_id = self.orch.submit_task("navigate")
        self.orch.tick()
        response = self.client.post("/api/agents/e/pause")
        assert response.status_code == 200
        assert response.json()["agent"]["paused"] is True
        assert self.orch.scheduler.get(task_id).status == "pending"
        response = self.client.post("/api/agents/e/resume")
        assert response.json()["agent"]["paused"] is False

    def test_pause_in_error_conflicts(self) -> None:
        task_id = self.orch.submit_task("navigate")
        self.orch.tick()
        self.orch.fail_task(task_id, "boom")
        response = self.client.post("/api/agents/e/pause")
        assert response.status_code == 409
        assert self.client.post("/api/agents/e/resume").status_code == 409
        assert self.client.post("/api/agents/e/reset").json()["agent"]["status"] == "idle"


class TestTaskEndpoints(ApiTestBase):
    def test_submit_and_fetch(self) -> None:
        response = self.client.post("/api/tasks", json={"type": "navigate", "priority": 5, "context": {"url": "/"}})
        assert response.status_code == 201
        task_id = response.json()["taskId"]
        task = self.client.get(f"/api/tasks/{task_id}").json()["task"]
        assert task["status"] == "pending"
        assert task["requiredCapabilities"] == ["navigation"]
        pending = self.client.get("/api/tasks", params={"status": "pending"}).json()["tasks"]
        assert [t["id"] for t in pending] == [task_id]
        assert self.client.get("/api/tasks", params={"status": "completed"}).json()["tasks"] == []

    def test_unknown_dependency(self) -> None:
        response = self.client.post("/api/tasks", json={"type": "navigate", "dependencies": ["ghost"]})
        assert response.status_code == 422
        assert response.json()["missing"] == ["ghost"]

    def test_missing_type(self) -> None:
        assert self.client.post("/api/tasks", json={"priority": 1}).status_code == 422

    def test_queue_limit(self) -> None:
        self.client.post("/api/settings", json={"globalSettings": {"taskQueueLimit": 1}})
        assert self.client.post("/api/tasks", json={"type": "navigate"}).status_code == 201
        response = self.client.post("/api/tasks", json={"type": "navigate"})
        assert response.status_code == 429
        assert response.json()["limit"] == 1

    def test_unknown_task(self) -> None:
        assert self.client.get("/api/tasks/ghost").status_code == 404


class TestConsensusEndpoints(ApiTestBase):
    def _propose(self, **body) -> str:
        response = self.client.post("/api/consensus", json={"action": "submit", **body})
        assert response.status_code == 201
        return response.json()["requestId"]

    def test_vote_flow(self) -> None:
        request_id = self._propose(requiredVotes=2)
        response = self.client.post(f"/api/consensus/{request_id}/vote", json={"agentId": "p", "approve": True})
        assert response.json()["request"]["status"] == "pending"
        response = self.client.post(f"/api/consensus/{request_id}/vote", json={"agentId": "e", "approve": True})
        assert response.json()["request"]["status"] == "approved"
        late = self.client.post(f"/api/consensus/{request_id}/vote", json={"agentId": "e", "approve": False})
        assert late.status_code == 409
        assert late.json()["error"] == "AlreadyResolved"
        listed = self.client.get("/api/consensus", params={"status": "approved"}).json()["requests"]
        assert [r["id"] for r in listed] == [request_id]

    def test_vote_errors(self) -> None:
        request_id = self._propose()
        self.client.post(f"/api/consensus/{request_id}/vote", json={"agentId": "p", "approve": True})
        duplicate = self.client.post(f"/api/consensus/{request_id}/vote", json={"agentId": "p", "approve": True})
        assert duplicate.status_code == 409
        stranger = self.client.post(f"/api/consensus/{request_id}/vote", json={"agentId": "zz", "approve": True})
        assert stranger.status_code == 409
        assert stranger.json()["error"] == "NotEligible"
        missing = self.client.post("/api/consensus/ghost/vote", json={"agentId": "p", "approve": True})
        assert missing.status_code == 404


class TestMessageKnowledgeSettings(ApiTestBase):
    def test_send_and_list_messages(self) -> None:
        body = {"from": "p", "to": "e", "type": "request", "content": {"step": 1}}
        response = self.client.post("/api/messages", json=body)
        assert response.status_code == 201
        assert response.json()["message"]["from"] == "p"
        self.client.post("/api/messages", json={**body, "to": "broadcast"})
        messages = self.client.get("/api/messages", params={"limit": 1}).json()["messages"]
        assert [m["to"] for m in messages] == ["broadcast"]

    def test_message_validation(self) -> None:
        unknown = self.client.post("/api/messages", json={"from": "p", "to": "ghost", "type": "request"})
        assert unknown.status_code == 422
        assert unknown.json()["role"] == "recipient"
        bad_type = self.client.post("/api/messages", json={"from": "p", "to": "e", "type": "bogus"})
        assert bad_type.status_code == 422

    def test_knowledge(self) -> None:
        self.orch.remember("e", "selector", "buy", "#buy", tags=["checkout"])
        self.orch.remember("p", "strategy", "web-scraping", {"steps": 5})
        body = self.client.get("/api/knowledge", params={"category": "selector"}).json()
        assert [e["key"] for e in body["entries"]] == ["buy"]
        assert body["stats"]["total"] == 2

    def test_settings_round_trip(self) -> None:
        body = {"agentSettings": {"e": {"performance": {"maxConcurrentTasks": 2}}}}
        saved = self.client.post("/api/settings", json=body).json()
        assert saved["agentSettings"]["e"]["performance"]["maxConcurrentTasks"] == 2
        assert self.client.get("/api/settings").json() == saved

    def test_settings_unknown_agent(self) -> None:
        response = self.client.post("/api/settings", json={"agentSettings": {"ghost": {}}})
        assert response.status_code == 404

    def test_metrics(self) -> None:
        task_id = self.orch.submit_task("navigate")
        self.orch.tick()
        self.orch.complete_task(task_id)
        body = self.client.get("/api/metrics").json()
        assert body["summary"]["tasks_completed"] == 1
        assert body["state"]["tasks"]["completed"] == 1
        assert body["agent_types"]["executor"]["completed"] == 1


class TestWebSocket(ApiTestBase):
    @staticmethod
    def _receive_until(ws, frame_type: str, limit: int = 20) -> dict:
        for _ in range(limit):
            frame = ws.receive_json()
            if frame["type"] == frame_type:
                return frame
        raise AssertionError(f"no '{frame_type}' frame received")

    def test_initial_agents_list_and_ping(self) -> None:
        with self.client.websocket_connect("/ws/agents") as ws:
            first = ws.receive_json()
            assert first["type"] == "agents-list"
            assert [a["id"] for a in first["data"]["agents"]] == ["p", "e"]
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_create_task_pushes_events(self) -> None:
        with self.client.websocket_connect("/ws/agents") as ws:
            ws.receive_json()
            ws.send_json({"type": "create-task", "data": {"type": "navigate", "priority": 4}})
            created = self._receive_until(ws, "task-created")
            assert created["data"]["taskId"] in self.orch.scheduler

    def test_commands_mutate_state(self) -> None:
        with self.client.websocket_connect("/ws/agents") as ws:
            ws.receive_json()
            ws.send_json({"type": "pause-agent", "data": {"agentId": "e"}})
            update = self._receive_until(ws, "agent-update")
            assert update["data"]["agent"]["paused"] is True
            ws.send_json({"type": "get-settings"})
            settings = self._receive_until(ws, "settings")
            assert set(settings["data"]["agentSettings"]) == {"p", "e"}

    def test_bad_commands(self) -> None:
        with self.client.websocket_connect("/ws/agents") as ws:
            ws.receive_json()
            ws.send_json({"type": "launch-rockets"})
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "pause-agent", "data": {}})
            assert ws.receive_json()["data"]["error"] == "BadCommand"
            ws.send_json({"type": "reset-agent", "data": {"agentId": "ghost"}})
            assert ws.receive_json()["data"]["error"] == "AgentUnavailable"


class TestOutbox:
    def test_full_outbox_drops_oldest_frame(self) -> None:
        outbox = asyncio.Queue(maxsize=2)
        for n in range(3):
            _enqueue(outbox, {"type": "message", "data": {"n": n}})
        assert [outbox.get_nowait()["data"]["n"] for _ in range(2)] == [1, 2]
        assert outbox.empty()
