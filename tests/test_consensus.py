"""Tests for the Consensus Engine."""

import pytest

from mao.agents.registry import AgentRegistry
from mao.core.consensus import ConsensusEngine
from mao.core.errors import (
    AgentUnavailable,
    AlreadyResolved,
    DuplicateVote,
    NotEligible,
    UnknownRequest,
)
from mao.core.models import (
    AgentSettings,
    AgentType,
    ConsensusSettings,
    ConsensusStatus,
    GlobalSettings,
)


def _voter(registry: AgentRegistry, agent_id: str, weight: int = 1, veto: bool = False,
           auto_approve: list[str] | None = None) -> str:
    settings = AgentSettings(consensus=ConsensusSettings(
        vote_weight=weight, veto_enabled=veto, auto_approve=auto_approve or [],
    ))
    return registry.register(AgentType.CRITIC, settings=settings, agent_id=agent_id)


class ConsensusTestBase:
    def setup_method(self) -> None:
        self.now = 100.0
        self.changes = []
        self.resolved = []
        self.registry = AgentRegistry()
        self.engine = self._engine(self.registry)
        self.engine.add_listener(self.resolved.append)

    def _engine(self, registry: AgentRegistry) -> ConsensusEngine:
        return ConsensusEngine(
            registry=registry,
            global_settings=GlobalSettings,
            on_change=self.changes.append,
            clock=lambda: self.now,
        )


class TestProposal(ConsensusTestBase):
    def test_snapshot_of_voters(self) -> None:
        _voter(self.registry, "a", weight=2)
        _voter(self.registry, "b", veto=True)
        request_id = self.engine.propose("submit-form", "a", description="Submit the order")
        request = self.engine.get(request_id)
        assert request.status == ConsensusStatus.PENDING
        assert request.votes == {"a": None, "b": None}
        assert request.weights == {"a": 2, "b": 1}
        assert request.vetoers == ["b"]
        assert request.required_votes == 3
        assert request.deadline == pytest.approx(110.0)
        assert self.changes[-1].id == request_id

    def test_settings_change_after_proposal_ignored(self) -> None:
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        request_id = self.engine.propose("x", "a", required_votes=2)
        self.registry.update_settings("a", AgentSettings(consensus=ConsensusSettings(vote_weight=5)))
        request = self.engine.vote(request_id, "a", True)
        assert request.status == ConsensusStatus.PENDING
        assert request.approve_weight == 1

    def test_unknown_proposer(self) -> None:
        with pytest.raises(AgentUnavailable):
            self.engine.propose("x", "ghost")

    def test_orchestrator_may_propose(self) -> None:
        _voter(self.registry, "a")
        request_id = self.engine.propose("shutdown", "orchestrator", required_votes=1)
        assert self.engine.get(request_id).proposer == "orchestrator"
        assert self.engine.is_proposing("orchestrator")

    def test_auto_approve(self) -> None:
        _voter(self.registry, "a", auto_approve=["navigate"])
        _voter(self.registry, "b")
        request_id = self.engine.propose("navigate", "a")
        request = self.engine.get(request_id)
        assert request.status == ConsensusStatus.APPROVED
        assert "auto-approved" in request.reason
        assert [r.id for r in self.resolved] == [request_id]

    def test_auto_approve_is_per_action(self) -> None:
        _voter(self.registry, "a", auto_approve=["navigate"])
        request_id = self.engine.propose("submit-form", "a")
        assert self.engine.get(request_id).status == ConsensusStatus.PENDING

    def test_list_newest_first(self) -> None:
        _voter(self.registry, "a")
        first = self.engine.propose("x", "a")
        self.now += 1
        second = self.engine.propose("y", "a")
        assert [r.id for r in self.engine.list_requests()] == [second, first]
        assert self.engine.pending_ids() == {first, second}
        assert self.engine.is_proposing("a")

    def test_unknown_request(self) -> None:
        with pytest.raises(UnknownRequest):
            self.engine.get("nope")
        with pytest.raises(UnknownRequest):
            self.engine.vote("nope", "a", True)


class TestVoting(ConsensusTestBase):
    def test_scenario_two_approvals_resolve_immediately(self) -> None:
        _voter(self.registry, "a1")
        _voter(self.registry, "a2")
        request_id = self.engine.propose("submit-form", "a1", required_votes=2, ttl=5)
        assert self.engine.vote(request_id, "a1", True).status == ConsensusStatus.PENDING
        self.now += 1
        request = self.engine.vote(request_id, "a2", True)
        assert request.status == ConsensusStatus.APPROVED
        assert request.completed_at == 101.0
        assert request.completed_at < request.deadline
        assert not self.engine.is_proposing("a1")

    def test_scenario_veto_rejects(self) -> None:
        _voter(self.registry, "v", veto=True)
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        request_id = self.engine.propose("delete-records", "a", required_votes=3)
        self.engine.vote(request_id, "a", True)
        request = self.engine.vote(request_id, "v", False)
        assert request.status == ConsensusStatus.REJECTED
        assert request.reason == "vetoed by v"
        with pytest.raises(AlreadyResolved):
            self.engine.vote(request_id, "b", True)
        assert self.engine.get(request_id).status == ConsensusStatus.REJECTED

    def test_veto_after_quorum_still_rejects(self) -> None:
        _voter(self.registry, "v", veto=True)
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        request_id = self.engine.propose("delete-records", "a", required_votes=2)
        self.engine.vote(request_id, "a", True)
        request = self.engine.vote(request_id, "b", True)
        assert request.status == ConsensusStatus.PENDING
        assert request.pending_vetoers == ["v"]
        request = self.engine.vote(request_id, "v", False)
        assert request.status == ConsensusStatus.REJECTED
        assert request.reason == "vetoed by v"
        assert self.resolved[-1].status == ConsensusStatus.REJECTED

    def test_vetoer_approval_releases_quorum(self) -> None:
        _voter(self.registry, "v", veto=True)
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        request_id = self.engine.propose("delete-records", "a", required_votes=2)
        self.engine.vote(request_id, "a", True)
        self.engine.vote(request_id, "b", True)
        assert self.engine.vote(request_id, "v", True).status == ConsensusStatus.APPROVED

    def test_pending_vetoer_lets_request_expire(self) -> None:
        _voter(self.registry, "v", veto=True)
        _voter(self.registry, "a")
        request_id = self.engine.propose("x", "a", required_votes=1, ttl=5)
        assert self.engine.vote(request_id, "a", True).status == ConsensusStatus.PENDING
        self.now += 6
        (expired,) = self.engine.expire_due()
        assert expired.id == request_id
        assert expired.status == ConsensusStatus.EXPIRED

    def test_veto_rejects_before_quorum(self) -> None:
        _voter(self.registry, "v", veto=True)
        _voter(self.registry, "a")
        request = self.engine.propose("x", "a", required_votes=2)
        self.engine.vote(request, "v", False)
        assert self.engine.get(request).status == ConsensusStatus.REJECTED

    def test_weighted_tally(self) -> None:
        _voter(self.registry, "heavy", weight=3)
        _voter(self.registry, "light")
        request_id = self.engine.propose("x", "light", required_votes=3)
        request = self.engine.vote(request_id, "heavy", True)
        assert request.status == ConsensusStatus.APPROVED
        assert request.reason == "quorum reached"

    def test_quorum_unreachable(self) -> None:
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        request_id = self.engine.propose("x", "a", required_votes=2)
        self.engine.vote(request_id, "a", True)
        request = self.engine.vote(request_id, "b", False)
        assert request.status == ConsensusStatus.REJECTED
        assert request.reason == "quorum unreachable"

    def test_duplicate_vote(self) -> None:
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        request_id = self.engine.propose("x", "a")
        self.engine.vote(request_id, "a", True)
        with pytest.raises(DuplicateVote):
            self.engine.vote(request_id, "a", False)
        assert self.engine.get(request_id).votes["a"] is True

    def test_late_registered_agent_not_eligible(self) -> None:
        _voter(self.registry, "a")
        request_id = self.engine.propose("x", "a")
        _voter(self.registry, "newcomer")
        with pytest.raises(NotEligible):
            self.engine.vote(request_id, "newcomer", True)

    def test_listener_notified_once(self) -> None:
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        request_id = self.engine.propose("x", "a", required_votes=1)
        self.engine.vote(request_id, "a", True)
        with pytest.raises(AlreadyResolved):
            self.engine.vote(request_id, "b", True)
        assert [r.id for r in self.resolved] == [request_id]

    def test_removed_listener(self) -> None:
        seen = []
        remove = self.engine.add_listener(seen.append)
        remove()
        _voter(self.registry, "a")
        self.engine.vote(self.engine.propose("x", "a", required_votes=1), "a", True)
        assert seen == []

    def test_failing_listener_isolated(self) -> None:
        def boom(request) -> None:
            raise RuntimeError("listener bug")

        self.engine.add_listener(boom)
        _voter(self.registry, "a")
        request_id = self.engine.propose("x", "a", required_votes=1)
        assert self.engine.vote(request_id, "a", True).status == ConsensusStatus.APPROVED
        assert len(self.resolved) == 1


class TestExpiry(ConsensusTestBase):
    def setup_method(self) -> None:
        super().setup_method()
        _voter(self.registry, "a")
        _voter(self.registry, "b")
        self.request_id = self.engine.propose("x", "a", required_votes=2, ttl=5)

    def test_expire_due(self) -> None:
        self.now = 105.0
        assert self.engine.expire_due() == []
        self.now = 105.5
        (expired,) = self.engine.expire_due()
        assert expired.status == ConsensusStatus.EXPIRED
        assert self.engine.pending_ids() == set()
        assert self.engine.expire_due() == []
        assert [r.status for r in self.resolved] == [ConsensusStatus.EXPIRED]

    def test_late_vote_expires_then_raises(self) -> None:
        self.engine.vote(self.request_id, "a", True)
        self.now = 106.0
        with pytest.raises(AlreadyResolved) as exc:
            self.engine.vote(self.request_id, "b", True)
        assert exc.value.status == "expired"
        request = self.engine.get(self.request_id)
        assert request.status == ConsensusStatus.EXPIRED
        assert request.votes["b"] is None


class TestDeterminism:
    """The same vote sequence always yields the same resolution."""

    SEQUENCE = [("a", True), ("v", True), ("b", False), ("c", True)]

    def _replay(self) -> tuple:
        registry = AgentRegistry()
        _voter(registry, "a", weight=2)
        _voter(registry, "b")
        _voter(registry, "c")
        _voter(registry, "v", veto=True)
        engine = ConsensusEngine(registry=registry, clock=lambda: 0.0)
        request_id = engine.propose("x", "a", required_votes=4)
        for agent_id, approve in self.SEQUENCE:
            try:
                engine.vote(request_id, agent_id, approve)
            except AlreadyResolved:
                pass
        request = engine.get(request_id)
        return request.status, request.reason, request.votes

    def test_replay(self) -> None:
        first = self._replay()
        assert first[0] == ConsensusStatus.APPROVED
        for _ in range(5):
            assert self._replay() == first
