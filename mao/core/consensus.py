"""
Consensus Engine — Time-boxed weighted voting on sensitive actions.

An agent about to do something risky proposes it; every agent registered at
that moment becomes an eligible voter with the weight of its
`consensus.vote_weight` setting (snapshotted at proposal time). The request
resolves by the first rule that applies, evaluated after every vote and on
deadline expiry:

1. A veto-enabled voter rejected          → rejected
2. Weighted approve sum ≥ required_votes,
   no veto-enabled voter still to vote    → approved
3. Everybody voted, threshold not reached → rejected
4. now > deadline                         → expired

A pending veto holds approval back, so the outcome does not depend on
whether the vetoer votes before or after the others.

Actions listed in the proposer's `consensus.auto_approve` skip voting and
resolve approved on proposal. Resolution is terminal: the vote map is frozen
and resolution listeners are notified exactly once.

This is a cooperative, single-coordinator quorum, not a replicated log.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from mao.agents.registry import AgentRegistry
from mao.core.errors import (
    AlreadyResolved,
    DuplicateVote,
    NotEligible,
    UnknownRequest,
)
from mao.core.models import (
    ORCHESTRATOR,
    ConsensusRequest,
    ConsensusStatus,
    GlobalSettings,
)
from mao.core.store import CONSENSUS, InMemoryBackend, StateBackend

logger = logging.getLogger("mao.consensus")

DEFAULT_TTL = 10.0

RequestCallback = Callable[[ConsensusRequest], None]


class ConsensusEngine:
    """
    Single-writer owner of consensus requests.

    Args:
        registry: Source of eligible voters and their consensus settings.
        global_settings: Returns the current GlobalSettings (default quorum).
        backend: Persistence backend.
        on_change: Called after every proposal, vote and resolution.
        default_ttl: Seconds a request stays open when no ttl is given.
        clock: Time source (seconds).
    """

    def __init__(
        self,
        registry: AgentRegistry,
        global_settings: Callable[[], GlobalSettings] | None = None,
        backend: StateBackend | None = None,
        on_change: RequestCallback | None = None,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._global_settings = global_settings or GlobalSettings
        self._backend = backend or InMemoryBackend()
        self._on_change = on_change
        self._default_ttl = default_ttl
        self._clock = clock
        self._requests: dict[str, ConsensusRequest] = {}
        self._listeners: dict[int, RequestCallback] = {}
        self._next_token = 0
        self._lock = threading.RLock()

    def set_on_change(self, callback: RequestCallback | None) -> None:
        self._on_change = callback

    def add_listener(self, callback: RequestCallback) -> Callable[[], None]:
        """Register a resolution listener; returns a function that removes it."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = callback

        def remove() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return remove

    # ------------------------------------------------------------------
    # Proposal
    # ------------------------------------------------------------------

    def propose(
        self,
        action: str,
        proposer: str,
        description: str = "",
        context: Any = None,
        required_votes: float | None = None,
        ttl: float | None = None,
        now: float | None = None,
    ) -> str:
        """
        Open a vote on `action`.

        Args:
            action: Action type being voted on (matched against auto_approve).
            proposer: The proposing agent id, or "orchestrator".
            description: Human-readable explanation shown to voters.
            context: Opaque payload for voters.
            required_votes: Weighted quorum (default: GlobalSettings.consensus_threshold).
            ttl: Seconds until the request expires (default: the engine's default_ttl).

        Returns:
            The new request id.

        Raises:
            AgentUnavailable: If the proposer is not a registered agent.
        """
        now = self._clock() if now is None else now
        auto_approve: list[str] = []
        if proposer != ORCHESTRATOR:
            auto_approve = self._registry.settings_for(proposer).consensus.auto_approve

        # Voter snapshot is taken before the engine lock (lock order: engine never waits on registry).
        voters = self._registry.list_agents()
        request = ConsensusRequest(
            action=action,
            proposer=proposer,
            description=description,
            context=context,
            votes={a.id: None for a in voters},
            weights={a.id: a.settings.consensus.vote_weight for a in voters},
            vetoers=[a.id for a in voters if a.settings.consensus.veto_enabled],
            required_votes=(
                self._global_settings().consensus_threshold if required_votes is None else required_votes
            ),
            deadline=now + (self._default_ttl if ttl is None else ttl),
            created_at=now,
        )

        if action in auto_approve:
            self._resolve(request, ConsensusStatus.APPROVED, f"auto-approved for {proposer}", now)
        else:
            self._evaluate(request, now)

        with self._lock:
            self._requests[request.id] = request
            self._backend.save(CONSENSUS, request.id, request)
            snapshot = request.model_copy(deep=True)

        logger.info(
            "Consensus proposed: %s '%s' by %s (required=%g, voters=%d, ttl=%gs)",
            request.id, action, proposer, request.required_votes, len(voters), request.deadline - now,
        )
        self._publish(snapshot)
        return request.id

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def vote(self, request_id: str, agent_id: str, approve: bool, now: float | None = None) -> ConsensusRequest:
        """
        Record one vote and re-evaluate the request.

        Raises:
            UnknownRequest: If the request does not exist.
            AlreadyResolved: If the request is terminal or its deadline passed
                (in which case it is expired first).
            NotEligible: If the voter was not registered at proposal time.
            DuplicateVote: If the voter already voted.
        """
        now = self._clock() if now is None else now
        late: ConsensusRequest | None = None
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise UnknownRequest(request_id)
            if request.resolved:
                raise AlreadyResolved(request_id, request.status.value)
            if now > request.deadline:
                self._resolve(request, ConsensusStatus.EXPIRED, "deadline passed", now)
                self._backend.save(CONSENSUS, request.id, request)
                late = request.model_copy(deep=True)
            else:
                if agent_id not in request.votes:
                    raise NotEligible(request_id, agent_id)
                if request.votes[agent_id] is not None:
                    raise DuplicateVote(request_id, agent_id)
                request.votes[agent_id] = approve
                self._evaluate(request, now)
                self._backend.save(CONSENSUS, request.id, request)
                snapshot = request.model_copy(deep=True)

        if late is not None:
            self._publish(late)
            raise AlreadyResolved(request_id, late.status.value)

        logger.info(
            "Vote on %s by %s: %s (approve weight %g/%g)",
            request_id, agent_id, "approve" if approve else "reject",
            snapshot.approve_weight, snapshot.required_votes,
        )
        self._publish(snapshot)
        return snapshot

    def expire_due(self, now: float | None = None) -> list[ConsensusRequest]:
        """Expire every pending request whose deadline has passed."""
        now = self._clock() if now is None else now
        expired: list[ConsensusRequest] = []
        with self._lock:
            for request in self._requests.values():
                if request.resolved or now <= request.deadline:
                    continue
                self._resolve(request, ConsensusStatus.EXPIRED, "deadline passed", now)
                self._backend.save(CONSENSUS, request.id, request)
                expired.append(request.model_copy(deep=True))
        for request in expired:
            self._publish(request)
        return expired

    # ------------------------------------------------------------------
    # Resolution rules
    # ------------------------------------------------------------------

    def _evaluate(self, request: ConsensusRequest, now: float) -> None:
        if request.resolved:
            return
        vetoes = [a for a in request.vetoers if request.votes.get(a) is False]
        if vetoes:
            self._resolve(request, ConsensusStatus.REJECTED, f"vetoed by {', '.join(vetoes)}", now)
        elif request.approve_weight >= request.required_votes and not request.pending_vetoers:
            self._resolve(request, ConsensusStatus.APPROVED, "quorum reached", now)
        elif request.outstanding_weight == 0:
            self._resolve(request, ConsensusStatus.REJECTED, "quorum unreachable", now)
        elif now > request.deadline:
            self._resolve(request, ConsensusStatus.EXPIRED, "deadline passed", now)

    def _resolve(self, request: ConsensusRequest, status: ConsensusStatus, reason: str, now: float) -> None:
        request.status = status
        request.reason = reason
        request.completed_at = now
        logger.info("Consensus %s %s (%s)", request.id, status.value.upper(), reason)

    def _publish(self, request: ConsensusRequest) -> None:
        if self._on_change is not None:
            self._on_change(request)
        if not request.resolved:
            return
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(request)
            except Exception:
                logger.exception("Consensus listener failed for %s", request.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> ConsensusRequest:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise UnknownRequest(request_id)
            return request.model_copy(deep=True)

    def list_requests(self, status: ConsensusStatus | None = None) -> list[ConsensusRequest]:
        """Requests newest first, optionally filtered by status."""
        with self._lock:
            requests = sorted(self._requests.values(), key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in requests if status is None or r.status == status]

    def pending_ids(self) -> set[str]:
        with self._lock:
            return {r.id for r in self._requests.values() if not r.resolved}

    def is_proposing(self, agent_id: str) -> bool:
        """Whether the agent proposed a request that is still pending."""
        with self._lock:
            return any(r.proposer == agent_id and not r.resolved for r in self._requests.values())

    def load(self, requests: list[ConsensusRequest]) -> None:
        """Restore persisted requests (no events are emitted)."""
        with self._lock:
            for request in requests:
                self._requests[request.id] = request.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._requests)
