"""
Knowledge Store — Confidence-scored knowledge shared across agents.

Agents record what they learned after a task as entries keyed by
(agent, category, key). Re-recording the same key replaces the value, bumps
the usage count and folds the outcome into the entry's success rate as a
moving average weighted by the owner's learning rate:

    success_rate = old * (1 - lr) + outcome * 100 * lr

Confidence starts at DEFAULT_CONFIDENCE and moves toward the success rate as
evidence (usage) accumulates.

Entries are visible to every agent unless their owner has `share_knowledge`
turned off, in which case only the owner sees them.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from mao.core.errors import AgentUnavailable
from mao.core.models import Agent, GlobalSettings, KnowledgeEntry
from mao.core.store import KNOWLEDGE, InMemoryBackend, StateBackend

logger = logging.getLogger("mao.knowledge")

DEFAULT_CONFIDENCE = 50.0


class KnowledgeStore:
    """
    Owner of every KnowledgeEntry.

    Args:
        agent_lookup: Returns a snapshot of an agent (its type and learning
            settings) or raises if the agent is unknown.
        global_settings: Returns the current GlobalSettings.
        backend: Persistence backend.
        on_change: Called with every written entry.
        default_confidence: Confidence of a freshly created entry.
        clock: Time source for entry timestamps.
    """

    def __init__(
        self,
        agent_lookup: Callable[[str], Agent],
        global_settings: Callable[[], GlobalSettings] | None = None,
        backend: StateBackend | None = None,
        on_change: Callable[[KnowledgeEntry], None] | None = None,
        default_confidence: float = DEFAULT_CONFIDENCE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._agent_lookup = agent_lookup
        self._global_settings = global_settings or GlobalSettings
        self._backend = backend or InMemoryBackend()
        self._on_change = on_change
        self._default_confidence = default_confidence
        self._clock = clock
        self._entries: dict[tuple[str, str, str], KnowledgeEntry] = {}
        self._lock = threading.RLock()

    def set_on_change(self, callback: Callable[[KnowledgeEntry], None] | None) -> None:
        self._on_change = callback

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def upsert(
        self,
        agent_id: str,
        category: str,
        key: str,
        value: Any,
        outcome: float,
        tags: list[str] | None = None,
    ) -> KnowledgeEntry | None:
        """
        Create or update the entry (agent_id, category, key).

        Args:
            agent_id: The owning agent.
            category: Entry category (e.g. "strategy", "selector", "pattern").
            key: Lookup key, unique within (agent, category).
            value: Opaque payload; replaces the previous value.
            outcome: Task outcome in [0, 1] (1.0 = full success).
            tags: Replace the entry's tags when given.

        Returns:
            A copy of the written entry, or None when learning is disabled for
            the agent or globally.
        """
        if not 0.0 <= outcome <= 1.0:
            raise ValueError(f"Outcome must be within [0, 1], got {outcome}")
        agent = self._agent_lookup(agent_id)
        learning = agent.settings.learning
        if not learning.enabled or not self._global_settings().global_learning:
            logger.debug("Learning disabled, skipping knowledge write %s/%s by %s", category, key, agent_id)
            return None

        lr = learning.learning_rate
        now = self._clock()
        with self._lock:
            entry = self._entries.get((agent_id, category, key))
            if entry is None:
                entry = KnowledgeEntry(
                    agent_id=agent_id,
                    agent_type=agent.type,
                    category=category,
                    key=key,
                    value=value,
                    confidence=self._default_confidence,
                    usage_count=1,
                    success_rate=outcome * 100,
                    tags=list(tags or []),
                    timestamp=now,
                )
                self._entries[(agent_id, category, key)] = entry
                evicted = self._enforce_capacity(agent_id, learning.memory_size, keep=entry)
            else:
                entry.value = value
                entry.usage_count += 1
                entry.success_rate = entry.success_rate * (1 - lr) + outcome * 100 * lr
                if tags is not None:
                    entry.tags = list(tags)
                entry.timestamp = now
                evicted = []
            n = entry.usage_count - 1
            entry.confidence = (self._default_confidence + n * entry.success_rate) / (n + 1)
            self._backend.save(KNOWLEDGE, entry.id, entry)
            snapshot = entry.model_copy(deep=True)

        for old in evicted:
            self._backend.delete(KNOWLEDGE, old.id)
            logger.debug("Evicted knowledge %s/%s of %s", old.category, old.key, agent_id)
        logger.debug(
            "Knowledge %s/%s by %s: rate=%.1f confidence=%.1f uses=%d",
            category, key, agent_id, snapshot.success_rate, snapshot.confidence, snapshot.usage_count,
        )
        if self._on_change is not None:
            self._on_change(snapshot)
        return snapshot

    def _enforce_capacity(self, agent_id: str, limit: int, keep: KnowledgeEntry) -> list[KnowledgeEntry]:
        """Evict the least-used, oldest entries of one agent beyond `limit`."""
        owned = [e for e in self._entries.values() if e.agent_id == agent_id and e is not keep]
        evicted: list[KnowledgeEntry] = []
        overflow = len(owned) + 1 - limit
        if overflow <= 0:
            return evicted
        owned.sort(key=lambda e: (e.usage_count, e.timestamp))
        for entry in owned[:overflow]:
            del self._entries[(entry.agent_id, entry.category, entry.key)]
            evicted.append(entry)
        return evicted

    def load(self, entries: list[KnowledgeEntry]) -> None:
        """Restore persisted entries (no events are emitted)."""
        with self._lock:
            for entry in entries:
                self._entries[(entry.agent_id, entry.category, entry.key)] = entry.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get(self, agent_id: str, category: str, key: str) -> KnowledgeEntry | None:
        with self._lock:
            entry = self._entries.get((agent_id, category, key))
            return entry.model_copy(deep=True) if entry else None

    def query(
        self,
        category: str | None = None,
        agent_type: str | None = None,
        tags_any: list[str] | None = None,
        text: str | None = None,
        requester: str | None = None,
        limit: int | None = None,
    ) -> list[KnowledgeEntry]:
        """
        Search entries, best first (confidence desc, then usage count desc).

        Args:
            category: Exact category match.
            agent_type: Only entries written by agents of this type.
            tags_any: Entries carrying at least one of these tags.
            text: Case-insensitive substring over key, category, tags and value.
            requester: The querying agent; private entries of other owners are
                hidden from it. None means an external observer, which only
                sees shared entries.
            limit: Maximum number of entries returned.
        """
        with self._lock:
            candidates = [e.model_copy(deep=True) for e in self._entries.values()]

        needle = text.lower() if text else None
        wanted_tags = set(tags_any or [])
        private_owners: dict[str, bool] = {}
        results: list[KnowledgeEntry] = []
        for entry in candidates:
            if category is not None and entry.category != category:
                continue
            if agent_type is not None and entry.agent_type != agent_type:
                continue
            if wanted_tags and not wanted_tags.intersection(entry.tags):
                continue
            if needle and needle not in _search_text(entry):
                continue
            if entry.agent_id != requester:
                if entry.agent_id not in private_owners:
                    private_owners[entry.agent_id] = not self._shares(entry.agent_id)
                if private_owners[entry.agent_id]:
                    continue
            results.append(entry)

        results.sort(key=lambda e: (-e.confidence, -e.usage_count))
        return results if limit is None else results[:limit]

    def _shares(self, agent_id: str) -> bool:
        try:
            return self._agent_lookup(agent_id).settings.learning.share_knowledge
        except AgentUnavailable:
            return True

    def entries(self) -> list[KnowledgeEntry]:
        with self._lock:
            return [e.model_copy(deep=True) for e in self._entries.values()]

    def stats(self) -> dict[str, Any]:
        """Summary of the store: totals, per-category counts, average confidence."""
        with self._lock:
            entries = list(self._entries.values())
        by_category: dict[str, int] = {}
        for e in entries:
            by_category[e.category] = by_category.get(e.category, 0) + 1
        return {
            "total": len(entries),
            "by_category": by_category,
            "average_confidence": (
                round(sum(e.confidence for e in entries) / len(entries), 1) if entries else 0.0
            ),
            "total_usage": sum(e.usage_count for e in entries),
        }

    def __len__(self) -> int:
        return len(self._entries)


def _search_text(entry: KnowledgeEntry) -> str:
    return " ".join([entry.key, entry.category, *entry.tags, str(entry.value)]).lower()
