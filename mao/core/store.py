"""
State persistence for MAO.

Each owning component writes its records through a StateBackend, keyed by the
record id inside a named table (agents, tasks, messages, consensus, knowledge,
agent_settings, global_settings). Records are stored as JSON so any backend can
hold them.

Supports two storage backends:
- InMemoryBackend: Zero-dependency, ideal for quick experiments and testing.
- RedisBackend: Persistent, lets an orchestrator restore its state after a restart.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger("mao.store")

AGENTS = "agents"
TASKS = "tasks"
MESSAGES = "messages"
CONSENSUS = "consensus"
KNOWLEDGE = "knowledge"
AGENT_SETTINGS = "agent_settings"
GLOBAL_SETTINGS = "global_settings"


class StateBackend(ABC):
    """Abstract interface for orchestration state persistence."""

    @abstractmethod
    def save(self, table: str, key: str, record: BaseModel) -> None:
        """Insert or replace one record."""

    @abstractmethod
    def delete(self, table: str, key: str) -> None:
        """Remove one record if present."""

    @abstractmethod
    def load_all(self, table: str) -> list[dict[str, Any]]:
        """Return every record of a table as plain dicts."""

    @abstractmethod
    def append_bounded(self, table: str, record: BaseModel, limit: int) -> None:
        """Append to a ring-bounded table, evicting the oldest beyond `limit`."""


def _dump(record: BaseModel) -> str:
    return record.model_dump_json(by_alias=True)


class InMemoryBackend(StateBackend):
    """In-memory storage backend. Data is lost when the process exits."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, str]] = {}
        self._rings: dict[str, deque[str]] = {}
        self._lock = threading.Lock()

    def save(self, table: str, key: str, record: BaseModel) -> None:
        with self._lock:
            self._tables.setdefault(table, {})[key] = _dump(record)

    def delete(self, table: str, key: str) -> None:
        with self._lock:
            self._tables.get(table, {}).pop(key, None)

    def load_all(self, table: str) -> list[dict[str, Any]]:
        with self._lock:
            if table in self._rings:
                raw = list(self._rings[table])
            else:
                raw = list(self._tables.get(table, {}).values())
        return [json.loads(r) for r in raw]

    def append_bounded(self, table: str, record: BaseModel, limit: int) -> None:
        with self._lock:
            ring = self._rings.get(table)
            if ring is None or ring.maxlen != limit:
                ring = deque(ring or (), maxlen=limit)
                self._rings[table] = ring
            ring.append(_dump(record))


class RedisBackend(StateBackend):
    """Redis-backed persistent storage: one hash per table, a capped list for rings."""

    KEY_PREFIX = "mao:"

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Any = None) -> None:
        if client is None:
            try:
                import redis
            except ImportError as e:
                raise ImportError(
                    "Redis backend requires the 'redis' package. "
                    "Install it with: pip install redis"
                ) from e
            client = redis.Redis.from_url(redis_url, decode_responses=True)
        self._client = client

    def _key(self, table: str) -> str:
        return f"{self.KEY_PREFIX}{table}"

    def save(self, table: str, key: str, record: BaseModel) -> None:
        self._client.hset(self._key(table), key, _dump(record))

    def delete(self, table: str, key: str) -> None:
        self._client.hdel(self._key(table), key)

    def load_all(self, table: str) -> list[dict[str, Any]]:
        key = self._key(table)
        if self._client.type(key) == "list":
            return [json.loads(r) for r in self._client.lrange(key, 0, -1)]
        return [json.loads(r) for r in self._client.hgetall(key).values()]

    def append_bounded(self, table: str, record: BaseModel, limit: int) -> None:
        key = self._key(table)
        pipe = self._client.pipeline()
        pipe.rpush(key, _dump(record))
        pipe.ltrim(key, -limit, -1)
        pipe.execute()


def create_backend(kind: str, redis_url: str = "") -> StateBackend:
    """Build a backend from its config name ("memory" or "redis")."""
    if kind == "redis":
        logger.info("Using Redis state backend at %s", redis_url)
        return RedisBackend(redis_url=redis_url)
    if kind != "memory":
        raise ValueError(f"Unknown storage backend '{kind}'.")
    return InMemoryBackend()
