"""
EventHub — The push channel through which observers learn of state changes.

Every agent transition, task update, message, consensus change and knowledge
write is published here as an Event. Subscribers (the WebSocket endpoint, the
metrics collector, the async runtime) receive events synchronously in publish
order. The hub also keeps a bounded recording of recent events that can be
exported to JSON for post-hoc debugging.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("mao.events")


class EventType(str, Enum):
    """Event kinds pushed to external observers."""
    AGENT_UPDATE = "agent-update"
    AGENTS_LIST = "agents-list"
    MESSAGE = "message"
    TASK_UPDATE = "task-update"
    CONSENSUS_REQUEST = "consensus-request"
    KNOWLEDGE_UPDATE = "knowledge-update"
    SETTINGS_UPDATE = "settings-update"
    ERROR = "error"


@dataclass
class Event:
    """A single published event."""
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Event":
        return cls(
            type=EventType(d["type"]),
            timestamp=d["timestamp"],
            seq=d.get("seq", 0),
            data=d.get("data", {}),
        )


EventCallback = Callable[[Event], None]


class EventHub:
    """
    Publish/subscribe hub for orchestration events.

    Usage:
        hub = EventHub()
        unsubscribe = hub.subscribe(lambda e: print(e.type))
        hub.emit(EventType.TASK_UPDATE, {"task": {...}})
        unsubscribe()
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._events: deque[Event] = deque(maxlen=history_size)
        self._subscribers: dict[int, tuple[EventCallback, frozenset[EventType] | None]] = {}
        self._next_token = 0
        self._seq = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> Event:
        """
        Publish an event to every matching subscriber.

        A failing subscriber is logged and skipped; it never aborts the
        mutation that produced the event.
        """
        with self._lock:
            self._seq += 1
            event = Event(type=event_type, data=data or {}, seq=self._seq)
            self._events.append(event)
            subscribers = list(self._subscribers.values())

        for callback, types in subscribers:
            if types is not None and event_type not in types:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event_type.value)
        logger.debug("Event %d: %s", event.seq, event_type.value)
        return event

    def subscribe(
        self,
        callback: EventCallback,
        types: list[EventType] | None = None,
    ) -> Callable[[], None]:
        """
        Register a callback; returns a function that unsubscribes it.

        Args:
            callback: Called with every matching Event.
            types: Restrict delivery to these event types (default: all).
        """
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (callback, frozenset(types) if types else None)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @property
    def events(self) -> list[Event]:
        with self._lock:
            return list(self._events)

    def events_by_type(self, event_type: EventType) -> list[Event]:
        return [e for e in self.events if e.type == event_type]

    def timeline(self) -> list[dict[str, Any]]:
        """One line per recorded event, for replay views."""
        return [
            {"seq": e.seq, "timestamp": e.timestamp, "type": e.type.value, "summary": _event_summary(e)}
            for e in self.events
        ]

    def export_json(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        events = self.events
        with open(path, "w", encoding="utf-8") as f:
            json.dump(
                {"event_count": len(events), "events": [e.to_dict() for e in events]},
                f, indent=2, ensure_ascii=False, default=str,
            )
        logger.info("Events exported to %s (%d events)", path, len(events))

    @staticmethod
    def load_json(path: str | Path) -> list[Event]:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return [Event.from_dict(e) for e in data.get("events", [])]


def _event_summary(event: Event) -> str:
    """Generate a one-line human-readable summary of an event."""
    d = event.data
    match event.type:
        case EventType.AGENT_UPDATE:
            agent = d.get("agent", {})
            return f"Agent {agent.get('id', '?')}: {agent.get('status', '?')}"
        case EventType.TASK_UPDATE:
            task = d.get("task", {})
            return f"Task {task.get('id', '?')}: {task.get('status', '?')}"
        case EventType.MESSAGE:
            msg = d.get("message", {})
            return f"Message {msg.get('from', '?')} → {msg.get('to', '?')} ({msg.get('type', '?')})"
        case EventType.CONSENSUS_REQUEST:
            req = d.get("request", {})
            return f"Consensus {req.get('action', '?')}: {req.get('status', '?')}"
        case EventType.KNOWLEDGE_UPDATE:
            entry = d.get("entry", {})
            return f"Knowledge {entry.get('category', '?')}/{entry.get('key', '?')}"
        case EventType.ERROR:
            return f"Error: {str(d.get('error', ''))[:60]}"
        case _:
            return event.type.value
