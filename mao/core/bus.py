"""
Message Bus — Point-to-point and broadcast delivery between agents.

Every message is validated against the set of known participants, appended to
a bounded ring of recent history (oldest evicted first) and delivered
synchronously to the subscribers whose filter matches it. Broadcast is a
topic: a broadcast message reaches whoever is subscribed at send time and is
never copied into per-recipient mailboxes.

Ordering: messages from one sender are delivered in send order (a per-sender
lock serializes append + delivery). No ordering is promised across senders.

Usage:
    bus = MessageBus(is_known=registry.__contains__)
    sub = bus.subscribe(MessageFilter(recipient="critic-1a2b3c4d"))
    bus.send(Message(from_agent="planner-9f8e7d6c", to_agent="broadcast",
                     type=MessageType.NOTIFICATION, content="plan ready"))
    msg = sub.get(timeout=1.0)
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterator

from mao.core.errors import UnknownParticipant
from mao.core.models import BROADCAST, ORCHESTRATOR, Message, MessageType
from mao.core.store import MESSAGES, InMemoryBackend, StateBackend

logger = logging.getLogger("mao.bus")

DEFAULT_HISTORY_SIZE = 100


@dataclass(frozen=True)
class MessageFilter:
    """
    Selects messages for a subscriber. Unset fields match everything.

    `recipient` matches messages sent directly to it and every broadcast.
    """
    sender: str | None = None
    recipient: str | None = None
    types: frozenset[MessageType] | None = None

    def matches(self, message: Message) -> bool:
        if self.sender is not None and message.from_agent != self.sender:
            return False
        if self.recipient is not None and message.to_agent not in (self.recipient, BROADCAST):
            return False
        if self.types is not None and message.type not in self.types:
            return False
        return True


class Subscription:
    """
    A lazy stream of matching messages, starting from the moment of subscribing.

    Iterating blocks until the next message arrives and ends only after
    `close()`. Use `get(timeout)` or `drain()` for non-blocking access.

    At most `maxsize` unread messages are kept; a reader that falls behind
    loses the oldest ones first (counted in `dropped`).
    """

    _CLOSED = object()

    def __init__(self, bus: "MessageBus", message_filter: MessageFilter, maxsize: int) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be positive, got {maxsize}")
        self.filter = message_filter
        self.maxsize = maxsize
        self._bus = bus
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._put_lock = threading.Lock()
        self._dropped = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> int:
        return self._dropped

    def _deliver(self, message: Message) -> None:
        self._offer(message)

    def _offer(self, item: object) -> None:
        with self._put_lock:
            # Nothing follows the close marker, so it is never the one evicted.
            if self._closed and item is not self._CLOSED:
                return
            while True:
                try:
                    self._queue.put_nowait(item)
                    return
                except queue.Full:
                    pass
                try:
                    evicted = self._queue.get_nowait()
                except queue.Empty:
                    continue
                self._dropped += 1
                logger.debug("Subscription full; dropped message %s", evicted.id)

    def get(self, timeout: float | None = None) -> Message | None:
        """Next message, or None on timeout / after close."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            return None
        return item

    def drain(self) -> list[Message]:
        """Every message received so far that has not been consumed yet."""
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not self._CLOSED:
                items.append(item)
        return items

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._unsubscribe(self)
        self._offer(self._CLOSED)

    def __iter__(self) -> Iterator[Message]:
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                return
            yield item

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


MessageCallback = Callable[[Message], None]


class MessageBus:
    """
    Validating, bounded, publish/subscribe message bus.

    Args:
        is_known: Predicate telling whether an id names a registered agent.
        history_size: Size of the recent-history ring.
        backend: Where the ring is mirrored for restore.
    """

    def __init__(
        self,
        is_known: Callable[[str], bool] | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        backend: StateBackend | None = None,
    ) -> None:
        self._is_known = is_known or (lambda _participant: True)
        self._history: deque[Message] = deque(maxlen=history_size)
        self._history_size = history_size
        self._backend = backend or InMemoryBackend()
        self._subscriptions: list[Subscription] = []
        self._callbacks: dict[int, tuple[MessageCallback, MessageFilter]] = {}
        self._next_token = 0
        self._sender_locks: dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(self, message: Message) -> Message:
        """
        Validate, record and deliver a message.

        Raises:
            UnknownParticipant: If sender or recipient is not a known agent,
                the orchestrator, or (recipient only) the broadcast topic.
        """
        if message.from_agent != ORCHESTRATOR and not self._is_known(message.from_agent):
            raise UnknownParticipant(message.from_agent, "sender")
        if message.to_agent not in (BROADCAST, ORCHESTRATOR) and not self._is_known(message.to_agent):
            raise UnknownParticipant(message.to_agent, "recipient")

        with self._sender_lock(message.from_agent):
            with self._lock:
                self._history.append(message)
                subscriptions = [s for s in self._subscriptions if s.filter.matches(message)]
                callbacks = [cb for cb, f in self._callbacks.values() if f.matches(message)]
            self._backend.append_bounded(MESSAGES, message, self._history_size)

            for sub in subscriptions:
                sub._deliver(message)
            for callback in callbacks:
                try:
                    callback(message)
                except Exception:
                    logger.exception("Message callback failed for %s", message.id)

        logger.debug(
            "Message %s: %s -> %s (%s)",
            message.id, message.from_agent, message.to_agent, message.type.value,
        )
        return message

    def _sender_lock(self, sender: str) -> threading.RLock:
        with self._lock:
            lock = self._sender_locks.get(sender)
            if lock is None:
                lock = self._sender_locks[sender] = threading.RLock()
            return lock

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    def subscribe(
        self,
        message_filter: MessageFilter | None = None,
        maxsize: int | None = None,
    ) -> Subscription:
        """
        Open a stream of messages sent from now on that match `message_filter`.

        Args:
            maxsize: Unread messages kept before the oldest is dropped
                (default: the history size).
        """
        sub = Subscription(self, message_filter or MessageFilter(), self._history_size if maxsize is None else maxsize)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def on_message(
        self,
        callback: MessageCallback,
        message_filter: MessageFilter | None = None,
    ) -> Callable[[], None]:
        """Register a synchronous callback subscriber; returns its unsubscribe handle."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._callbacks[token] = (callback, message_filter or MessageFilter())

        def unsubscribe() -> None:
            with self._lock:
                self._callbacks.pop(token, None)

        return unsubscribe

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions) + len(self._callbacks)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, limit: int | None = None) -> list[Message]:
        """The most recent `limit` messages (all retained if None), newest first."""
        with self._lock:
            recent = list(self._history)
        recent.reverse()
        return recent if limit is None else recent[:max(limit, 0)]

    def load(self, messages: list[Message]) -> None:
        """Restore the history ring (oldest first); subscribers are not notified."""
        with self._lock:
            self._history.extend(messages)

    def __len__(self) -> int:
        return len(self._history)
