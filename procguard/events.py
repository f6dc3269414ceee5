"""
Status and error event fan-out.

Each supervisor owns an EventEmitter. Subscriber objects register a bound
method and are held by weak reference only, so a subscriber that goes away
is dropped without having to unsubscribe. Plain functions and lambdas have
no owner to outlive, so they are held until unsubscribed. Delivery is best
effort; every event carries an id so consumers can ignore duplicates.
"""

import asyncio
import itertools
import logging
import threading
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

from .classifier import ClassifiedError, Severity

logger = logging.getLogger(__name__)


def _event_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class StateEvent:
    """A managed process changed state."""

    process_id: str
    previous: Optional[str]
    state: str
    reason: Optional[str] = None
    severity: Severity = Severity.INFO
    timestamp: datetime = field(default_factory=datetime.now)
    event_id: str = field(default_factory=_event_id)

    type = "state"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "event_id": self.event_id,
            "process_id": self.process_id,
            "previous": self.previous,
            "state": self.state,
            "reason": self.reason,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ErrorEvent:
    """A classified error was recorded for a managed process."""

    process_id: str
    error: ClassifiedError
    timestamp: datetime = field(default_factory=datetime.now)
    event_id: str = field(default_factory=_event_id)

    type = "error"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "event_id": self.event_id,
            "process_id": self.process_id,
            "error": self.error.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


Event = Union[StateEvent, ErrorEvent]


class _StrongRef:
    """Callable with the weakref interface that owns its target."""

    __slots__ = ("target",)

    def __init__(self, target):
        self.target = target

    def __call__(self):
        return self.target


class EventEmitter:
    """Callback registry with non-owning references to subscriber objects."""

    def __init__(self):
        self._subscribers: dict[int, Callable] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Event], None]) -> int:
        """Register a callback. Returns a token for unsubscribe().

        Bound methods are referenced weakly: the caller must keep the
        subscriber object alive for as long as it wants events.
        """
        if hasattr(callback, "__self__") and hasattr(callback, "__func__"):
            ref = weakref.WeakMethod(callback)
        else:
            ref = _StrongRef(callback)

        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = ref
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return sum(1 for ref in self._subscribers.values() if ref() is not None)

    def emit(self, event: Event):
        """Deliver an event to every live subscriber."""
        with self._lock:
            items = list(self._subscribers.items())

        dead = []
        for token, ref in items:
            callback = ref()
            if callback is None:
                dead.append(token)
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber {token} failed on {event.type} event: {e}")

        if dead:
            with self._lock:
                for token in dead:
                    self._subscribers.pop(token, None)


class EventQueue:
    """Subscriber that buffers events in an asyncio queue.

    Used to stream events to remote consumers. Must be created on the event
    loop that emits. Oldest events are dropped when the queue is full.
    """

    def __init__(self, emitter: EventEmitter, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._emitter = emitter
        self._token = emitter.subscribe(self.put)

    def put(self, event: Event):
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    async def get(self) -> Event:
        return await self.queue.get()

    def close(self):
        self._emitter.unsubscribe(self._token)
