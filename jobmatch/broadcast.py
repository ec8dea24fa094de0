"""
In-process fan-out of status events to per-session subscribers.

Subscribers register for one session id and receive events through a
bounded queue. Broadcasting never blocks: a subscriber whose queue is full
loses the event and its drop counter is incremented.
"""

from __future__ import annotations

import queue
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from jobmatch.models import StatusEvent


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(eq=False)
class Subscription:
    session_id: str
    events: queue.Queue[StatusEvent]
    subscription_id: str = field(default_factory=lambda: f"sub_{uuid.uuid4().hex[:12]}")
    dropped: int = 0

    def get(self, timeout: float | None = None) -> StatusEvent | None:
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def offer(self, event: StatusEvent) -> bool:
        try:
            self.events.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False


class SessionBroadcaster:
    def __init__(self, *, default_buffer: int = 16) -> None:
        self._lock = ReadWriteLock()
        self._subscribers: dict[str, set[Subscription]] = {}
        self._default_buffer = max(1, int(default_buffer))

    def subscribe(self, session_id: str, *, maxsize: int | None = None) -> Subscription:
        sub = Subscription(
            session_id=str(session_id),
            events=queue.Queue(maxsize=max(1, int(maxsize or self._default_buffer))),
        )
        with self._lock.write():
            self._subscribers.setdefault(sub.session_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock.write():
            subs = self._subscribers.get(sub.session_id)
            if not subs:
                return
            subs.discard(sub)
            if not subs:
                self._subscribers.pop(sub.session_id, None)

    def broadcast(self, event: StatusEvent) -> int:
        """Deliver to every subscriber of the event's session; returns delivered count."""
        with self._lock.read():
            subs = list(self._subscribers.get(event.session_id, ()))
            return sum(1 for sub in subs if sub.offer(event))

    def subscriber_count(self, session_id: str) -> int:
        with self._lock.read():
            return len(self._subscribers.get(str(session_id), ()))
