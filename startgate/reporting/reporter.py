"""Status reporter — transition log, current snapshot, live subscriptions.

The orchestrator is the only writer. Readers either pull (``snapshot()``,
``events()``) or push-subscribe (``subscribe()``, ``stream()``,
``add_listener()``).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterator, Callable
from typing import Any

from ..health.fsm import Transition
from ..orchestrator.state import SystemSnapshot
from .store import TransitionStore

logger = logging.getLogger(__name__)

_CLOSED = None  # sentinel pushed to subscribers when the run ends


class StatusReporter:
    """Append-only transition log plus the latest SystemSnapshot."""

    def __init__(
        self,
        store: TransitionStore | None = None,
        queue_size: int = 100,
    ) -> None:
        self.store = store
        self.queue_size = queue_size
        self.run_id: str | None = None
        self._events: list[Transition] = []
        self._snapshot = SystemSnapshot()
        self._subscribers: list[asyncio.Queue[Transition | None]] = []
        self._listeners: list[Callable[[Transition], Any]] = []
        self._lock = threading.Lock()
        self._closed = False

    # -- writer side (orchestrator only) ---------------------------------------

    def begin(self, run_id: str, snapshot: SystemSnapshot) -> None:
        with self._lock:
            self.run_id = run_id
            self._snapshot = snapshot
        if self.store:
            self.store.start_run(run_id)

    def publish(self, snapshot: SystemSnapshot, transition: Transition | None = None) -> None:
        """Record a transition (if any) and swap in the new snapshot."""
        with self._lock:
            if transition is not None:
                self._events.append(transition)
            self._snapshot = snapshot

        if transition is None:
            return

        if self.store and self.run_id:
            try:
                self.store.record_transition(self.run_id, transition)
            except Exception:
                logger.exception("Failed to persist transition for %s", transition.service_id)

        for q in list(self._subscribers):
            try:
                q.put_nowait(transition)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping %s event", transition.service_id)

        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:
                logger.exception("Transition listener error")

    def close(self, aggregate: str, reason: str | None) -> None:
        """Mark the run finished and end every live stream."""
        self._closed = True
        if self.store and self.run_id:
            self.store.finish_run(self.run_id, aggregate, reason)
        for q in list(self._subscribers):
            try:
                q.put_nowait(_CLOSED)
            except asyncio.QueueFull:
                # make room so the stream still terminates
                q.get_nowait()
                q.put_nowait(_CLOSED)

    # -- reader side -----------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> SystemSnapshot:
        """The current snapshot; immutable, safe to hold on to."""
        with self._lock:
            return self._snapshot

    def events(self, service_id: str | None = None, since: int = 0) -> list[Transition]:
        """Transitions in the order they were published, from index ``since``."""
        with self._lock:
            events = self._events[since:]
        if service_id:
            events = [e for e in events if e.service_id == service_id]
        return events

    def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Transition | None]:
        """Queue receiving every future transition; ``None`` marks the end."""
        q: asyncio.Queue[Transition | None] = asyncio.Queue(maxsize=maxsize or self.queue_size)
        if self._closed:
            q.put_nowait(_CLOSED)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue[Transition | None]) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    async def stream(self) -> AsyncIterator[Transition]:
        """Iterate over live transitions until the run ends."""
        q = self.subscribe()
        try:
            while True:
                item = await q.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self.unsubscribe(q)

    def add_listener(self, callback: Callable[[Transition], Any]) -> None:
        """Call ``callback`` synchronously for every transition."""
        self._listeners.append(callback)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "closed": self._closed,
            "snapshot": self.snapshot().to_dict(),
            "events": [e.to_dict() for e in self.events()],
        }
