"""HMR event bus - fans compile notifications out to connected browsers."""

import asyncio
import threading
import time
from typing import Any, Dict, List, Optional


class HmrEventBus:
    """Thread-safe event bus for the hot-reload event stream.

    Compile results are published synchronously; each browser connection
    reads them asynchronously from its own asyncio queue. The last ``built``
    payload is kept so new connections can be brought in sync immediately.
    """

    def __init__(self, max_queue_size: int = 100):
        self._subscribers: List[asyncio.Queue] = []
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._max_queue_size = max_queue_size
        self.last_built: Optional[Dict[str, Any]] = None

    def set_loop(self, loop: asyncio.AbstractEventLoop):
        """Set the asyncio event loop for thread-safe publishing."""
        self._loop = loop

    def subscribe(self) -> asyncio.Queue:
        """Create a new subscription queue for one event-stream consumer."""
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                pass
        q: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, action: str, data: Dict[str, Any]):
        """Publish an event to all subscribers. Thread-safe.

        Args:
            action: 'building', 'built' or 'sync'
            data: event payload (name, hash, time, errors, warnings)
        """
        event = {"action": action, "timestamp": time.time(), **data}
        if action == "built":
            self.last_built = event

        with self._lock:
            subscribers = list(self._subscribers)

        on_loop_thread = False
        if self._loop is not None:
            try:
                on_loop_thread = asyncio.get_running_loop() is self._loop
            except RuntimeError:
                on_loop_thread = False

        for q in subscribers:
            if self._loop is not None and self._loop.is_running() and not on_loop_thread:
                self._loop.call_soon_threadsafe(self._safe_put, q, event)
            else:
                self._safe_put(q, event)

    def sync_event(self) -> Optional[Dict[str, Any]]:
        """The payload a freshly connected browser should start from."""
        if self.last_built is None:
            return None
        return {**self.last_built, "action": "sync"}

    def _safe_put(self, q: asyncio.Queue, event: dict):
        try:
            q.put_nowait(event)
        except asyncio.QueueFull:
            # a stalled browser tab misses intermediate events; the next
            # 'built' event carries the full state again
            pass
