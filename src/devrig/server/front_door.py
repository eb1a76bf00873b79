from __future__ import annotations

import asyncio
import bisect
import itertools
import traceback
from pathlib import Path
from typing import List, Optional, Tuple

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response

from devrig.cli.formatter import OutputFormatter
from devrig.runtime.state import OrchestratorState
from devrig.server.event_bus import HmrEventBus
from devrig.utils.diagnostics import ServiceUnavailable


class PendingRequestQueue:
    """FIFO of requests parked while the front door is not accepting.

    Each parked request waits on its own future, ordered by a ticket taken
    on arrival. drain() wakes them in ticket order; fail_all() rejects them
    and refuses later arrivals.
    """

    def __init__(self) -> None:
        self._waiters: List[Tuple[int, asyncio.Future]] = []
        self._tickets = itertools.count()
        self.closed = False
        self.closed_reason: Optional[ServiceUnavailable] = None

    def __len__(self) -> int:
        return sum(1 for _, waiter in self._waiters if not waiter.done())

    def ticket(self) -> int:
        return next(self._tickets)

    def enqueue(self, ticket: Optional[int] = None) -> asyncio.Future:
        """Park a request; a ticket from an earlier wait keeps its original place."""
        if self.closed:
            raise self.closed_reason or ServiceUnavailable("Dev server is shutting down")
        if ticket is None:
            ticket = self.ticket()
        waiter = asyncio.get_running_loop().create_future()
        bisect.insort(self._waiters, (ticket, waiter), key=lambda entry: entry[0])
        return waiter

    def discard(self, waiter: asyncio.Future) -> None:
        self._waiters = [entry for entry in self._waiters if entry[1] is not waiter]

    def drain(self) -> int:
        """Wake every parked request in arrival order; returns how many were woken."""
        woken = 0
        waiters, self._waiters = self._waiters, []
        for _, waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
                woken += 1
        return woken

    def fail_all(self, error: ServiceUnavailable) -> int:
        self.closed = True
        self.closed_reason = error
        failed = 0
        waiters, self._waiters = self._waiters, []
        for _, waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)
                failed += 1
        return failed


class DevFrontDoor:
    """The single HTTP entry point of the dev server.

    Requests are parked until the orchestrator marks the server ready, and
    again while a server rebuild is being applied. Once accepting, each
    request is dispatched to whatever instance is live at that moment.
    """

    def __init__(
        self,
        state: OrchestratorState,
        event_bus: HmrEventBus,
        public_dir: Optional[Path] = None,
        overlay: bool = True,
    ) -> None:
        self.state = state
        self.event_bus = event_bus
        self.public_dir = public_dir
        self.overlay = overlay
        self.queue = PendingRequestQueue()
        self.asset_queue = PendingRequestQueue()
        self.holding = False
        self.closed = False
        self._ready: Optional[asyncio.Future] = None

    @property
    def ready(self) -> bool:
        return self._ready is not None and self._ready.done() and not self._ready.cancelled()

    @property
    def accepting(self) -> bool:
        return self.ready and not self.holding and not self.closed

    def mark_ready(self) -> None:
        """Resolve the readiness signal; it can only be resolved once."""
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
        if self._ready.done():
            return
        self._ready.set_result(None)
        if not self.holding:
            self.queue.drain()

    async def wait_ready(self) -> None:
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
        await asyncio.shield(self._ready)

    def hold(self) -> None:
        """Park new requests while the server target rebuilds."""
        self.holding = True

    def release(self) -> None:
        self.holding = False
        if self.ready and not self.closed:
            self.queue.drain()

    def assets_published(self) -> None:
        self.asset_queue.drain()

    def shutdown(self, reason: str = "Dev server is shutting down") -> None:
        """Reject everything parked and everything that arrives from now on."""
        if self.closed:
            return
        self.closed = True
        error = ServiceUnavailable(reason)
        self.queue.fail_all(error)
        self.asset_queue.fail_all(error)
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()

    async def wait_for_assets(self) -> None:
        """Block an asset request until the first client build has been published."""
        if self.closed:
            raise ServiceUnavailable("Dev server is shutting down")
        if self.state.assets.ready:
            return
        waiter = self.asset_queue.enqueue()
        try:
            await waiter
        finally:
            self.asset_queue.discard(waiter)

    async def dispatch(self, request: Request) -> Response:
        """Forward a request to the live server instance once the gate is open."""
        ticket = self.queue.ticket()
        try:
            while not self.accepting:
                if self.closed:
                    raise ServiceUnavailable("Dev server is shutting down")
                waiter = self.queue.enqueue(ticket)
                try:
                    await waiter
                finally:
                    self.queue.discard(waiter)
        except ServiceUnavailable as exc:
            return PlainTextResponse(str(exc), status_code=503)

        instance = self.state.live_instance
        if instance is None:
            return PlainTextResponse("Server instance is not loaded", status_code=503)

        try:
            return await instance.handle(request)
        except Exception as exc:
            OutputFormatter.log(f"Unhandled error in {request.method} {request.url.path}: {exc}", severity="error")
            body = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            if self.state.release:
                body = "Internal Server Error"
            return PlainTextResponse(body, status_code=500)

    def public_file(self, path: str) -> Optional[Path]:
        """Resolve a request path to a file in the public directory, if one exists."""
        if self.public_dir is None or not path:
            return None
        root = self.public_dir.resolve()
        candidate = (root / path.lstrip("/")).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            return None
        if candidate.is_file():
            return candidate
        return None
