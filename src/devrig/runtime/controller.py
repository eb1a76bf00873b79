from __future__ import annotations

import asyncio
import time
import webbrowser
from pathlib import Path
from typing import List, Optional

import uvicorn

from devrig.build.clean import clean_dir
from devrig.build.compiler import TargetCompiler
from devrig.build.targets import HOT_CLIENT_MODULE, BuildTarget, create_build_targets, with_hot_client
from devrig.cli.formatter import OutputFormatter
from devrig.core.context import DevrigContext
from devrig.runtime.contracts import CompilationRun, CompileEvent
from devrig.runtime.hot import HotUpdateCoordinator, HotUpdateSession
from devrig.runtime.loader import ArtifactLoader
from devrig.runtime.state import OrchestratorState
from devrig.runtime.watcher import CompilationWatcher, Subscription
from devrig.server.app import create_front_door_app
from devrig.server.event_bus import HmrEventBus
from devrig.server.front_door import DevFrontDoor
from devrig.server.hot_client import hot_client_modules
from devrig.utils.diagnostics import DevrigError, HotReplacementDisabled


def external_entry_files(target: BuildTarget) -> List[Path]:
    """Entry modules that live outside the target's source tree."""
    context = target.context.resolve()
    files: List[Path] = []
    for modules in target.entries.values():
        for module in modules:
            if module == HOT_CLIENT_MODULE:
                continue
            path = (target.context / module).resolve()
            try:
                path.relative_to(context)
            except ValueError:
                files.append(path)
    return files


class DevUvicornServer(uvicorn.Server):
    """uvicorn server that tells the front door when a shutdown signal arrives."""

    def __init__(self, config: uvicorn.Config, on_exit) -> None:
        super().__init__(config)
        self._on_exit = on_exit
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def serve(self, sockets=None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def handle_exit(self, sig, frame) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._on_exit)
        super().handle_exit(sig, frame)

    @property
    def bound_port(self) -> Optional[int]:
        for server in getattr(self, "servers", []):
            for sock in server.sockets:
                return sock.getsockname()[1]
        return None


class DevServerOrchestrator:
    """Runs the client and server watchers, the hot-update coordinator and the front door.

    start() cleans the output and begins watching; the front door holds
    requests until both targets have built once and the server instance has
    been loaded. serve() additionally runs the HTTP listener until shutdown.
    """

    def __init__(
        self,
        root_dir: Path,
        release: bool = False,
        silent: bool = False,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        self.context = DevrigContext.from_root(root_dir)
        self.release = release
        self.silent = silent
        self.host = host or self.context.server.host
        self.port = self.context.server.port if port is None else port

        client_target, server_target = create_build_targets(self.context, release=release)
        client_target = with_hot_client(client_target)
        self.state = OrchestratorState(
            context=self.context,
            client_target=client_target,
            server_target=server_target,
            release=release,
        )

        watch = self.context.watch
        self.client_watcher = CompilationWatcher(
            TargetCompiler(client_target, virtual_modules=hot_client_modules(overlay=not release)),
            interval_ms=watch.interval_ms,
            debounce_ms=watch.debounce_ms,
            exclude_patterns=watch.exclude_patterns,
            extra_roots=external_entry_files(client_target),
        )
        self.server_watcher = CompilationWatcher(
            TargetCompiler(server_target),
            interval_ms=watch.interval_ms,
            debounce_ms=watch.debounce_ms,
            exclude_patterns=watch.exclude_patterns,
        )

        self.loader = ArtifactLoader(
            server_target.output.path,
            entry=self.context.build.server_entry,
            hot=self.context.server.hot,
        )
        self.coordinator = HotUpdateCoordinator(
            self.state,
            self.loader,
            on_resolved=self._on_session_resolved,
            on_fatal=self._fail,
        )

        self.event_bus = HmrEventBus()
        self.front_door = DevFrontDoor(
            self.state,
            self.event_bus,
            public_dir=self.context.public_path,
            overlay=not release,
        )
        self.app = create_front_door_app(self.front_door)

        self.fatal_error: Optional[BaseException] = None
        self.started_at: Optional[float] = None
        self.booted = False

        self._client_ready = False
        self._server_run: Optional[CompilationRun] = None
        self._server_compiling = False
        self._tasks: List[asyncio.Task] = []
        self._subscriptions: List[Subscription] = []
        self._fatal_event = asyncio.Event()
        self._server: Optional[DevUvicornServer] = None

    async def start(self) -> None:
        """Clean the output directory and start both watch streams."""
        self._check_layout()
        self.started_at = time.monotonic()
        self.event_bus.set_loop(asyncio.get_running_loop())

        removed = clean_dir(self.context.output_path)
        if removed:
            OutputFormatter.log(f"Cleaned {len(removed)} entries from {self.context.output_path}")

        self._subscriptions = [
            self.client_watcher.subscribe(self._on_compile_event),
            self.server_watcher.subscribe(self._on_compile_event),
        ]
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._consume_client(), name="devrig-client-watch"),
            loop.create_task(self._consume_server(), name="devrig-server-watch"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._on_task_done)

    async def serve(self) -> None:
        """Run until a shutdown signal or an unrecoverable error; re-raise the latter."""
        await self.start()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
            timeout_graceful_shutdown=1,
        )
        self._server = DevUvicornServer(config, on_exit=self.front_door.shutdown)

        loop = asyncio.get_running_loop()
        serve_task = loop.create_task(self._server.serve())
        fatal_task = loop.create_task(self._fatal_event.wait())
        announce_task = loop.create_task(self._announce_when_ready())
        try:
            await asyncio.wait({serve_task, fatal_task}, return_when=asyncio.FIRST_COMPLETED)
            if not serve_task.done():
                self._server.should_exit = True
                self.front_door.shutdown()
            await serve_task
        finally:
            fatal_task.cancel()
            announce_task.cancel()
            await self.stop()

        if self.fatal_error is not None:
            raise self.fatal_error

    async def stop(self) -> None:
        """Stop watching, reject parked requests and drop the live instance."""
        if self.state.stopping:
            return
        self.state.stopping = True

        self.client_watcher.stop()
        self.server_watcher.stop()
        self.front_door.shutdown()
        if self._server is not None:
            self._server.should_exit = True

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.coordinator.close()

        for subscription in self._subscriptions:
            subscription.cancel()

        instance = self.state.live_instance
        if instance is not None:
            instance.dispose()
            self.state.live_instance = None

    @property
    def url(self) -> str:
        host = "localhost" if self.host in ("0.0.0.0", "::", "") else self.host
        port = self.port
        if self._server is not None and self._server.bound_port:
            port = self._server.bound_port
        return f"http://{host}:{port}/"

    async def _announce_when_ready(self) -> None:
        try:
            await self.front_door.wait_ready()
        except asyncio.CancelledError:
            return
        OutputFormatter.log(f"Dev server running at {self.url}", severity="success")
        if not self.silent and self.context.server.open_browser:
            await asyncio.to_thread(webbrowser.open, self.url)

    async def _consume_client(self) -> None:
        async for run in self.client_watcher.runs():
            self.state.assets.publish(run)
            if run.succeeded:
                self.front_door.assets_published()
            self.event_bus.publish("built", self._built_payload(run))
            if run.succeeded and not self._client_ready:
                self._client_ready = True
                self._boot()

    async def _consume_server(self) -> None:
        async for run in self.server_watcher.runs():
            if not run.succeeded:
                # the previous instance keeps serving until a good build arrives
                self._release()
                continue
            if not self.booted:
                self._server_run = run
                self._boot()
                continue
            self.coordinator.notify(run)

    def _boot(self) -> None:
        if self.booted or not self._client_ready or self._server_run is None:
            return
        run, self._server_run = self._server_run, None

        OutputFormatter.log("Launching server...")
        try:
            self.coordinator.boot(run)
        except HotReplacementDisabled as exc:
            self._fail(exc)
            return
        except Exception as exc:
            OutputFormatter.log(
                f"Server entry failed to load: {exc}; waiting for the next successful build",
                severity="error",
            )
            return

        self.booted = True
        self.front_door.mark_ready()
        elapsed = int((time.monotonic() - (self.started_at or time.monotonic())) * 1000)
        OutputFormatter.log(f"Server launched after {elapsed} ms", severity="success")

    def _on_compile_event(self, event: CompileEvent, run: CompilationRun) -> None:
        is_server = run.target == self.state.server_target.name
        if event == CompileEvent.COMPILE_START:
            OutputFormatter.compile_started(run.target)
            if is_server:
                self._server_compiling = True
                if self.booted:
                    self.front_door.hold()
            else:
                self.event_bus.publish("building", {"name": run.target})
            return

        if is_server:
            self._server_compiling = False
        OutputFormatter.compile_finished(run)

    def _on_session_resolved(self, session: HotUpdateSession) -> None:
        self._release()

    def _release(self) -> None:
        if self._server_compiling or self.coordinator.busy:
            return
        self.front_door.release()

    def _built_payload(self, run: CompilationRun) -> dict:
        return {
            "name": run.target,
            "hash": run.hash or self.state.assets.hash,
            "time": run.duration_ms,
            "errors": [diagnostic.model_dump() for diagnostic in run.errors],
            "warnings": [diagnostic.model_dump() for diagnostic in run.warnings],
        }

    def _fail(self, error: BaseException) -> None:
        if self.fatal_error is None:
            self.fatal_error = error
            OutputFormatter.log(str(error), severity="critical")
        self._fatal_event.set()

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._fail(error)

    def _check_layout(self) -> None:
        source = self.context.source_path.resolve()
        output = self.context.output_path.resolve()
        if output == source or source in output.parents:
            raise DevrigError(f"Output directory {output} must not be inside the source directory {source}")
