from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from devrig.cli.formatter import OutputFormatter
from devrig.runtime.contracts import (
    CompilationRun,
    HotStatus,
    HotUpdateState,
    ServerUpdate,
    diff_module_hashes,
    transition_hot_update_state,
)
from devrig.runtime.loader import ArtifactLoader, ServerInstance
from devrig.runtime.state import OrchestratorState
from devrig.utils.diagnostics import HotReplacementDisabled, UnexpectedApplyError


@dataclass
class HotUpdateSession:
    """One attempt to bring the live server instance up to date with a run."""

    run: CompilationRun
    state: HotUpdateState = HotUpdateState.IDLE
    resolution: Optional[HotUpdateState] = None
    updated_modules: List[str] = field(default_factory=list)
    reloaded: bool = False
    error: Optional[Exception] = None

    def transition(self, target: HotUpdateState) -> None:
        self.state = transition_hot_update_state(self.state, target)
        if target in (HotUpdateState.APPLIED, HotUpdateState.FAILED):
            self.resolution = target


SessionListener = Callable[[HotUpdateSession], None]
FatalListener = Callable[[BaseException], None]


class HotUpdateCoordinator:
    """Keeps the live server instance in step with successful server compilations.

    At most one session runs at a time. Runs that arrive meanwhile are
    parked; only the newest parked run is processed once the session ends.
    """

    def __init__(
        self,
        state: OrchestratorState,
        loader: ArtifactLoader,
        on_resolved: Optional[SessionListener] = None,
        on_fatal: Optional[FatalListener] = None,
    ) -> None:
        self.state = state
        self.loader = loader
        self.on_resolved = on_resolved
        self.on_fatal = on_fatal

        self.sessions: List[HotUpdateSession] = []
        self.active_session: Optional[HotUpdateSession] = None
        self.max_concurrent_sessions = 0
        self.fatal_error: Optional[BaseException] = None

        self._active_count = 0
        self._pending: Optional[CompilationRun] = None
        self._worker: Optional[asyncio.Task] = None
        self._applied_hashes: Dict[str, str] = {}

    @property
    def busy(self) -> bool:
        return self.active_session is not None or self._pending is not None

    def boot(self, run: CompilationRun) -> ServerInstance:
        """Load the first live instance from a successful server run."""
        instance = self.loader.load()
        if instance.hot is None:
            instance.dispose()
            raise HotReplacementDisabled("Hot Module Replacement is disabled")

        previous = self.state.replace_instance(instance)
        if previous is not None and previous is not instance:
            previous.dispose()
        self._mark_applied(run)
        return instance

    def notify(self, run: CompilationRun) -> None:
        """Queue a successful server run for hot application."""
        if not run.succeeded or self.fatal_error is not None:
            return
        self._pending = run
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def wait_idle(self) -> None:
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    async def close(self) -> None:
        self._pending = None
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    async def _drain(self) -> None:
        while self._pending is not None:
            run, self._pending = self._pending, None
            session = HotUpdateSession(run=run)
            try:
                await self.run_session(session)
            except HotReplacementDisabled as exc:
                self.fatal_error = exc
                self._pending = None
                OutputFormatter.hmr(str(exc), severity="critical")
                if self.on_fatal is not None:
                    self.on_fatal(exc)
                return
            except Exception as exc:
                OutputFormatter.hmr(f"Hot update session failed: {exc}", severity="error")

    async def run_session(self, session: HotUpdateSession) -> HotUpdateSession:
        """Drive one session from checking to its resolution and back to idle."""
        self._active_count += 1
        self.max_concurrent_sessions = max(self.max_concurrent_sessions, self._active_count)
        self.active_session = session
        self.sessions.append(session)
        try:
            session.transition(HotUpdateState.CHECKING)
            instance = self.state.live_instance
            if instance is None or instance.hot is None:
                session.transition(HotUpdateState.FAILED)
                session.error = HotReplacementDisabled("Hot Module Replacement is disabled")
                raise session.error

            update = self._update_for(session.run)
            session.transition(HotUpdateState.APPLYING)
            try:
                updated = await instance.hot.apply(update)
            except Exception as exc:
                if instance.hot.status in (HotStatus.ABORT, HotStatus.FAIL):
                    OutputFormatter.hmr(f"Cannot apply update. {exc}", severity="warning")
                    session.transition(HotUpdateState.RELOADING)
                    self._reload(session, instance)
                else:
                    instance.hot.reset()
                    error = UnexpectedApplyError(f"Update failed: {exc}")
                    error.__cause__ = exc
                    session.error = error
                    OutputFormatter.hmr(str(error), severity="warning")
                    session.transition(HotUpdateState.FAILED)
            else:
                session.updated_modules = updated
                if not updated:
                    OutputFormatter.hmr("Nothing hot updated")
                else:
                    OutputFormatter.hmr("Updated modules:")
                    for module_id in updated:
                        OutputFormatter.hmr(f" - {module_id}")
                    OutputFormatter.hmr("Update applied", severity="success")
                self._mark_applied(session.run)
                session.transition(HotUpdateState.APPLIED)
        except HotReplacementDisabled:
            raise
        except Exception as exc:
            if session.resolution is not None:
                raise
            self._fail_session(session, exc)
        finally:
            self._active_count -= 1
            self.active_session = None
            if session.resolution is not None:
                session.transition(HotUpdateState.IDLE)
                if self.on_resolved is not None and not isinstance(session.error, HotReplacementDisabled):
                    self.on_resolved(session)
        return session

    def _fail_session(self, session: HotUpdateSession, exc: Exception) -> None:
        instance = self.state.live_instance
        if instance is not None and instance.hot is not None:
            instance.hot.reset()
        error = UnexpectedApplyError(f"Update failed: {exc}")
        error.__cause__ = exc
        session.error = error
        OutputFormatter.hmr(str(error), severity="error")
        session.transition(HotUpdateState.FAILED)

    def _reload(self, session: HotUpdateSession, previous: ServerInstance) -> None:
        try:
            instance = self.loader.load()
        except Exception as exc:
            previous.hot.reset()
            error = UnexpectedApplyError(f"Reload failed: {exc}")
            error.__cause__ = exc
            session.error = error
            OutputFormatter.hmr(f"{error}; keeping the previous instance", severity="error")
            session.transition(HotUpdateState.FAILED)
            return

        if instance.hot is not None:
            # a caching loader hands back the aborted instance itself
            instance.hot.reset()
        replaced = self.state.replace_instance(instance)
        if replaced is not None and replaced is not instance:
            replaced.dispose()
        session.reloaded = True
        self._mark_applied(session.run)
        OutputFormatter.hmr("App has been reloaded", severity="warning")
        session.transition(HotUpdateState.APPLIED)

    def _update_for(self, run: CompilationRun) -> ServerUpdate:
        changed, removed = diff_module_hashes(self._applied_hashes, run.module_hashes)
        return ServerUpdate(
            hash=run.hash,
            previous_hash=self.state.server_hash,
            changed=changed,
            removed=removed,
        )

    def _mark_applied(self, run: CompilationRun) -> None:
        self._applied_hashes = dict(run.module_hashes)
        self.state.server_hash = run.hash
