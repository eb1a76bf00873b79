from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple

from devrig.build.compiler import TargetCompiler
from devrig.build.targets import TransformPolicy
from devrig.runtime.contracts import (
    CompilationRun,
    CompileEvent,
    WatcherEvent,
    WatcherState,
    transition_watcher_state,
)

CompileListener = Callable[[CompileEvent, CompilationRun], None]


@dataclass(frozen=True)
class WatcherPollResult:
    """Result from one watcher poll cycle."""

    should_compile: bool
    changed_paths: List[str]


class PollingWatcher:
    """Polling-based file watcher over one or more roots with exclude filters and debounce."""

    def __init__(
        self,
        roots: Iterable[Path],
        debounce_ms: int = 200,
        exclude_patterns: Optional[List[str]] = None,
        include: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.roots: Tuple[Path, ...] = tuple(dict.fromkeys(roots))
        self.debounce_ms = debounce_ms
        self.exclude_patterns = exclude_patterns or []
        self.include = include

        self.state: WatcherState = WatcherState.STOPPED
        self._snapshot: Dict[str, Tuple[int, int]] = {}
        self._pending_changes: Set[str] = set()
        self._last_change_at: Optional[float] = None

    def start(self) -> None:
        """Start watching and take the initial file snapshot."""
        self.state = transition_watcher_state(self.state, WatcherEvent.START)
        self._snapshot = self._build_snapshot()
        self._pending_changes.clear()
        self._last_change_at = None

    def stop(self) -> None:
        self.state = transition_watcher_state(self.state, WatcherEvent.STOP)

    def complete_compile(self) -> None:
        """Return to watching once the triggered compilation has resolved."""
        if self.state != WatcherState.COMPILING:
            return
        self.state = transition_watcher_state(self.state, WatcherEvent.COMPILE_FINISHED)

    def poll(self, now: float) -> WatcherPollResult:
        """Execute one poll cycle and report whether the debounce window allows a compile."""
        if self.state == WatcherState.STOPPED:
            raise RuntimeError("PollingWatcher is not started. Call start() before poll().")

        if self.state == WatcherState.COMPILING:
            return WatcherPollResult(should_compile=False, changed_paths=[])

        current_snapshot = self._build_snapshot()
        changed_paths = self._detect_changes(self._snapshot, current_snapshot)
        self._snapshot = current_snapshot

        if changed_paths:
            self._pending_changes.update(changed_paths)
            self._last_change_at = now
            self._enter_debounce_window()
            return WatcherPollResult(should_compile=False, changed_paths=[])

        if self.state == WatcherState.DEBOUNCING and self._last_change_at is not None:
            if (now - self._last_change_at) >= self.debounce_ms / 1000.0:
                self.state = transition_watcher_state(self.state, WatcherEvent.DEBOUNCE_ELAPSED)
                paths = sorted(self._pending_changes)
                self._pending_changes.clear()
                self._last_change_at = None
                return WatcherPollResult(should_compile=True, changed_paths=paths)

        return WatcherPollResult(should_compile=False, changed_paths=[])

    def tracked_paths(self) -> Set[str]:
        return set(self._snapshot.keys())

    def _enter_debounce_window(self) -> None:
        self.state = transition_watcher_state(self.state, WatcherEvent.FILE_CHANGE)
        self.state = transition_watcher_state(self.state, WatcherEvent.DEBOUNCE_WINDOW_OPEN)

    def _build_snapshot(self) -> Dict[str, Tuple[int, int]]:
        snapshot: Dict[str, Tuple[int, int]] = {}
        for root in self.roots:
            if root.is_file():
                self._record(snapshot, root, root.name, root.as_posix())
                continue
            if not root.exists():
                continue
            for path in root.rglob("*"):
                if not path.is_file():
                    continue
                relative = path.relative_to(root).as_posix()
                if self.include is not None and not self.include(relative):
                    continue
                self._record(snapshot, path, relative, relative)
        return snapshot

    def _record(self, snapshot: Dict[str, Tuple[int, int]], path: Path, relative: str, key: str) -> None:
        if self._is_excluded(relative, path.name):
            return
        try:
            stat = path.stat()
        except FileNotFoundError:
            return
        snapshot[key] = (stat.st_mtime_ns, stat.st_size)

    def _is_excluded(self, relative_path: str, filename: str) -> bool:
        return any(
            fnmatch(relative_path, pattern) or fnmatch(filename, pattern)
            for pattern in self.exclude_patterns
        )

    @staticmethod
    def _detect_changes(previous: Dict[str, Tuple[int, int]], current: Dict[str, Tuple[int, int]]) -> Set[str]:
        changes: Set[str] = set(current.keys() ^ previous.keys())
        for existing in previous.keys() & current.keys():
            if previous[existing] != current[existing]:
                changes.add(existing)
        return changes


class Subscription:
    """Handle returned by CompilationWatcher.subscribe(); cancel() detaches the listener."""

    def __init__(self, listeners: List[CompileListener], listener: CompileListener) -> None:
        self._listeners = listeners
        self._listener = listener
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._listener in self._listeners:
            self._listeners.remove(self._listener)


class CompilationWatcher:
    """Turns one build target into a stream of completed compilation runs.

    The stream starts with the initial build and then yields one run per
    debounced batch of source changes. Runs of one target never overlap.
    Listeners are told about compile-start before the work begins and about
    compile-done / compile-error after output has been flushed.
    """

    def __init__(
        self,
        compiler: TargetCompiler,
        interval_ms: int = 500,
        debounce_ms: int = 200,
        exclude_patterns: Optional[List[str]] = None,
        extra_roots: Iterable[Path] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.compiler = compiler
        self.name = compiler.target.name
        self.interval_ms = interval_ms
        self.clock = clock
        self.watcher = PollingWatcher(
            roots=[compiler.target.context, *extra_roots],
            debounce_ms=debounce_ms,
            exclude_patterns=exclude_patterns,
            include=self._is_compiled,
        )
        self.last_run: Optional[CompilationRun] = None
        self.last_good_run: Optional[CompilationRun] = None
        self._listeners: List[CompileListener] = []
        self._stop_event: Optional[asyncio.Event] = None

    def subscribe(self, listener: CompileListener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self._listeners, listener)

    async def compile_once(self, changed_paths: Iterable[str] = ()) -> CompilationRun:
        """Run one compilation off the event loop and report its lifecycle events."""
        run = CompilationRun(target=self.name, changed_paths=sorted(changed_paths))
        self._emit(CompileEvent.COMPILE_START, run)
        await asyncio.to_thread(self.compiler.compile, run.changed_paths, run)

        self.last_run = run
        if run.succeeded:
            self.last_good_run = run
            self._emit(CompileEvent.COMPILE_DONE, run)
        else:
            self._emit(CompileEvent.COMPILE_ERROR, run)
        return run

    async def runs(self) -> AsyncIterator[CompilationRun]:
        """Lazily yield completed runs until stop() is called.

        Calling runs() again after the stream ended starts a fresh watch.
        """
        self._stop_event = asyncio.Event()
        self.watcher.start()
        interval = max(self.interval_ms / 1000.0, 0.05)
        try:
            yield await self.compile_once()
            while not self._stop_event.is_set():
                result = self.watcher.poll(now=self.clock())
                if result.should_compile:
                    try:
                        run = await self.compile_once(result.changed_paths)
                    finally:
                        self.watcher.complete_compile()
                    yield run
                    continue
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self.watcher.state != WatcherState.STOPPED:
                self.watcher.stop()

    def stop(self) -> None:
        """Cancel the running stream; it ends at its next suspension point."""
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def is_watching(self) -> bool:
        return self.watcher.state != WatcherState.STOPPED

    def _is_compiled(self, relative_path: str) -> bool:
        rule = self.compiler.target.rule_for(relative_path)
        return rule is not None and rule.policy != TransformPolicy.IGNORE

    def _emit(self, event: CompileEvent, run: CompilationRun) -> None:
        for listener in list(self._listeners):
            listener(event, run)
