from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from devrig.utils.diagnostics import CompileError, DevrigDiagnostic


class CompilationStatus(str, Enum):
    """Lifecycle of one compilation run."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class CompileEvent(str, Enum):
    """Lifecycle events emitted by a compilation watcher."""

    COMPILE_START = "compile-start"
    COMPILE_DONE = "compile-done"
    COMPILE_ERROR = "compile-error"


class WatcherState(str, Enum):
    """High-level states for the polling watcher and compile progression."""

    STOPPED = "stopped"
    WATCHING = "watching"
    CHANGE_DETECTED = "change_detected"
    DEBOUNCING = "debouncing"
    COMPILING = "compiling"


class WatcherEvent(str, Enum):
    """Events that drive watcher state transitions."""

    START = "start"
    FILE_CHANGE = "file_change"
    DEBOUNCE_WINDOW_OPEN = "debounce_window_open"
    DEBOUNCE_ELAPSED = "debounce_elapsed"
    COMPILE_FINISHED = "compile_finished"
    STOP = "stop"


class HotUpdateState(str, Enum):
    """States of one hot-update session."""

    IDLE = "idle"
    CHECKING = "checking"
    APPLYING = "applying"
    APPLIED = "applied"
    RELOADING = "reloading"
    FAILED = "failed"


class HotStatus(str, Enum):
    """Status reported by a live instance's hot runtime."""

    IDLE = "idle"
    CHECK = "check"
    APPLY = "apply"
    ABORT = "abort"
    FAIL = "fail"


@dataclass
class CompilationRun:
    """One (re)compilation of a build target.

    Created pending; moves to success or failure exactly once.
    """

    target: str
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    status: CompilationStatus = CompilationStatus.PENDING
    errors: List[DevrigDiagnostic] = field(default_factory=list)
    warnings: List[DevrigDiagnostic] = field(default_factory=list)
    changed_paths: List[str] = field(default_factory=list)
    hash: str = ""
    module_hashes: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, bytes] = field(default_factory=dict)
    manifest: Dict[str, object] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        if self.ended_at is None:
            return 0
        return int(round((self.ended_at - self.started_at) * 1000))

    @property
    def succeeded(self) -> bool:
        return self.status == CompilationStatus.SUCCESS

    def succeed(
        self,
        digest: str,
        module_hashes: Dict[str, str],
        files: Dict[str, bytes],
        manifest: Optional[Dict[str, object]] = None,
    ) -> None:
        self._resolve(CompilationStatus.SUCCESS)
        self.hash = digest
        self.module_hashes = dict(module_hashes)
        self.files = dict(files)
        self.manifest = dict(manifest or {})

    def fail(self, errors: List[DevrigDiagnostic]) -> None:
        if not errors:
            raise ValueError("A failed compilation run must carry at least one error.")
        self._resolve(CompilationStatus.FAILURE)
        self.errors = list(errors)

    def raise_for_errors(self) -> None:
        """Raise CompileError when the run failed."""
        if self.status == CompilationStatus.FAILURE:
            raise CompileError(self.target, self.errors)

    def _resolve(self, status: CompilationStatus) -> None:
        if self.status != CompilationStatus.PENDING:
            raise ValueError(f"Compilation run for '{self.target}' already resolved as {self.status.value}")
        self.status = status
        self.ended_at = time.time()


@dataclass(frozen=True)
class ServerUpdate:
    """Module diff between the live server instance and a newer compilation."""

    hash: str
    previous_hash: str
    changed: List[str]
    removed: List[str]

    @property
    def is_empty(self) -> bool:
        return not self.changed and not self.removed


def diff_module_hashes(
    previous: Dict[str, str],
    current: Dict[str, str],
) -> tuple[List[str], List[str]]:
    """Return (changed-or-added, removed) module ids between two hash maps."""
    changed = sorted(
        module_id
        for module_id, digest in current.items()
        if previous.get(module_id) != digest
    )
    removed = sorted(set(previous) - set(current))
    return changed, removed


def transition_watcher_state(current: WatcherState, event: WatcherEvent) -> WatcherState:
    """Compute the next watcher state for a given event.

    Invalid transitions raise ValueError.
    """

    if event == WatcherEvent.STOP:
        return WatcherState.STOPPED

    if current == WatcherState.STOPPED:
        if event == WatcherEvent.START:
            return WatcherState.WATCHING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.WATCHING:
        if event == WatcherEvent.FILE_CHANGE:
            return WatcherState.CHANGE_DETECTED
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.CHANGE_DETECTED:
        if event == WatcherEvent.DEBOUNCE_WINDOW_OPEN:
            return WatcherState.DEBOUNCING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.DEBOUNCING:
        if event == WatcherEvent.FILE_CHANGE:
            return WatcherState.CHANGE_DETECTED
        if event == WatcherEvent.DEBOUNCE_ELAPSED:
            return WatcherState.COMPILING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    if current == WatcherState.COMPILING:
        if event == WatcherEvent.COMPILE_FINISHED:
            return WatcherState.WATCHING
        raise ValueError(f"Invalid watcher transition: {current} -> {event}")

    raise ValueError(f"Unknown watcher state: {current}")


_HOT_UPDATE_TRANSITIONS: Dict[HotUpdateState, set] = {
    HotUpdateState.IDLE: {HotUpdateState.CHECKING},
    HotUpdateState.CHECKING: {HotUpdateState.APPLYING, HotUpdateState.FAILED},
    HotUpdateState.APPLYING: {HotUpdateState.APPLIED, HotUpdateState.RELOADING, HotUpdateState.FAILED},
    HotUpdateState.RELOADING: {HotUpdateState.APPLIED, HotUpdateState.FAILED},
    HotUpdateState.APPLIED: {HotUpdateState.IDLE},
    HotUpdateState.FAILED: {HotUpdateState.IDLE},
}


def transition_hot_update_state(current: HotUpdateState, target: HotUpdateState) -> HotUpdateState:
    """Validate one hot-update session transition and return the new state."""

    allowed = _HOT_UPDATE_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise ValueError(f"Invalid hot update transition: {current.value} -> {target.value}")
    return target
