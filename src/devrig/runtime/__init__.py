"""Dev server runtime: watchers, hot updates and the orchestrator."""

from devrig.runtime.contracts import (
	CompilationRun,
	CompilationStatus,
	CompileEvent,
	HotStatus,
	HotUpdateState,
	ServerUpdate,
)
from devrig.runtime.controller import DevServerOrchestrator
from devrig.runtime.hot import HotUpdateCoordinator, HotUpdateSession
from devrig.runtime.loader import ArtifactLoader, HotRuntime, ServerInstance
from devrig.runtime.watcher import CompilationWatcher, PollingWatcher

__all__ = [
	"ArtifactLoader",
	"CompilationRun",
	"CompilationStatus",
	"CompilationWatcher",
	"CompileEvent",
	"DevServerOrchestrator",
	"HotRuntime",
	"HotStatus",
	"HotUpdateCoordinator",
	"HotUpdateSession",
	"HotUpdateState",
	"PollingWatcher",
	"ServerInstance",
	"ServerUpdate",
]
