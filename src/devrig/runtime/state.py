from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from devrig.build.targets import BuildTarget
from devrig.core.context import DevrigContext
from devrig.runtime.contracts import CompilationRun, diff_module_hashes
from devrig.runtime.loader import ServerInstance
from devrig.utils.diagnostics import DevrigDiagnostic


@dataclass(frozen=True)
class StoredAsset:
    data: bytes
    media_type: str
    etag: str


class AssetStore:
    """In-memory client build output.

    Only successful client runs are published here, so a failed rebuild
    leaves the last good assets servable.
    """

    def __init__(self) -> None:
        self._files: Dict[str, StoredAsset] = {}
        self._module_hashes: Dict[str, str] = {}
        self.hash: str = ""
        self.previous_hash: str = ""
        self.updated_modules: List[str] = []
        self.errors: List[DevrigDiagnostic] = []
        self.manifest: Dict[str, object] = {}

    def publish(self, run: CompilationRun) -> None:
        """Record a resolved client run; failed runs only update the error list."""
        if not run.succeeded:
            self.errors = list(run.errors)
            return

        changed, removed = diff_module_hashes(self._module_hashes, run.module_hashes)
        self.previous_hash = self.hash
        self.hash = run.hash
        self.updated_modules = sorted(set(changed) | set(removed))
        self.errors = []
        self.manifest = dict(run.manifest)
        self._module_hashes = dict(run.module_hashes)
        self._files = {
            name: StoredAsset(
                data=data,
                media_type=mimetypes.guess_type(name)[0] or "application/octet-stream",
                etag=f'"{run.hash[:8]}-{len(data)}"',
            )
            for name, data in run.files.items()
        }

    def get(self, name: str) -> Optional[StoredAsset]:
        return self._files.get(name.lstrip("/"))

    def names(self) -> List[str]:
        return sorted(self._files)

    @property
    def ready(self) -> bool:
        return bool(self.hash)


@dataclass
class OrchestratorState:
    """Everything one start/stop cycle of the dev server owns.

    live_instance is written only by the hot-update coordinator; the front
    door reads it to dispatch requests.
    """

    context: DevrigContext
    client_target: BuildTarget
    server_target: BuildTarget
    release: bool = False
    assets: AssetStore = field(default_factory=AssetStore)
    live_instance: Optional[ServerInstance] = None
    server_hash: str = ""
    stopping: bool = False

    def replace_instance(self, instance: ServerInstance) -> Optional[ServerInstance]:
        """Swap in a new live instance and hand back the one it replaced."""
        previous = self.live_instance
        self.live_instance = instance
        return previous
