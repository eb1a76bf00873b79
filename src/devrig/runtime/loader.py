from __future__ import annotations

import importlib
import inspect
import itertools
import linecache
import shutil
import sys
import types
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response

from devrig.cli.formatter import OutputFormatter
from devrig.runtime.contracts import HotStatus, ServerUpdate
from devrig.utils.diagnostics import ApplyAbortedError

HOT_ACCEPT_ATTR = "__hot_accept__"
HOT_DISPOSE_ATTR = "__hot_dispose__"

_generations = itertools.count(1)


def module_name_for(package: str, module_id: str) -> str:
    """Map an output-relative module path ('routes/home.py') to its import name."""
    parts = module_id[: -len(".py")].split("/")
    if parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join([package, *parts]) if parts else package


def _call_dispose(module: types.ModuleType, data: Dict[str, Any]) -> None:
    dispose = getattr(module, HOT_DISPOSE_ATTR, None)
    if callable(dispose):
        dispose(data)


class HotRuntime:
    """In-place module replacement for one loaded server instance.

    A changed module is patched by executing its new code in the existing
    module object. Modules opt in with ``__hot_accept__ = True``; a changed
    module that is loaded but does not accept, or a removed module, moves the
    runtime to ``abort``. An exception from the new code moves it to ``fail``.
    """

    def __init__(self, instance: "ServerInstance") -> None:
        self.instance = instance
        self.status: HotStatus = HotStatus.IDLE
        self.dispose_data: Dict[str, Dict[str, Any]] = {}

    def reset(self) -> None:
        self.status = HotStatus.IDLE

    async def apply(self, update: ServerUpdate) -> List[str]:
        """Apply an update and return the ids of the modules that were patched."""
        if self.status != HotStatus.IDLE:
            raise RuntimeError(f"Hot runtime is busy (status: {self.status.value})")

        self.status = HotStatus.CHECK
        if update.is_empty:
            self.status = HotStatus.IDLE
            return []

        loaded = self.instance.modules
        targets: List[tuple[str, types.ModuleType]] = []
        rejected: List[str] = []

        for module_id in update.removed:
            if module_name_for(self.instance.package, module_id) in loaded:
                rejected.append(module_id)

        for module_id in update.changed:
            if not module_id.endswith(".py"):
                continue
            module = loaded.get(module_name_for(self.instance.package, module_id))
            if module is None:
                # never imported; the next import reads the new file
                continue
            if not getattr(module, HOT_ACCEPT_ATTR, False):
                rejected.append(module_id)
                continue
            targets.append((module_id, module))

        if rejected:
            self.status = HotStatus.ABORT
            raise ApplyAbortedError(
                f"Aborted because {', '.join(rejected)} is not accepted",
                modules=rejected,
            )

        # the entry module is patched last so it sees its patched dependencies
        entry_name = self.instance.entry_module.__name__
        targets.sort(key=lambda item: (item[1].__name__ == entry_name, item[0]))

        compiled = []
        for module_id, module in targets:
            source = (self.instance.server_dir / module_id).read_bytes()
            compiled.append((module_id, module, compile(source, module.__file__ or module_id, "exec")))

        self.status = HotStatus.APPLY
        updated: List[str] = []
        for module_id, module, code in compiled:
            data: Dict[str, Any] = {}
            try:
                _call_dispose(module, data)
                exec(code, module.__dict__)
            except Exception:
                self.status = HotStatus.FAIL
                raise
            self.dispose_data[module_id] = data
            updated.append(module_id)

        linecache.checkcache()
        self.status = HotStatus.IDLE
        return updated


class ServerInstance:
    """A loaded server artifact; dispatches requests to its entry's handle()."""

    def __init__(
        self,
        package: str,
        server_dir: Path,
        entry_module: types.ModuleType,
        hot: bool = True,
    ) -> None:
        self.package = package
        self.server_dir = server_dir
        self.entry_module = entry_module
        self.hot: Optional[HotRuntime] = HotRuntime(self) if hot else None
        self.disposed = False

    @property
    def modules(self) -> Dict[str, types.ModuleType]:
        prefix = f"{self.package}."
        return {
            name: module
            for name, module in list(sys.modules.items())
            if module is not None and (name == self.package or name.startswith(prefix))
        }

    async def handle(self, request: Request) -> Response:
        """Dispatch a request to the entry module's handle(request)."""
        handler = getattr(self.entry_module, "handle", None)
        if not callable(handler):
            return PlainTextResponse("Server entry does not define handle(request)", status_code=500)

        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return coerce_response(result)

    def dispose(self) -> None:
        """Run module dispose hooks and drop the instance's modules from the import cache."""
        if self.disposed:
            return
        self.disposed = True
        modules = self.modules
        for name in sorted(modules, reverse=True):
            try:
                _call_dispose(modules[name], {})
            except Exception as exc:
                OutputFormatter.hmr(f"Dispose hook of {name} failed: {exc}", severity="warning")
        for name in modules:
            sys.modules.pop(name, None)


def coerce_response(result: Any) -> Response:
    if isinstance(result, Response):
        return result
    if isinstance(result, (dict, list)):
        return JSONResponse(result)
    if isinstance(result, bytes):
        return Response(result)
    if result is None:
        return Response(status_code=204)
    return HTMLResponse(str(result))


class ArtifactLoader:
    """Loads the compiled server entry from the output directory.

    With ``fresh=True`` every load() imports the artifact again under a new
    package name, so nothing is shared with earlier instances. With
    ``fresh=False`` the first loaded instance is returned until discard().
    """

    def __init__(
        self,
        server_dir: Path,
        entry: str = "server",
        fresh: bool = True,
        hot: bool = True,
        namespace: str = "_devrig_server",
    ) -> None:
        self.server_dir = server_dir
        self.entry = entry
        self.fresh = fresh
        self.hot = hot
        self.namespace = namespace
        self.current: Optional[ServerInstance] = None

    def load(self) -> ServerInstance:
        """Import the compiled entry as a new instance.

        The previous instance is not disposed here; the caller drops it once
        the new one has taken over.
        """
        if not self.fresh and self.current is not None:
            return self.current

        package_name = f"{self.namespace}_{next(_generations)}"
        package = types.ModuleType(package_name)
        package.__path__ = [str(self.server_dir)]
        package.__package__ = package_name
        package.__file__ = None
        sys.modules[package_name] = package

        self._remove_cached_bytecode()
        importlib.invalidate_caches()
        try:
            entry_module = importlib.import_module(f"{package_name}.{self.entry}")
        except BaseException:
            for name in [n for n in sys.modules if n == package_name or n.startswith(f"{package_name}.")]:
                sys.modules.pop(name, None)
            raise

        self.current = ServerInstance(package_name, self.server_dir, entry_module, hot=self.hot)
        return self.current

    def discard(self) -> None:
        if self.current is not None:
            self.current.dispose()
            self.current = None

    def _remove_cached_bytecode(self) -> None:
        if not self.server_dir.exists():
            return
        for cache_dir in self.server_dir.rglob("__pycache__"):
            shutil.rmtree(cache_dir, ignore_errors=True)
