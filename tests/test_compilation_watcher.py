import asyncio

import pytest

from conftest import SERVER_VIEWS
from devrig.build.compiler import TargetCompiler
from devrig.build.targets import create_build_targets
from devrig.core.context import DevrigContext
from devrig.runtime.contracts import CompileEvent
from devrig.runtime.watcher import CompilationWatcher


def _server_watcher(project) -> CompilationWatcher:
    _, server = create_build_targets(DevrigContext(root_dir=project))
    return CompilationWatcher(TargetCompiler(server), interval_ms=50, debounce_ms=0)


async def test_stream_yields_initial_build_then_rebuilds(project):
    watcher = _server_watcher(project)
    events = []
    watcher.subscribe(lambda event, run: events.append((event, run.target)))

    stream = watcher.runs()
    first = await stream.__anext__()
    assert first.succeeded
    assert first.changed_paths == []
    assert watcher.is_watching

    (project / "src" / "views.py").write_text(SERVER_VIEWS.replace("VERSION = 1", "VERSION = 22"))
    second = await asyncio.wait_for(stream.__anext__(), timeout=5)

    assert second.succeeded
    assert second.changed_paths == ["views.py"]
    assert second.hash != first.hash
    assert events == [
        (CompileEvent.COMPILE_START, "server"),
        (CompileEvent.COMPILE_DONE, "server"),
        (CompileEvent.COMPILE_START, "server"),
        (CompileEvent.COMPILE_DONE, "server"),
    ]

    watcher.stop()
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), timeout=5)
    assert not watcher.is_watching


async def test_failed_rebuild_keeps_last_good_run(project):
    watcher = _server_watcher(project)
    events = []
    watcher.subscribe(lambda event, run: events.append(event))

    stream = watcher.runs()
    good = await stream.__anext__()
    (project / "src" / "views.py").write_text("def render(:\n")
    bad = await asyncio.wait_for(stream.__anext__(), timeout=5)

    assert not bad.succeeded
    assert watcher.last_run is bad
    assert watcher.last_good_run is good
    assert events[-1] == CompileEvent.COMPILE_ERROR

    watcher.stop()
    await stream.aclose()


async def test_non_compiled_files_do_not_trigger_server_rebuilds(project):
    watcher = _server_watcher(project)
    stream = watcher.runs()
    await stream.__anext__()

    (project / "src" / "client.js").write_text("document.title = 'changed only on the client';\n")
    pending = asyncio.ensure_future(stream.__anext__())
    done, _ = await asyncio.wait({pending}, timeout=0.4)
    assert not done

    watcher.stop()
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(pending, timeout=5)


async def test_cancelled_subscription_stops_notifications(project):
    watcher = _server_watcher(project)
    events = []
    subscription = watcher.subscribe(lambda event, run: events.append(event))
    subscription.cancel()
    subscription.cancel()

    await watcher.compile_once()

    assert events == []
    assert subscription.cancelled
