import pytest
import sys
from pathlib import Path

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

SERVER_ENTRY = '''\
from . import views

__hot_accept__ = True


def handle(request):
    return views.render(request.url.path)
'''

SERVER_VIEWS = '''\
__hot_accept__ = True

VERSION = 1


def render(path):
    return {"path": path, "version": VERSION}
'''

CLIENT_ENTRY = 'document.title = "devrig";\n'


@pytest.fixture
def root_dir(tmp_path):
    """
    Returns a temporary directory to act as the project root for tests.
    """
    return tmp_path


@pytest.fixture
def project(tmp_path):
    """
    A minimal project: one client entry, a stylesheet and a two-module server.
    Watch timings are shortened so watcher-driven tests stay fast.
    """
    src = tmp_path / "src"
    src.mkdir()
    (src / "client.js").write_text(CLIENT_ENTRY)
    (src / "site.css").write_text("body { color: black; }\n")
    (src / "server.py").write_text(SERVER_ENTRY)
    (src / "views.py").write_text(SERVER_VIEWS)
    (tmp_path / "devrig.yaml").write_text(
        "server:\n"
        "  open_browser: false\n"
        "watch:\n"
        "  interval_ms: 50\n"
        "  debounce_ms: 0\n"
    )
    return tmp_path


def make_request(path: str = "/", method: str = "GET"):
    from fastapi import Request

    return Request({"type": "http", "method": method, "path": path, "headers": [], "query_string": b""})


def build_server(project):
    """Compile the project's server target and return its compiler."""
    from devrig.build.compiler import TargetCompiler
    from devrig.build.targets import create_build_targets
    from devrig.core.context import DevrigContext

    _, server = create_build_targets(DevrigContext(root_dir=project))
    compiler = TargetCompiler(server)
    assert compiler.compile().succeeded
    return compiler
