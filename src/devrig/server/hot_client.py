"""Browser-side hot client, rendered from a Jinja2 template."""

from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from devrig.build.compiler import VirtualModuleProvider
from devrig.build.targets import HOT_CLIENT_MODULE

EVENT_PATH = "/__hmr"
UPDATE_PATH = "/__hmr/update.json"
CLIENT_PATH = "/__hmr/client.js"

_environment = Environment(
    loader=PackageLoader("devrig", "templates"),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    keep_trailing_newline=True,
)


def render_hot_client(overlay: bool = True, reload: bool = True, event_path: str = EVENT_PATH) -> str:
    template = _environment.get_template("hot_client.js.j2")
    return template.render(event_path=event_path, overlay=overlay, reload=reload)


def hot_client_modules(overlay: bool = True) -> VirtualModuleProvider:
    """Virtual module provider that resolves the hot client id for the compiler."""
    source = render_hot_client(overlay=overlay)

    def provide(module: str) -> Optional[str]:
        if module == HOT_CLIENT_MODULE:
            return source
        return None

    return provide
