from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Optional, Tuple

from devrig.core.context import DevrigContext

HOT_CLIENT_MODULE = "devrig:hot-client"


class SourceCategory(str, Enum):
    """Source-file categories recognized by module rules."""

    SCRIPT = "script"
    STYLESHEET = "stylesheet"
    IMAGE = "image"
    TEXT = "text"
    MARKUP = "markup"
    OTHER = "other"


class TransformPolicy(str, Enum):
    """How a matched source file is turned into build output."""

    BUNDLE = "bundle"
    COMPILE = "compile"
    EMIT = "emit"
    INLINE = "inline"
    RAW = "raw"
    IGNORE = "ignore"


SCRIPT_PATTERNS = ("*.js", "*.jsx", "*.mjs")
PYTHON_PATTERNS = ("*.py",)
STYLE_PATTERNS = ("*.css", "*.less", "*.scss", "*.sss")
IMAGE_PATTERNS = ("*.bmp", "*.gif", "*.jpg", "*.jpeg", "*.png", "*.svg")
TEXT_PATTERNS = ("*.txt",)
MARKUP_PATTERNS = ("*.md", "*.html")
ANY_PATTERN = ("*",)


@dataclass(frozen=True)
class ModuleRule:
    """Maps a category of source files to a transform policy."""

    category: SourceCategory
    patterns: Tuple[str, ...]
    policy: TransformPolicy
    inline_limit: int = 0

    def matches(self, relative_path: str) -> bool:
        filename = relative_path.rsplit("/", 1)[-1]
        return any(fnmatch(filename, pattern) for pattern in self.patterns)


@dataclass(frozen=True)
class OutputRules:
    """Output location and naming scheme of a build target."""

    path: Path
    public_path: str
    filename: str
    chunk_filename: str
    asset_name: str
    source_maps: bool = False
    pathinfo: bool = False


@dataclass(frozen=True)
class BuildTarget:
    """Immutable description of one compilation target."""

    name: str
    environment: str
    context: Path
    entries: Dict[str, Tuple[str, ...]]
    output: OutputRules
    rules: Tuple[ModuleRule, ...]
    release: bool = False
    externalize_dependencies: bool = False
    externals: Tuple[str, ...] = ()
    persist: bool = True
    manifest_path: Optional[Path] = None
    exclude_patterns: Tuple[str, ...] = field(default_factory=tuple)

    def rule_for(self, relative_path: str) -> Optional[ModuleRule]:
        """Return the first rule matching a context-relative path."""
        for rule in self.rules:
            if rule.matches(relative_path):
                return rule
        return None

    def is_excluded(self, relative_path: str) -> bool:
        filename = relative_path.rsplit("/", 1)[-1]
        return any(
            fnmatch(relative_path, pattern) or fnmatch(filename, pattern)
            for pattern in self.exclude_patterns
        )


def _client_rules(inline_limit: int) -> Tuple[ModuleRule, ...]:
    return (
        ModuleRule(SourceCategory.SCRIPT, SCRIPT_PATTERNS, TransformPolicy.BUNDLE),
        ModuleRule(SourceCategory.STYLESHEET, STYLE_PATTERNS, TransformPolicy.EMIT),
        # images referenced from stylesheets are inlined below the limit
        ModuleRule(SourceCategory.IMAGE, IMAGE_PATTERNS, TransformPolicy.INLINE, inline_limit=inline_limit),
        ModuleRule(SourceCategory.TEXT, TEXT_PATTERNS, TransformPolicy.RAW),
        ModuleRule(SourceCategory.MARKUP, MARKUP_PATTERNS, TransformPolicy.RAW),
        ModuleRule(SourceCategory.SCRIPT, PYTHON_PATTERNS, TransformPolicy.IGNORE),
        ModuleRule(SourceCategory.OTHER, ANY_PATTERN, TransformPolicy.EMIT),
    )


def _server_rules() -> Tuple[ModuleRule, ...]:
    return (
        ModuleRule(SourceCategory.SCRIPT, PYTHON_PATTERNS, TransformPolicy.COMPILE),
        ModuleRule(SourceCategory.TEXT, TEXT_PATTERNS, TransformPolicy.RAW),
        ModuleRule(SourceCategory.MARKUP, MARKUP_PATTERNS, TransformPolicy.RAW),
        # browser-side sources belong to the client graph
        ModuleRule(SourceCategory.SCRIPT, SCRIPT_PATTERNS, TransformPolicy.IGNORE),
        ModuleRule(SourceCategory.STYLESHEET, STYLE_PATTERNS, TransformPolicy.IGNORE),
        ModuleRule(SourceCategory.IMAGE, IMAGE_PATTERNS, TransformPolicy.IGNORE),
        ModuleRule(SourceCategory.OTHER, ANY_PATTERN, TransformPolicy.IGNORE),
    )


def create_build_targets(
    context: DevrigContext,
    release: bool = False,
    persist_client: bool = False,
) -> Tuple[BuildTarget, BuildTarget]:
    """Build the client and server target definitions for a project.

    Debug builds keep stable file names so repeated reloads hit the same URLs;
    release builds put content hashes in every emitted file name.
    """
    build = context.build
    output_root = context.output_path
    public_path = build.public_path
    exclude = tuple(context.watch.exclude_patterns)

    client = BuildTarget(
        name="client",
        environment="web",
        context=context.source_path,
        entries={name: tuple(modules) for name, modules in build.client_entries.items()},
        output=OutputRules(
            path=output_root / "public" / public_path.strip("/"),
            public_path=public_path,
            filename="[name].[hash:8].js" if release else "[name].js",
            chunk_filename="[name].[hash:8].chunk.js" if release else "[name].chunk.js",
            asset_name="[hash:8].[ext]" if release else "[path][name].[ext]?[hash:8]",
            source_maps=not release,
            pathinfo=not release or build.verbose,
        ),
        rules=_client_rules(build.inline_limit),
        release=release,
        externalize_dependencies=False,
        persist=persist_client,
        manifest_path=output_root / "assets.json",
        exclude_patterns=exclude,
    )

    server = BuildTarget(
        name="server",
        environment="server",
        context=context.source_path,
        entries={"server": (f"{build.server_entry.replace('.', '/')}.py",)},
        output=OutputRules(
            path=output_root / "server",
            public_path=public_path,
            filename="[name].py",
            chunk_filename="chunks/[name].py",
            asset_name="[path][name].[ext]",
        ),
        rules=_server_rules(),
        release=release,
        externalize_dependencies=True,
        externals=("assets.json",),
        persist=True,
        exclude_patterns=exclude,
    )

    return client, server


def with_hot_client(target: BuildTarget) -> BuildTarget:
    """Return a copy of a client target whose entries start with the hot client.

    Polyfill modules stay in front so they load before anything else.
    """
    entries: Dict[str, Tuple[str, ...]] = {}
    for name, modules in target.entries.items():
        if HOT_CLIENT_MODULE in modules:
            entries[name] = modules
            continue
        combined = [HOT_CLIENT_MODULE, *modules]
        combined.sort(key=lambda module: "polyfill" not in module)
        entries[name] = tuple(combined)
    return replace(target, entries=entries)
