import asyncio
from pathlib import Path
from typing import Optional

import typer

from devrig.build.clean import clean_dir
from devrig.build.runner import build_once
from devrig.cli.formatter import OutputFormatter
from devrig.core.context import DevrigContext
from devrig.runtime.controller import DevServerOrchestrator
from devrig.utils.diagnostics import DevrigError

app = typer.Typer(name="devrig", help="Devrig development build orchestrator", rich_markup_mode=None)

EXTRA_ARGS = {"allow_extra_args": True, "ignore_unknown_options": True}


def _read_option_value(tokens: list[str], index: int, option_name: str) -> tuple[str, int]:
    if index + 1 >= len(tokens):
        raise typer.BadParameter(f"Option {option_name} requires a value.")
    return tokens[index + 1], index + 2


def _parse_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid port: {value}")
    if not 0 <= port <= 65535:
        raise typer.BadParameter(f"Port out of range: {value}")
    return port


@app.command(context_settings=EXTRA_ARGS)
def start(
    ctx: typer.Context,
):
    """
    Build client and server, watch for changes and serve the app with hot updates.
    """
    root_dir = Path(".")
    release = False
    silent = False
    host: Optional[str] = None
    port: Optional[int] = None

    tokens = list(ctx.args)
    extras: list[str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in ("--root", "-r"):
            root_value, index = _read_option_value(tokens, index, token)
            root_dir = Path(root_value)
            continue
        if token.startswith("--root="):
            root_dir = Path(token.split("=", 1)[1])
            index += 1
            continue
        if token == "--release":
            release = True
            index += 1
            continue
        if token == "--silent":
            silent = True
            index += 1
            continue
        if token == "--host":
            host, index = _read_option_value(tokens, index, token)
            continue
        if token.startswith("--host="):
            host = token.split("=", 1)[1]
            index += 1
            continue
        if token == "--port":
            port_value, index = _read_option_value(tokens, index, token)
            port = _parse_port(port_value)
            continue
        if token.startswith("--port="):
            port = _parse_port(token.split("=", 1)[1])
            index += 1
            continue
        if token.startswith("-"):
            raise typer.BadParameter(f"Unknown option: {token}")
        extras.append(token)
        index += 1

    if extras:
        raise typer.BadParameter(f"Unexpected arguments: {' '.join(extras)}")

    try:
        orchestrator = DevServerOrchestrator(
            root_dir=root_dir,
            release=release,
            silent=silent,
            host=host,
            port=port,
        )
        asyncio.run(orchestrator.serve())
    except KeyboardInterrupt:
        OutputFormatter.log("Dev server stopped.", severity="info")
    except DevrigError as exc:
        OutputFormatter.log(f"Dev server failed: {exc}", severity="critical")
        raise typer.Exit(code=1)
    except ValueError as exc:
        OutputFormatter.log(f"Invalid configuration: {exc}", severity="critical")
        raise typer.Exit(code=1)


@app.command(context_settings=EXTRA_ARGS)
def build(
    ctx: typer.Context,
):
    """Clean the output directory and compile client and server once."""
    root_dir = Path(".")
    release = False

    tokens = list(ctx.args)
    extras: list[str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in ("--root", "-r"):
            root_value, index = _read_option_value(tokens, index, token)
            root_dir = Path(root_value)
            continue
        if token.startswith("--root="):
            root_dir = Path(token.split("=", 1)[1])
            index += 1
            continue
        if token == "--release":
            release = True
            index += 1
            continue
        if token.startswith("-"):
            raise typer.BadParameter(f"Unknown option: {token}")
        extras.append(token)
        index += 1

    if extras:
        raise typer.BadParameter(f"Unexpected arguments: {' '.join(extras)}")

    try:
        context = DevrigContext.from_root(root_dir)
        runs = build_once(context, release=release)
        for run in runs:
            run.raise_for_errors()
    except DevrigError as exc:
        OutputFormatter.log(f"Build failed: {exc}", severity="error")
        raise typer.Exit(code=1)
    except ValueError as exc:
        OutputFormatter.log(f"Invalid configuration: {exc}", severity="error")
        raise typer.Exit(code=1)

    OutputFormatter.log(f"Build written to {context.output_path}", severity="success")


@app.command(context_settings=EXTRA_ARGS)
def clean(
    ctx: typer.Context,
):
    """Remove everything in the build output directory except .git."""
    root_dir = Path(".")

    tokens = list(ctx.args)
    extras: list[str] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token in ("--root", "-r"):
            root_value, index = _read_option_value(tokens, index, token)
            root_dir = Path(root_value)
            continue
        if token.startswith("--root="):
            root_dir = Path(token.split("=", 1)[1])
            index += 1
            continue
        if token.startswith("-"):
            raise typer.BadParameter(f"Unknown option: {token}")
        extras.append(token)
        index += 1

    if extras:
        raise typer.BadParameter(f"Unexpected arguments: {' '.join(extras)}")

    try:
        context = DevrigContext.from_root(root_dir)
        removed = clean_dir(context.output_path)
    except DevrigError as exc:
        OutputFormatter.log(f"Clean failed: {exc}", severity="error")
        raise typer.Exit(code=1)

    OutputFormatter.log(f"Removed {len(removed)} entries from {context.output_path}", severity="success")


if __name__ == "__main__":
    app()
