from __future__ import annotations

from typing import List

from devrig.build.clean import clean_dir
from devrig.build.compiler import TargetCompiler
from devrig.build.targets import create_build_targets
from devrig.cli.formatter import OutputFormatter
from devrig.core.context import DevrigContext
from devrig.runtime.contracts import CompilationRun


def build_once(context: DevrigContext, release: bool = False) -> List[CompilationRun]:
    """Clean the output directory and compile both targets to disk once.

    Client assets are written out as well, since no dev server holds them in
    memory. The client target is compiled first so the server sees a fresh
    assets.json.
    """
    clean_dir(context.output_path)
    client, server = create_build_targets(context, release=release, persist_client=True)

    runs: List[CompilationRun] = []
    for target in (client, server):
        OutputFormatter.compile_started(target.name)
        run = TargetCompiler(target).compile()
        OutputFormatter.compile_finished(run)
        runs.append(run)
    return runs
