from __future__ import annotations

import shutil
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List

from devrig.utils.diagnostics import AssetCleanError


def clean_dir(output_dir: Path, ignore: Iterable[str] = (".git",)) -> List[Path]:
    """Remove everything inside output_dir, dotfiles included, except ignored names.

    The directory itself is kept. Returns the removed paths. A missing
    directory is nothing to clean.
    """
    ignored = tuple(ignore)
    if not output_dir.exists():
        return []
    if not output_dir.is_dir():
        raise AssetCleanError(f"Build output path is not a directory: {output_dir}")

    removed: List[Path] = []
    try:
        for entry in output_dir.iterdir():
            if any(fnmatch(entry.name, pattern) for pattern in ignored):
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed.append(entry)
    except OSError as exc:
        raise AssetCleanError(f"Could not clean {output_dir}: {exc}") from exc

    return removed
