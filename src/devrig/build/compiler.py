from __future__ import annotations

import json
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from devrig.build.targets import HOT_CLIENT_MODULE, BuildTarget, SourceCategory, TransformPolicy
from devrig.build.transforms import (
    build_source_map,
    check_script_syntax,
    combined_hash,
    content_hash,
    interpolate_name,
    rewrite_stylesheet_urls,
    split_asset_name,
    to_data_url,
)
from devrig.runtime.contracts import CompilationRun
from devrig.utils.diagnostics import DevrigDiagnostic

VirtualModuleProvider = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class EmittedAsset:
    """A non-script file placed in the output with its public URL."""

    logical_name: str
    output_name: str
    url: str
    data: bytes


def _error(file_path: str, error_code: str, message: str, line_number: Optional[int] = None) -> DevrigDiagnostic:
    return DevrigDiagnostic(
        file_path=file_path,
        error_code=error_code,
        message=message,
        line_number=line_number,
    )


class TargetCompiler:
    """Compiles one build target into an in-memory file map.

    Nothing is flushed when a run has errors, so the last good output stays in
    place. Successful runs are flushed before they are reported.
    """

    def __init__(
        self,
        target: BuildTarget,
        virtual_modules: Optional[VirtualModuleProvider] = None,
    ) -> None:
        self.target = target
        self.virtual_modules = virtual_modules
        self._emitted: Set[str] = set()

    def compile(
        self,
        changed_paths: Iterable[str] = (),
        run: Optional[CompilationRun] = None,
    ) -> CompilationRun:
        """Compile the target once; a pending run may be passed in to be resolved."""
        if run is None:
            run = CompilationRun(target=self.target.name, changed_paths=sorted(changed_paths))
        sources = self.collect_sources()

        if self.target.environment == "server":
            errors, files, module_hashes, manifest = self._compile_server(sources)
        else:
            errors, files, module_hashes, manifest = self._compile_client(sources)

        if errors:
            run.fail(errors)
            return run

        self.flush(files, manifest)
        run.succeed(combined_hash(module_hashes), module_hashes, files, manifest)
        return run

    def collect_sources(self) -> Dict[str, Path]:
        """Map context-relative posix paths to files, honouring exclude patterns."""
        sources: Dict[str, Path] = {}
        root = self.target.context
        if not root.exists():
            return sources

        for path in sorted(root.rglob("*")):
            if not path.is_file():
                continue
            relative = path.relative_to(root).as_posix()
            if self.target.is_excluded(relative):
                continue
            sources[relative] = path
        return sources

    def flush(self, files: Dict[str, bytes], manifest: Dict[str, object]) -> None:
        """Write output to disk when the target persists; always refresh the manifest."""
        if self.target.persist:
            output_root = self.target.output.path
            for stale in sorted(self._emitted - set(files)):
                stale_path = output_root / stale
                if stale_path.exists():
                    stale_path.unlink()
            for name, data in files.items():
                _write_if_changed(output_root / name, data)
            self._emitted = set(files)

        if self.target.manifest_path is not None:
            payload = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")
            _write_if_changed(self.target.manifest_path, payload)

    def _compile_server(
        self, sources: Dict[str, Path]
    ) -> Tuple[List[DevrigDiagnostic], Dict[str, bytes], Dict[str, str], Dict[str, object]]:
        errors: List[DevrigDiagnostic] = []
        files: Dict[str, bytes] = {}
        module_hashes: Dict[str, str] = {}

        for relative, path in sources.items():
            rule = self.target.rule_for(relative)
            if rule is None or rule.policy == TransformPolicy.IGNORE:
                continue

            data = _read_source(path)
            if data is None:
                continue
            if rule.policy == TransformPolicy.COMPILE:
                try:
                    compile(data, str(path), "exec", dont_inherit=True)
                except SyntaxError as exc:
                    errors.append(
                        _error(str(path), "ERR_SYNTAX", exc.msg or "invalid syntax", exc.lineno)
                    )
                    continue
                except ValueError as exc:
                    errors.append(_error(str(path), "ERR_SYNTAX", str(exc)))
                    continue

            files[relative] = data
            module_hashes[relative] = content_hash(data)

        for entry_name, modules in self.target.entries.items():
            for module in modules:
                if module in files:
                    continue
                if (self.target.context / module).is_file():
                    # present but failed to compile; its error is already recorded
                    continue
                errors.append(
                    _error(
                        str(self.target.context / module),
                        "ERR_ENTRY_NOT_FOUND",
                        f"Entry module '{module}' of '{entry_name}' was not found",
                    )
                )

        return errors, files, module_hashes, {}

    def _compile_client(
        self, sources: Dict[str, Path]
    ) -> Tuple[List[DevrigDiagnostic], Dict[str, bytes], Dict[str, str], Dict[str, object]]:
        errors: List[DevrigDiagnostic] = []
        files: Dict[str, bytes] = {}
        module_hashes: Dict[str, str] = {}
        manifest: Dict[str, object] = {}

        assets: Dict[str, EmittedAsset] = {}
        stylesheets: List[str] = []

        for relative, path in sources.items():
            rule = self.target.rule_for(relative)
            if rule is None or rule.policy in (TransformPolicy.IGNORE, TransformPolicy.BUNDLE):
                continue
            if rule.category == SourceCategory.STYLESHEET:
                stylesheets.append(relative)
                continue

            data = _read_source(path)
            if data is None:
                continue
            if rule.policy == TransformPolicy.RAW:
                asset = EmittedAsset(relative, relative, self.target.output.public_path + relative, data)
            else:
                asset = self._emit_asset(relative, data)
            assets[relative] = asset

        for relative in stylesheets:
            path = sources[relative]
            raw_css = _read_source(path)
            if raw_css is None:
                continue
            try:
                css = raw_css.decode("utf-8")
            except UnicodeDecodeError as exc:
                errors.append(_error(str(path), "ERR_STYLESHEET_ENCODING", str(exc)))
                continue

            missing: List[str] = []

            def resolve(reference: str, stylesheet: str = relative) -> Optional[str]:
                target_name = posixpath.normpath(
                    posixpath.join(posixpath.dirname(stylesheet), reference.split("?", 1)[0].split("#", 1)[0])
                )
                asset = assets.get(target_name)
                if asset is None:
                    missing.append(reference)
                    return None
                rule = self.target.rule_for(target_name)
                if rule is not None and rule.policy == TransformPolicy.INLINE and len(asset.data) <= rule.inline_limit:
                    return to_data_url(asset.data, target_name)
                return asset.url

            rewritten = rewrite_stylesheet_urls(css, resolve)
            for reference in missing:
                errors.append(
                    _error(str(path), "ERR_MODULE_NOT_FOUND", f"Can't resolve '{reference}' in '{relative}'")
                )
            assets[relative] = self._emit_asset(relative, rewritten.encode("utf-8"))

        for relative, asset in assets.items():
            files[asset.output_name] = asset.data
            module_hashes[relative] = content_hash(asset.data)
            manifest[asset.logical_name] = asset.url

        for entry_name, modules in self.target.entries.items():
            bundle = self._bundle_entry(entry_name, modules, sources, errors, module_hashes)
            if bundle is None:
                continue
            filename, code, source_map = bundle
            files[filename] = code
            entry_manifest: Dict[str, str] = {"js": self.target.output.public_path + filename}
            if source_map is not None:
                files[f"{filename}.map"] = source_map
                entry_manifest["map"] = self.target.output.public_path + f"{filename}.map"
            manifest[entry_name] = entry_manifest

        return errors, files, module_hashes, manifest

    def _emit_asset(self, relative: str, data: bytes) -> EmittedAsset:
        directory, _, filename = relative.rpartition("/")
        stem, dot, ext = filename.rpartition(".")
        if not dot:
            stem, ext = filename, ""
        name = interpolate_name(
            self.target.output.asset_name,
            name=stem,
            ext=ext,
            path=f"{directory}/" if directory else "",
            digest=content_hash(data),
        )
        output_name, query = split_asset_name(name)
        if not ext:
            output_name = output_name.rstrip(".")
        return EmittedAsset(relative, output_name, self.target.output.public_path + output_name + query, data)

    def _bundle_entry(
        self,
        entry_name: str,
        modules: Tuple[str, ...],
        sources: Dict[str, Path],
        errors: List[DevrigDiagnostic],
        module_hashes: Dict[str, str],
    ) -> Optional[Tuple[str, bytes, Optional[bytes]]]:
        parts: List[str] = []
        mapped: List[Tuple[str, str, int]] = []
        line = 0
        failed = False

        for module in modules:
            loaded = self._load_entry_module(module)
            if loaded is None:
                errors.append(
                    _error(
                        str(self.target.context / module),
                        "ERR_ENTRY_NOT_FOUND",
                        f"Entry module '{module}' of '{entry_name}' was not found",
                    )
                )
                failed = True
                continue

            module_id, source = loaded
            problems = check_script_syntax(source, module_id)
            if problems:
                errors.extend(problems)
                failed = True
                continue

            module_hashes[module_id] = content_hash(source.encode("utf-8"))
            if self.target.output.pathinfo:
                parts.append(f"/* {module_id} */\n")
                line += 1
            mapped.append((module_id, source, line))
            text = source if source.endswith("\n") else source + "\n"
            parts.append(text)
            line += text.count("\n")

        if failed:
            return None

        body = "".join(parts)
        filename = interpolate_name(
            self.target.output.filename,
            name=entry_name,
            digest=content_hash(body.encode("utf-8")),
        )

        source_map: Optional[bytes] = None
        if self.target.output.source_maps:
            source_map = build_source_map(filename, mapped).encode("utf-8")
            body += f"//# sourceMappingURL={posixpath.basename(filename)}.map\n"

        return filename, body.encode("utf-8"), source_map

    def _load_entry_module(self, module: str) -> Optional[Tuple[str, str]]:
        if self.virtual_modules is not None:
            virtual = self.virtual_modules(module)
            if virtual is not None:
                return module, virtual
        if module == HOT_CLIENT_MODULE:
            return None

        path = (self.target.context / module).resolve()
        if not path.is_file():
            return None

        try:
            module_id = path.relative_to(self.target.context.resolve()).as_posix()
        except ValueError:
            # bundled from outside the source tree, e.g. a vendored polyfill
            module_id = module
        return module_id, path.read_text(encoding="utf-8", errors="replace")


def _read_source(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        # removed between the directory scan and the read; the next run sees it gone
        return None


def _write_if_changed(path: Path, data: bytes) -> None:
    if path.exists() and path.read_bytes() == data:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    temporary = path.with_name(f".{path.name}.tmp")
    temporary.write_bytes(data)
    os.replace(temporary, path)
