from __future__ import annotations

import base64
import hashlib
import json
import mimetypes
import re
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import quote

from devrig.utils.diagnostics import DevrigDiagnostic

_HASH_TOKEN = re.compile(r"\[(?:content)?hash(?::(\d+))?\]")
_CSS_URL = re.compile(r"url\(\s*(['\"]?)([^'\")]+?)\1\s*\)")
_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}
_TEMPLATE_SUBSTITUTION = "${"
# a slash after one of these starts a regular expression, not a division
_REGEX_PREFIX = set("(,=:[!&|?{};+-*%<>~^")
_REGEX_KEYWORDS = {
    "await", "case", "delete", "do", "else", "in", "instanceof", "new",
    "of", "return", "throw", "typeof", "void", "yield",
}
# previous token kinds besides single punctuation characters
_VALUE = "value"
_KEYWORD = "keyword"


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def combined_hash(module_hashes: dict) -> str:
    """Hash of a whole compilation, stable across dict ordering."""
    digest = hashlib.sha256()
    for module_id in sorted(module_hashes):
        digest.update(module_id.encode("utf-8"))
        digest.update(b"\0")
        digest.update(module_hashes[module_id].encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()[:20]


def interpolate_name(template: str, *, name: str, ext: str = "", path: str = "", digest: str = "") -> str:
    """Expand [path], [name], [ext] and [hash:N] placeholders in a file name template."""

    def replace_hash(match: re.Match) -> str:
        length = match.group(1)
        return digest[: int(length)] if length else digest

    result = _HASH_TOKEN.sub(replace_hash, template)
    return result.replace("[path]", path).replace("[name]", name).replace("[ext]", ext)


def split_asset_name(asset_name: str) -> Tuple[str, str]:
    """Split an interpolated asset name into (output file, public query suffix)."""
    file_part, _, query = asset_name.partition("?")
    return file_part, f"?{query}" if query else ""


def to_data_url(data: bytes, filename: str) -> str:
    """Inline a small file; SVG stays UTF-8 text, everything else is Base64."""
    mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    if filename.lower().endswith(".svg"):
        text = " ".join(data.decode("utf-8").split()).replace('"', "'")
        encoded_text = quote(text, safe=" =:/;,'")
        return f"data:image/svg+xml,{encoded_text}"
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def is_local_reference(reference: str) -> bool:
    lowered = reference.lower()
    if lowered.startswith(("data:", "http:", "https:", "//", "#", "/")):
        return False
    return True


def rewrite_stylesheet_urls(css: str, resolve: Callable[[str], Optional[str]]) -> str:
    """Replace local url(...) references with what resolve() returns for them."""

    def replace(match: re.Match) -> str:
        reference = match.group(2).strip()
        if not is_local_reference(reference):
            return match.group(0)
        resolved = resolve(reference)
        if resolved is None:
            return match.group(0)
        return f'url("{resolved}")'

    return _CSS_URL.sub(replace, css)


def _script_error(file_path: str, message: str, line_number: int) -> DevrigDiagnostic:
    return DevrigDiagnostic(
        file_path=file_path,
        error_code="ERR_SCRIPT_SYNTAX",
        message=message,
        line_number=line_number,
    )


def _skip_string(source: str, index: int, line: int, quote_char: str) -> Tuple[int, int, bool]:
    """Skip a quoted string starting at index; returns (next index, line, terminated)."""
    i = index + 1
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            if source.startswith("\n", i + 1):
                line += 1
            i += 2
            continue
        if ch == "\n":
            return i, line, False
        if ch == quote_char:
            return i + 1, line, True
        i += 1
    return i, line, False


def _scan_template(source: str, index: int, line: int) -> Tuple[int, int, str]:
    """Scan template literal text from index; stops at its end or at a substitution."""
    i = index
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            if source.startswith("\n", i + 1):
                line += 1
            i += 2
            continue
        if ch == "\n":
            line += 1
        elif ch == "`":
            return i + 1, line, "closed"
        elif ch == "$" and source.startswith("{", i + 1):
            return i + 2, line, "substitution"
        i += 1
    return i, line, "unterminated"


def _skip_regex(source: str, index: int) -> Tuple[int, bool]:
    i = index + 1
    in_class = False
    while i < len(source):
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "\n":
            return i, False
        if ch == "[":
            in_class = True
        elif ch == "]":
            in_class = False
        elif ch == "/" and not in_class:
            return i + 1, True
        i += 1
    return i, False


def check_script_syntax(source: str, file_path: str) -> List[DevrigDiagnostic]:
    """Lexical sanity check for browser scripts.

    Reports unbalanced brackets, unterminated strings, template literals,
    comments and regular expressions. Stops at the first problem.
    """
    stack: List[Tuple[str, int]] = []
    line = 1
    prev = ""
    i = 0
    n = len(source)

    while i < n:
        ch = source[i]
        nxt = source[i + 1] if i + 1 < n else ""

        if ch == "\n":
            line += 1
            i += 1
            continue
        if ch.isspace():
            i += 1
            continue

        if ch == "/" and nxt == "/":
            end = source.find("\n", i)
            i = n if end == -1 else end
            continue
        if ch == "/" and nxt == "*":
            end = source.find("*/", i + 2)
            if end == -1:
                return [_script_error(file_path, "Unterminated comment", line)]
            line += source.count("\n", i, end)
            i = end + 2
            continue

        if ch in ("'", '"'):
            start_line = line
            i, line, terminated = _skip_string(source, i, line, ch)
            if not terminated:
                return [_script_error(file_path, "Unterminated string constant", start_line)]
            prev = _VALUE
            continue

        if ch == "`":
            start_line = line
            i, line, state = _scan_template(source, i + 1, line)
            if state == "unterminated":
                return [_script_error(file_path, "Unterminated template literal", start_line)]
            if state == "substitution":
                stack.append((_TEMPLATE_SUBSTITUTION, line))
            prev = _VALUE
            continue

        if ch == "/" and (prev in ("", _KEYWORD) or prev in _REGEX_PREFIX):
            start_line = line
            i, terminated = _skip_regex(source, i)
            if not terminated:
                return [_script_error(file_path, "Unterminated regular expression", start_line)]
            prev = _VALUE
            continue

        if ch.isalpha() or ch in "_$":
            start = i
            while i < n and (source[i].isalnum() or source[i] in "_$"):
                i += 1
            prev = _KEYWORD if source[start:i] in _REGEX_KEYWORDS else _VALUE
            continue
        if ch.isdigit() or (ch == "." and nxt.isdigit()):
            while i < n and (source[i].isalnum() or source[i] in "._"):
                i += 1
            prev = _VALUE
            continue
        if ch in "+-" and nxt == ch:
            # postfix increments leave a value behind
            if prev != _VALUE:
                prev = ch
            i += 2
            continue

        if ch in _OPENERS:
            stack.append((ch, line))
        elif ch in _CLOSERS:
            if not stack:
                return [_script_error(file_path, f"Unexpected token '{ch}'", line)]
            opener, opened_at = stack.pop()
            if opener == _TEMPLATE_SUBSTITUTION and ch == "}":
                i, line, state = _scan_template(source, i + 1, line)
                if state == "unterminated":
                    return [_script_error(file_path, "Unterminated template literal", opened_at)]
                if state == "substitution":
                    stack.append((_TEMPLATE_SUBSTITUTION, line))
                prev = _VALUE
                continue
            if _CLOSERS[ch] != opener:
                return [
                    _script_error(
                        file_path,
                        f"Unexpected token '{ch}', expected '{_OPENERS.get(opener, '}')}' (opened at line {opened_at})",
                        line,
                    )
                ]

        prev = _VALUE if ch in ")]" else ch
        i += 1

    if stack:
        opener, opened_at = stack[-1]
        return [_script_error(file_path, f"Unexpected end of input, '{opener}' opened here is never closed", opened_at)]

    return []


def identity_mappings(source: str) -> str:
    """VLQ mappings that map every generated line to the same source line."""
    line_count = source.count("\n") + 1
    if line_count <= 0:
        return ""
    return ";".join(["AAAA"] + ["AACA"] * (line_count - 1))


def build_source_map(filename: str, modules: Sequence[Tuple[str, str, int]]) -> str:
    """Index source map with one section per bundled module.

    modules holds (module id, module source, first generated line) triples;
    generated lines are zero-based.
    """
    sections = []
    for module_id, source, offset in modules:
        sections.append(
            {
                "offset": {"line": offset, "column": 0},
                "map": {
                    "version": 3,
                    "sources": [module_id],
                    "sourcesContent": [source],
                    "names": [],
                    "mappings": identity_mappings(source),
                },
            }
        )
    return json.dumps({"version": 3, "file": filename, "sections": sections}, indent=2)
