"""Extract inline build commands and asset directories from Go sources.

Commands live in comments, one per line, prefixed by ``$``::

    // $ go generate ./...
    /* $ cd app && npm run build
       $ go-bindata -o bindata.go ./app/build/... */

Asset directories come from ``HandleDir`` calls. A call that passes
``DirOptions{Asset: ...}`` serves embedded data, so its directory must be
generated by the bundler before the backend is compiled.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

_LINE_COMMENT = re.compile(r"//(?P<body>[^\n]*)")
_BLOCK_COMMENT = re.compile(r"/\*(?P<body>.*?)\*/", re.DOTALL)
_STRING_CONST = re.compile(
    r"(?:\bconst\s+|\bvar\s+|^\s*)(?P<name>[A-Za-z_]\w*)\s*(?::=|=)\s*\"(?P<value>[^\"]*)\"",
    re.MULTILINE,
)
_HANDLE_DIR = re.compile(
    r"\.HandleDir\(\s*\"[^\"]*\"\s*,\s*(?P<target>\"[^\"]*\"|[A-Za-z_]\w*)\s*"
    r"(?P<options>,\s*[\w.]*DirOptions\s*\{(?P<body>[^}]*)\})?",
    re.DOTALL,
)
_CD_PREFIX = re.compile(r"^cd\s+(?P<dir>\S+)\s*&&\s*(?P<rest>.+)$")


@dataclass(slots=True)
class InlineCommand:
    """One command declared in a source comment."""

    name: str
    args: list[str] = field(default_factory=list)
    dir: str = ""

    @property
    def argv(self) -> list[str]:
        return [self.name, *self.args]


@dataclass(slots=True)
class AssetDir:
    """A directory served by the app, flagged when it must be bundled."""

    dir: str
    should_generate: bool


@dataclass(slots=True)
class ParseResult:
    commands: list[InlineCommand] = field(default_factory=list)
    asset_dirs: list[AssetDir] = field(default_factory=list)


def parse_source(source: str) -> ParseResult:
    """Parse one source file's text."""
    result = ParseResult()
    result.commands.extend(_parse_commands(source))
    result.asset_dirs.extend(_parse_asset_dirs(source))
    return result


def parse_dir(root: Path, *, pattern: str = "*.go") -> ParseResult:
    """Parse every top-level file in ``root`` matching ``pattern``, in name order."""
    result = ParseResult()
    for path in sorted(root.glob(pattern)):
        if not path.is_file():
            continue
        try:
            source = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            continue
        parsed = parse_source(source)
        result.commands.extend(parsed.commands)
        for asset_dir in parsed.asset_dirs:
            if asset_dir not in result.asset_dirs:
                result.asset_dirs.append(asset_dir)
    return result


def _parse_commands(source: str) -> list[InlineCommand]:
    comments: list[tuple[int, str]] = []
    block_spans: list[tuple[int, int]] = []
    for match in _BLOCK_COMMENT.finditer(source):
        comments.append((match.start(), match.group("body")))
        block_spans.append(match.span())
    for match in _LINE_COMMENT.finditer(source):
        start = match.start()
        if any(begin <= start < end for begin, end in block_spans):
            continue
        if _inside_string(source, start):
            continue
        comments.append((start, match.group("body")))
    comments.sort(key=lambda item: item[0])

    commands: list[InlineCommand] = []
    for _, body in comments:
        for line in body.splitlines():
            line = line.strip()
            if not line.startswith("$ "):
                continue
            command = _to_command(line[2:].strip())
            if command is not None:
                commands.append(command)
    return commands


def _to_command(text: str) -> InlineCommand | None:
    directory = ""
    cd = _CD_PREFIX.match(text)
    if cd:
        directory = cd.group("dir")
        text = cd.group("rest")
    try:
        parts = shlex.split(text)
    except ValueError:
        parts = text.split()
    if not parts:
        return None
    return InlineCommand(name=parts[0], args=parts[1:], dir=directory)


def _parse_asset_dirs(source: str) -> list[AssetDir]:
    constants = {match.group("name"): match.group("value") for match in _STRING_CONST.finditer(source)}
    asset_dirs: list[AssetDir] = []
    for match in _HANDLE_DIR.finditer(source):
        target = match.group("target")
        if target.startswith('"'):
            directory = target.strip('"')
        else:
            resolved = constants.get(target)
            if resolved is None:
                continue
            directory = resolved
        body = match.group("body") or ""
        should_generate = re.search(r"\bAsset\s*:", body) is not None
        asset_dir = AssetDir(dir=directory, should_generate=should_generate)
        if asset_dir not in asset_dirs:
            asset_dirs.append(asset_dir)
    return asset_dirs


def _inside_string(source: str, index: int) -> bool:
    line_start = source.rfind("\n", 0, index) + 1
    prefix = source[line_start:index]
    return prefix.count('"') % 2 == 1 or prefix.count("`") % 2 == 1
