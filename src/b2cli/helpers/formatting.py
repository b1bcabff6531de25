"""
Terminal formatting for listings.

Example:
    >>> from b2cli.helpers import long_line, render_tree
    >>> console.print(long_line(file))
    >>> for line in render_tree(files, long=True):
    ...     console.print(line)
"""

from __future__ import annotations

import codecs
from datetime import datetime
from typing import Iterable, Union

from rich.filesize import decimal
from rich.text import Text

from b2cli.models.api import FileAction, FileVersion

SIZE_WIDTH = 6
DATE_WIDTH = 13
COLUMN_GAP = "   "

# Nested mapping: directory name -> subtree, file name -> FileVersion
Tree = dict[str, Union["Tree", FileVersion]]


def format_size(size: int) -> str:
    """Compact decimal size: ``999``, ``1.2k``, ``5.0M``."""
    if size < 1000:
        return str(size)
    human = decimal(size)
    return human.removesuffix("B").replace(" ", "")


def format_date(value: datetime | None) -> str:
    """Upload date as `` 5 Mar 2024`` (day padded to two characters)."""
    if value is None:
        return ""
    return f"{value.day:>2} {value:%b %Y}"


def long_header() -> Text:
    text = Text("  ")
    text.append("Size", style="underline")
    text.append(COLUMN_GAP)
    text.append("Date Uploaded", style="underline")
    text.append(COLUMN_GAP)
    text.append("Name", style="underline")
    return text


def _long_columns(file: FileVersion) -> Text:
    text = Text()
    text.append(f"{format_size(file.content_length):>{SIZE_WIDTH}}", style="green")
    text.append(COLUMN_GAP)
    text.append(f"{format_date(file.upload_timestamp):>{DATE_WIDTH}}", style="blue")
    text.append(COLUMN_GAP)
    return text


def long_line(file: FileVersion, *, show_action: bool = False) -> Text:
    """One ``ls -l`` row: size, upload date, name."""
    if file.action == FileAction.FOLDER:
        text = Text(" " * (SIZE_WIDTH + DATE_WIDTH + 2 * len(COLUMN_GAP)))
        text.append(file.file_name, style="blue")
        return text
    text = _long_columns(file)
    text.append(file.file_name, style="yellow")
    if show_action and file.action != FileAction.UPLOAD:
        text.append(f" ({file.action.value})", style="dim")
    return text


def build_tree(files: Iterable[FileVersion]) -> Tree:
    """
    Group file names on ``/`` into nested dictionaries.

    Only uploaded files take part; hidden markers, unfinished large files
    and folder placeholders are skipped.
    """
    tree: Tree = {}
    for file in files:
        if file.action != FileAction.UPLOAD:
            continue
        parts = [p for p in file.file_name.split("/") if p]
        if not parts:
            continue
        *dirs, name = parts
        node = tree
        for part in dirs:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                # a file and a directory share a name; keep the directory
                child = node[part] = {}
            node = child
        node.setdefault(name, file)
    return tree


def render_tree(files: Iterable[FileVersion], *, long: bool = False) -> list[Text]:
    """Indented tree of names, sorted by name at each level."""
    lines: list[Text] = []
    if long:
        lines.append(long_header())
    _render(build_tree(files), long, 0, lines)
    return lines


def _render(tree: Tree, long: bool, depth: int, lines: list[Text]) -> None:
    indent = "  " * depth
    for name in sorted(tree):
        node = tree[name]
        if isinstance(node, dict):
            line = Text(" " * (SIZE_WIDTH + DATE_WIDTH + 2 * len(COLUMN_GAP)) if long else "")
            line.append(indent)
            line.append(f"{name}/", style="blue")
            lines.append(line)
            _render(node, long, depth + 1, lines)
        else:
            line = _long_columns(node) if long else Text()
            line.append(indent)
            line.append(name, style="yellow")
            lines.append(line)


def is_text(sample: bytes) -> bool:
    """
    True if ``sample`` looks like UTF-8 text.

    The sample may be the head of a longer file, so a multi-byte character
    cut off at its end is tolerated.
    """
    if b"\x00" in sample:
        return False
    try:
        codecs.getincrementaldecoder("utf-8")().decode(sample, final=False)
    except UnicodeDecodeError:
        return False
    return True


__all__ = [
    "build_tree",
    "format_date",
    "format_size",
    "is_text",
    "long_header",
    "long_line",
    "render_tree",
]
