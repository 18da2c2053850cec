"""Marker-delimited blocks inside arbitrary text files.

A block written by `inject` looks like this at the end of the file:

    <existing lines>
    <blank line>
    <start marker>
    <content, verbatim>
    <end marker>
    <blank line>

Re-injecting strips every earlier block before appending the new one, so
repeated calls converge to the same bytes. The blank line in front of a block
is stripped with it; the one after it only when it ends the file, so blank
lines the user keeps between a block and their own text survive.

Files are read and written with surrogate escapes, so bytes that are not
valid UTF-8 pass through untouched.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


def _bare(line: str) -> str:
    return line.rstrip("\r\n")


def _content_text(content: str) -> str:
    if content and not content.endswith("\n"):
        return content + "\n"
    return content


def read_lines(path: Path) -> List[str]:
    """Read a file as lines with their original line endings and undecodable bytes kept."""
    with path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read().splitlines(keepends=True)


def strip_blocks(lines: Sequence[str], start_marker: str, end_marker: str) -> List[str]:
    """Remove every start..end block (inclusive) from `lines`.

    A start marker suppresses output until the next end marker. The blank line
    right before a start marker goes with the block, as does a blank line
    after an end marker when it is the last line of the file. An unterminated
    block runs to end of file; an end marker with no open block is dropped.
    """

    out: List[str] = []
    in_block = False
    drop_blank = False
    last = len(lines) - 1

    for i, line in enumerate(lines):
        bare = _bare(line)
        if in_block:
            if bare == end_marker:
                in_block = False
                drop_blank = True
            continue

        if bare == start_marker:
            if out and _bare(out[-1]) == "":
                out.pop()
            in_block = True
            drop_blank = False
            continue

        if bare == end_marker:
            drop_blank = True
            continue

        if drop_blank and bare == "" and i == last:
            continue

        drop_blank = False
        out.append(line)

    if in_block:
        logger.warning("Unterminated block (%s); dropped everything after it", start_marker)
    return out


def render_block(start_marker: str, end_marker: str, content: str) -> str:
    return f"{start_marker}\n{_content_text(content)}{end_marker}\n"


def render_file(lines: Sequence[str], start_marker: str, end_marker: str, content: str) -> str:
    """Return the new file text: `lines` minus old blocks, plus the new block."""

    kept = "".join(strip_blocks(lines, start_marker, end_marker))
    if kept and not kept.endswith("\n"):
        kept += "\n"
    return kept + "\n" + render_block(start_marker, end_marker, content) + "\n"


def find_blocks(lines: Sequence[str], start_marker: str, end_marker: str) -> List[Tuple[int, Optional[int]]]:
    """Return (start_index, end_index) for each block; end is None if unterminated."""

    found: List[Tuple[int, Optional[int]]] = []
    open_at: Optional[int] = None
    for i, line in enumerate(lines):
        bare = _bare(line)
        if open_at is None:
            if bare == start_marker:
                open_at = i
        elif bare == end_marker:
            found.append((open_at, i))
            open_at = None
    if open_at is not None:
        found.append((open_at, None))
    return found


def has_block(lines: Sequence[str], start_marker: str, end_marker: str, content: str) -> bool:
    """True when there is exactly one block and its body is byte-identical to `content`."""

    blocks = find_blocks(lines, start_marker, end_marker)
    if len(blocks) != 1:
        return False
    start, end = blocks[0]
    if end is None:
        return False
    if any(_bare(ln) == end_marker for ln in lines[:start]):
        return False
    if any(_bare(ln) == end_marker for ln in lines[end + 1 :]):
        return False
    return "".join(lines[start + 1 : end]) == _content_text(content)


def _write_atomic(path: Path, text: str, mode: Optional[int]) -> None:
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def inject(file_path: str | Path, start_marker: str, end_marker: str, content: str) -> None:
    """Insert or replace the marker block in `file_path`.

    The file is created empty when missing. The new text goes to a temporary
    sibling which then replaces the original, keeping its permission bits. If
    `file_path` is a symlink its target is rewritten and the link is kept.
    """

    if not start_marker or not end_marker:
        raise ValueError("start and end markers must be non-empty")
    if start_marker == end_marker:
        raise ValueError("start and end markers must differ")

    path = Path(os.path.realpath(file_path))
    if not path.exists():
        logger.info("Creating empty %s", path)
        path.touch()

    mode = stat.S_IMODE(path.stat().st_mode)
    new_text = render_file(read_lines(path), start_marker, end_marker, content)
    _write_atomic(path, new_text, mode)
    logger.info("Injected block %s into %s", start_marker, path)
