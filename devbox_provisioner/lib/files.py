from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


Clock = Callable[[], float]


def resolves_to(dst: Path, src: Path) -> bool:
    """True if `dst` exists and points at `src`, by link text or by real path."""
    if not os.path.lexists(dst):
        return False
    if dst.is_symlink() and os.readlink(dst) == str(src):
        return True
    return os.path.realpath(dst) == os.path.realpath(src)


def backup_path(path: Path, *, clock: Clock = time.time) -> Path:
    """`<path>.backup.<unix_ts>`, with `.1`, `.2`, ... appended if already taken."""
    base = f"{path}.backup.{int(clock())}"
    candidate = Path(base)
    n = 0
    while os.path.lexists(candidate):
        n += 1
        candidate = Path(f"{base}.{n}")
    return candidate


def backup_existing(path: Path, *, clock: Clock = time.time) -> Optional[Path]:
    """Rename whatever is at `path` out of the way. Returns the backup path."""
    if not os.path.lexists(path):
        return None
    dest = backup_path(path, clock=clock)
    logger.info("Backing up %s to %s", path, dest)
    os.rename(path, dest)
    return dest


def backup_copy(path: Path, *, clock: Clock = time.time) -> Optional[Path]:
    """Copy the file at `path` (following links) to a backup, leaving it in place."""
    if not path.is_file():
        return None
    dest = backup_path(path, clock=clock)
    logger.info("Copying %s to %s", path, dest)
    shutil.copy2(path, dest)
    return dest


def replace_symlink(dst: Path, src: Path) -> None:
    """Point `dst` at `src` in one rename; an existing link at `dst` is replaced."""
    tmp = dst.parent / f".{dst.name}.{uuid.uuid4().hex[:8]}.lnk"
    os.symlink(src, tmp)
    try:
        os.replace(tmp, dst)
    except BaseException:
        os.unlink(tmp)
        raise


def file_mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def same_content(a: Path, b: Path) -> bool:
    if not a.is_file() or not b.is_file():
        return False
    if a.stat().st_size != b.stat().st_size:
        return False
    return a.read_bytes() == b.read_bytes()


def copy_file(src: Path, dst: Path, *, mode: Optional[int] = None) -> None:
    """Copy with metadata through a temporary sibling, then rename into place."""
    if not src.is_file():
        raise FileNotFoundError(str(src))
    tmp = dst.parent / f".{dst.name}.{uuid.uuid4().hex[:8]}.tmp"
    shutil.copy2(src, tmp)
    try:
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, dst)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
