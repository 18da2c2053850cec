from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from string import Template
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import MalformedSpec

logger = logging.getLogger(__name__)


class ItemKind(str, Enum):
    PACKAGE = "package"
    SYMLINK = "symlink"
    TEXTBLOCK = "textblock"
    DIRECTORY = "directory"
    COPY = "copy"
    DOWNLOAD = "download"
    COMMAND = "command"


@dataclass(frozen=True)
class PackageState:
    names: Tuple[str, ...]


@dataclass(frozen=True)
class SymlinkState:
    src: Path
    dst: Path


@dataclass(frozen=True)
class TextBlockState:
    file: Path
    start_marker: str
    end_marker: str
    content: str
    # Copy the file aside before rewriting it.
    backup: bool = False


@dataclass(frozen=True)
class DirectoryState:
    path: Path
    mode: Optional[int] = None


@dataclass(frozen=True)
class CopyState:
    src: Path
    dst: Path
    mode: Optional[int] = None


@dataclass(frozen=True)
class DownloadState:
    url: str
    dest: Path
    mode: Optional[int] = None
    sha256: Optional[str] = None
    privileged: bool = False


@dataclass(frozen=True)
class CommandState:
    argv: Tuple[str, ...]
    cwd: Optional[Path] = None
    env: Tuple[Tuple[str, str], ...] = ()
    creates: Optional[Path] = None
    unless: Optional[Tuple[str, ...]] = None
    timeout: Optional[float] = None
    privileged: bool = False


DesiredState = Union[
    PackageState, SymlinkState, TextBlockState, DirectoryState, CopyState, DownloadState, CommandState
]


@dataclass(frozen=True)
class PlanItem:
    kind: ItemKind
    identifier: str
    desired_state: DesiredState
    best_effort: bool = False

    def describe(self) -> str:
        return f"{self.kind.value} {self.identifier}"


@dataclass(frozen=True)
class Plan:
    items: Tuple[PlanItem, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[PlanItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def ids(self) -> List[str]:
        return [i.identifier for i in self.items]

    def get(self, identifier: str) -> PlanItem:
        for item in self.items:
            if item.identifier == identifier:
                return item
        raise KeyError(identifier)

    def has_kind(self, kind: ItemKind) -> bool:
        return any(i.kind == kind for i in self.items)

    def window(self, start_at: Optional[str] = None, stop_after: Optional[str] = None) -> "Plan":
        """Sub-plan from `start_at` through `stop_after` (both inclusive, by identifier)."""
        ids = self.ids()
        for name, value in (("start_at", start_at), ("stop_after", stop_after)):
            if value is not None and value not in ids:
                raise ValueError(f"{name}: no plan item with id {value!r}")
        lo = ids.index(start_at) if start_at is not None else 0
        hi = ids.index(stop_after) + 1 if stop_after is not None else len(ids)
        if hi <= lo:
            raise ValueError(f"stop_after {stop_after!r} comes before start_at {start_at!r}")
        return Plan(items=self.items[lo:hi])


# ---- loading ----

COMMON_KEYS = {"kind", "id", "best_effort"}

KIND_KEYS: Dict[ItemKind, set] = {
    ItemKind.PACKAGE: {"names", "name"},
    ItemKind.SYMLINK: {"src", "dst"},
    ItemKind.TEXTBLOCK: {"file", "start", "end", "content", "backup"},
    ItemKind.DIRECTORY: {"path", "mode"},
    ItemKind.COPY: {"src", "dst", "mode"},
    ItemKind.DOWNLOAD: {"url", "dest", "mode", "sha256", "privileged"},
    ItemKind.COMMAND: {"run", "cwd", "env", "creates", "unless", "timeout", "privileged"},
}


class _ItemReader:
    """Field access for one raw item, raising MalformedSpec with its position."""

    def __init__(self, raw: Mapping[str, Any], index: int, variables: Mapping[str, str]) -> None:
        self.raw = raw
        self.index = index
        self.variables = variables
        self.identifier: Optional[str] = None

    def fail(self, reason: str) -> MalformedSpec:
        return MalformedSpec(reason, index=self.index, identifier=self.identifier)

    def require(self, key: str) -> Any:
        value = self.raw.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise self.fail(f"missing required field {key!r}")
        return value

    def string(self, key: str, *, required: bool = True) -> Optional[str]:
        value = self.require(key) if required else self.raw.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise self.fail(f"field {key!r} must be a string")
        return value

    def expand(self, value: str, key: str) -> str:
        try:
            out = Template(value).substitute(self.variables)
        except KeyError as e:
            raise self.fail(f"field {key!r} references undefined variable {e.args[0]!r}") from e
        except ValueError as e:
            raise self.fail(f"field {key!r}: {e}") from e
        if out == "~" or out.startswith("~/"):
            home = self.variables.get("HOME")
            if not home:
                raise self.fail(f"field {key!r} uses '~' but HOME is not defined")
            out = home + out[1:]
        return out

    def path(self, key: str, *, required: bool = True, absolute: bool = True) -> Optional[Path]:
        value = self.string(key, required=required)
        if value is None:
            return None
        p = Path(self.expand(value, key))
        if absolute and not p.is_absolute():
            raise self.fail(f"field {key!r} must be an absolute path, got {str(p)!r}")
        return p

    def mode(self, key: str = "mode") -> Optional[int]:
        value = self.raw.get(key)
        if value is None:
            return None
        if isinstance(value, bool):
            raise self.fail(f"field {key!r} must be an octal mode")
        if isinstance(value, int):
            mode = value
        elif isinstance(value, str):
            try:
                mode = int(value.strip().lower().removeprefix("0o"), 8)
            except ValueError as e:
                raise self.fail(f"field {key!r} is not an octal mode: {value!r}") from e
        else:
            raise self.fail(f"field {key!r} must be an octal mode")
        if not 0 <= mode <= 0o7777:
            raise self.fail(f"field {key!r} out of range: {oct(mode)}")
        return mode

    def flag(self, key: str) -> bool:
        value = self.raw.get(key, False)
        if not isinstance(value, bool):
            raise self.fail(f"field {key!r} must be true or false")
        return value

    def argv(self, key: str, *, required: bool = True) -> Optional[Tuple[str, ...]]:
        value = self.require(key) if required else self.raw.get(key)
        if value is None:
            return None
        if isinstance(value, str):
            parts = shlex.split(value)
        elif isinstance(value, (list, tuple)) and all(isinstance(a, (str, int, float)) for a in value):
            parts = [str(a) for a in value]
        else:
            raise self.fail(f"field {key!r} must be a command string or list of strings")
        if not parts:
            raise self.fail(f"field {key!r} is an empty command")
        return tuple(parts)


def _package_state(r: _ItemReader) -> PackageState:
    value = r.raw.get("names", r.raw.get("name"))
    if value is None:
        raise r.fail("missing required field 'names'")
    names = [value] if isinstance(value, str) else value
    if not isinstance(names, (list, tuple)) or not names:
        raise r.fail("field 'names' must be a package name or a non-empty list of names")
    cleaned: List[str] = []
    for n in names:
        if not isinstance(n, str) or not n.strip() or any(c.isspace() for c in n.strip()):
            raise r.fail(f"invalid package name {n!r}")
        if n.strip() not in cleaned:
            cleaned.append(n.strip())
    return PackageState(names=tuple(cleaned))


def _textblock_state(r: _ItemReader) -> TextBlockState:
    start = r.string("start")
    end = r.string("end")
    assert start is not None and end is not None
    if "\n" in start or "\n" in end:
        raise r.fail("markers must be single lines")
    if start == end:
        raise r.fail("start and end markers must differ")
    content = r.raw.get("content")
    if content is None:
        raise r.fail("missing required field 'content'")
    if not isinstance(content, str):
        raise r.fail("field 'content' must be a string")
    if any(ln in (start, end) for ln in content.splitlines()):
        raise r.fail("content must not contain the marker lines")
    file = r.path("file")
    assert file is not None
    return TextBlockState(file=file, start_marker=start, end_marker=end, content=content, backup=r.flag("backup"))


def _command_state(r: _ItemReader) -> CommandState:
    env = r.raw.get("env") or {}
    if not isinstance(env, Mapping) or not all(isinstance(k, str) for k in env):
        raise r.fail("field 'env' must be a mapping of strings")
    timeout = r.raw.get("timeout")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        raise r.fail("field 'timeout' must be a positive number of seconds")
    argv = r.argv("run")
    assert argv is not None
    return CommandState(
        argv=argv,
        cwd=r.path("cwd", required=False),
        env=tuple(sorted((k, r.expand(str(v), f"env.{k}")) for k, v in env.items())),
        creates=r.path("creates", required=False),
        unless=r.argv("unless", required=False),
        timeout=float(timeout) if timeout is not None else None,
        privileged=r.flag("privileged"),
    )


def _build_state(kind: ItemKind, r: _ItemReader) -> DesiredState:
    if kind == ItemKind.PACKAGE:
        return _package_state(r)
    if kind == ItemKind.SYMLINK:
        src = r.path("src", absolute=False)
        dst = r.path("dst")
        assert src is not None and dst is not None
        return SymlinkState(src=src, dst=dst)
    if kind == ItemKind.TEXTBLOCK:
        return _textblock_state(r)
    if kind == ItemKind.DIRECTORY:
        path = r.path("path")
        assert path is not None
        return DirectoryState(path=path, mode=r.mode())
    if kind == ItemKind.COPY:
        src = r.path("src")
        dst = r.path("dst")
        assert src is not None and dst is not None
        return CopyState(src=src, dst=dst, mode=r.mode())
    if kind == ItemKind.DOWNLOAD:
        url = r.expand(r.string("url") or "", "url")
        if "://" not in url:
            raise r.fail(f"field 'url' is not a URL: {url!r}")
        sha = r.string("sha256", required=False)
        if sha is not None:
            sha = sha.strip().lower()
            if len(sha) != 64 or any(c not in "0123456789abcdef" for c in sha):
                raise r.fail("field 'sha256' must be 64 hex characters")
        dest = r.path("dest")
        assert dest is not None
        return DownloadState(url=url, dest=dest, mode=r.mode(), sha256=sha, privileged=r.flag("privileged"))
    return _command_state(r)


def default_identifier(kind: ItemKind, state: DesiredState) -> str:
    if isinstance(state, PackageState):
        return f"package:{','.join(state.names)}"
    if isinstance(state, (SymlinkState, CopyState)):
        return f"{kind.value}:{state.dst}"
    if isinstance(state, TextBlockState):
        return f"textblock:{state.file}"
    if isinstance(state, DirectoryState):
        return f"directory:{state.path}"
    if isinstance(state, DownloadState):
        return f"download:{state.dest}"
    return f"command:{shlex.join(state.argv)}"


def load_item(raw: Any, index: int, variables: Mapping[str, str]) -> PlanItem:
    if not isinstance(raw, Mapping):
        raise MalformedSpec(f"expected a mapping, got {type(raw).__name__}", index=index)

    r = _ItemReader(raw, index, variables)
    explicit_id = raw.get("id")
    if explicit_id is not None:
        if not isinstance(explicit_id, str) or not explicit_id.strip():
            raise r.fail("field 'id' must be a non-empty string")
        r.identifier = explicit_id.strip()

    kind_raw = raw.get("kind")
    try:
        kind = ItemKind(str(kind_raw).strip().lower())
    except ValueError:
        allowed = ", ".join(k.value for k in ItemKind)
        raise r.fail(f"unknown kind {kind_raw!r} (expected one of: {allowed})") from None

    unknown = set(raw) - COMMON_KEYS - KIND_KEYS[kind]
    if unknown:
        raise r.fail(f"unknown field(s) for {kind.value}: {', '.join(sorted(map(str, unknown)))}")

    state = _build_state(kind, r)
    return PlanItem(
        kind=kind,
        identifier=r.identifier or default_identifier(kind, state),
        desired_state=state,
        best_effort=r.flag("best_effort"),
    )


def load_plan(specs: Sequence[Any], *, variables: Optional[Mapping[str, str]] = None) -> Plan:
    """Turn raw item mappings into an ordered, immutable Plan.

    Pure: nothing on disk is read or changed. Order is kept exactly as given.
    Raises MalformedSpec on the first bad item or on a duplicate identifier.
    """

    if isinstance(specs, (str, bytes)) or not isinstance(specs, Sequence):
        raise MalformedSpec("plan items must be a list")

    vars_ = dict(variables or {})
    items: List[PlanItem] = []
    seen: Dict[str, int] = {}
    for index, raw in enumerate(specs):
        item = load_item(raw, index, vars_)
        if item.identifier in seen:
            raise MalformedSpec(
                f"duplicate identifier (first used by item #{seen[item.identifier]})",
                index=index,
                identifier=item.identifier,
            )
        seen[item.identifier] = index
        items.append(item)

    logger.debug("Loaded plan with %d item(s)", len(items))
    return Plan(items=tuple(items))
