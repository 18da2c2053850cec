"""Shared fixtures: a scripted command runner and an in-memory package manager."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from devbox_provisioner.lib.command import CmdResult, CommandFailed, fmt_argv


@dataclass
class Call:
    argv: List[str]
    env: Optional[Dict[str, str]]
    cwd: Optional[str]
    timeout: Optional[float]
    check: bool


class FakeRunner:
    """Records every command; answers the first registered prefix that matches."""

    def __init__(self) -> None:
        self.calls: List[Call] = []
        self._rules: List[Tuple[Tuple[str, ...], int, str, str, Optional[Callable[[List[str]], None]]]] = []

    def on(
        self,
        prefix: Sequence[str],
        *,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        action: Optional[Callable[[List[str]], None]] = None,
    ) -> "FakeRunner":
        self._rules.append((tuple(prefix), returncode, stdout, stderr, action))
        return self

    def __call__(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        env=None,
        cwd=None,
        input_text=None,
        timeout=None,
        dry_run: bool = False,
    ) -> CmdResult:
        argv_list = list(argv)
        self.calls.append(Call(argv_list, dict(env) if env is not None else None, cwd, timeout, check))

        rc, out, err = 0, "", ""
        for prefix, r, o, e, action in self._rules:
            if tuple(argv_list[: len(prefix)]) == prefix:
                if action is not None:
                    action(argv_list)
                rc, out, err = r, o, e
                break

        result = CmdResult(argv=argv_list, returncode=rc, stdout=out, stderr=err)
        if check and rc != 0:
            raise CommandFailed(f"Command failed ({rc}): {fmt_argv(argv_list)}", result)
        return result

    @property
    def argvs(self) -> List[List[str]]:
        return [c.argv for c in self.calls]


class FakePackages:
    name = "fake"

    def __init__(self, installed: Iterable[str] = (), fail: Optional[Exception] = None) -> None:
        self.installed = set(installed)
        self.fail = fail
        self.install_calls: List[List[str]] = []

    def is_installed(self, package: str) -> bool:
        return package in self.installed

    def install(self, packages: Iterable[str]) -> None:
        names = list(packages)
        self.install_calls.append(names)
        if self.fail is not None:
            raise self.fail
        self.installed.update(names)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    h = tmp_path / "home"
    h.mkdir()
    return h


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo configure_logging() so each test starts from a clean root logger."""
    root = logging.getLogger()
    level = root.level
    yield
    for h in list(root.handlers):
        # pytest's own capture handlers are subclasses; leave those alone.
        if type(h) in (logging.FileHandler, logging.StreamHandler):
            root.removeHandler(h)
            h.close()
    root.setLevel(level)
    for attr in ("_devbox_configured", "_devbox_log_path"):
        if hasattr(root, attr):
            delattr(root, attr)
