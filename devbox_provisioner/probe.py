from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import ProbeError
from .lib.command import CommandFailed, CommandRunner, run_cmd
from .lib.files import file_mode, resolves_to, same_content, sha256_file
from .lib.pkg import PackagePrimitive
from .lib.textblock import has_block, read_lines
from .plan import (
    CommandState,
    CopyState,
    DirectoryState,
    DownloadState,
    PackageState,
    Plan,
    PlanItem,
    SymlinkState,
    TextBlockState,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    item_id: str
    currently_satisfied: bool
    detail: str
    # Unsatisfied part of the item, e.g. the package names still missing.
    pending: Tuple[str, ...] = ()
    error: Optional[str] = None


class Prober:
    """Read-only checks of current system state, one PlanItem at a time.

    Nothing is cached: every call looks at the system again.
    """

    def __init__(
        self,
        packages: Optional[PackagePrimitive] = None,
        *,
        runner: CommandRunner = run_cmd,
        command_timeout: Optional[float] = None,
    ) -> None:
        self.packages = packages
        self.runner = runner
        self.command_timeout = command_timeout

    def probe_plan(self, plan: Plan) -> Dict[str, ProbeResult]:
        return {item.identifier: self.probe(item) for item in plan}

    def probe(self, item: PlanItem) -> ProbeResult:
        try:
            satisfied, detail, pending = self._check(item)
        except ProbeError as e:
            logger.warning("Could not probe %s: %s", item.describe(), e.message)
            return ProbeResult(item.identifier, False, f"probe failed: {e.message}", error=e.message)

        logger.debug("Probe %s: satisfied=%s (%s)", item.identifier, satisfied, detail)
        return ProbeResult(item.identifier, satisfied, detail, pending=pending)

    def _check(self, item: PlanItem) -> Tuple[bool, str, Tuple[str, ...]]:
        state = item.desired_state
        try:
            if isinstance(state, PackageState):
                return self._check_packages(state)
            if isinstance(state, SymlinkState):
                return self._check_symlink(state) + ((),)
            if isinstance(state, TextBlockState):
                return self._check_textblock(state) + ((),)
            if isinstance(state, DirectoryState):
                return self._check_directory(state) + ((),)
            if isinstance(state, CopyState):
                return self._check_copy(state) + ((),)
            if isinstance(state, DownloadState):
                return self._check_download(state) + ((),)
            if isinstance(state, CommandState):
                return self._check_command(state) + ((),)
        except (OSError, ValueError, CommandFailed) as e:
            raise ProbeError(item.identifier, str(e)) from e
        raise ProbeError(item.identifier, f"no probe for {type(state).__name__}")

    def _check_packages(self, state: PackageState) -> Tuple[bool, str, Tuple[str, ...]]:
        if self.packages is None:
            return False, "no supported package manager available", state.names
        missing = tuple(n for n in state.names if not self.packages.is_installed(n))
        if missing:
            return False, f"not installed: {' '.join(missing)}", missing
        return True, f"installed ({self.packages.name})", ()

    def _check_symlink(self, state: SymlinkState) -> Tuple[bool, str]:
        dst = state.dst
        if not os.path.lexists(dst):
            return False, f"{dst} does not exist"
        if resolves_to(dst, state.src):
            return True, f"{dst} -> {state.src}"
        if dst.is_symlink():
            return False, f"{dst} links to {os.readlink(dst)}"
        return False, f"{dst} exists and is not a link to {state.src}"

    def _check_textblock(self, state: TextBlockState) -> Tuple[bool, str]:
        if not state.file.exists():
            return False, f"{state.file} does not exist"
        lines = read_lines(state.file)
        if has_block(lines, state.start_marker, state.end_marker, state.content):
            return True, f"block present in {state.file}"
        return False, f"block missing or different in {state.file}"

    def _check_directory(self, state: DirectoryState) -> Tuple[bool, str]:
        p = state.path
        if not p.is_dir():
            return False, f"{p} is not a directory" if os.path.lexists(p) else f"{p} does not exist"
        if state.mode is not None and file_mode(p) != state.mode:
            return False, f"{p} mode {oct(file_mode(p))} != {oct(state.mode)}"
        return True, f"{p} present"

    def _check_copy(self, state: CopyState) -> Tuple[bool, str]:
        if not state.dst.exists():
            return False, f"{state.dst} does not exist"
        if not same_content(state.src, state.dst):
            return False, f"{state.dst} differs from {state.src}"
        if state.mode is not None and file_mode(state.dst) != state.mode:
            return False, f"{state.dst} mode {oct(file_mode(state.dst))} != {oct(state.mode)}"
        return True, f"{state.dst} up to date"

    def _check_download(self, state: DownloadState) -> Tuple[bool, str]:
        if not state.dest.is_file():
            return False, f"{state.dest} does not exist"
        if state.sha256 is not None and sha256_file(state.dest) != state.sha256:
            return False, f"{state.dest} checksum mismatch"
        if state.mode is not None and file_mode(state.dest) != state.mode:
            return False, f"{state.dest} mode {oct(file_mode(state.dest))} != {oct(state.mode)}"
        return True, f"{state.dest} present"

    def _check_command(self, state: CommandState) -> Tuple[bool, str]:
        if state.creates is not None:
            if os.path.lexists(state.creates):
                return True, f"{state.creates} exists"
            if state.unless is None:
                return False, f"{state.creates} does not exist"
        if state.unless is not None:
            r = self.runner(
                list(state.unless),
                check=False,
                env=dict(state.env),
                cwd=str(state.cwd) if state.cwd else None,
                timeout=state.timeout or self.command_timeout,
            )
            if r.returncode == 0:
                return True, "guard command succeeded"
            return False, f"guard command exited {r.returncode}"
        return False, "no guard; always runs"
