from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import ApplyFailure, EnvironmentMissing
from .lib.command import CommandRunner, run_cmd
from .lib.env import sudo_prefix
from .lib.files import (
    Clock,
    backup_copy,
    backup_existing,
    copy_file,
    file_mode,
    replace_symlink,
    same_content,
    sha256_file,
)
from .lib.pkg import PackagePrimitive
from .lib.textblock import inject
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
from .probe import ProbeResult

logger = logging.getLogger(__name__)


class ActionTaken(str, Enum):
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"
    # Best-effort item whose action failed; logged, not counted as a failure.
    WARNED = "warned"
    # Dry run: a change is needed but was not made.
    PENDING = "pending"


@dataclass(frozen=True)
class Outcome:
    item_id: str
    action_taken: ActionTaken
    error: Optional[str] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"item": self.item_id, "action": self.action_taken.value}
        if self.detail:
            d["detail"] = self.detail
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class Report:
    outcomes: List[Outcome] = field(default_factory=list)
    dry_run: bool = False

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    def by_action(self, action: ActionTaken) -> List[Outcome]:
        return [o for o in self.outcomes if o.action_taken == action]

    @property
    def applied(self) -> List[Outcome]:
        return self.by_action(ActionTaken.APPLIED)

    @property
    def skipped(self) -> List[Outcome]:
        return self.by_action(ActionTaken.SKIPPED)

    @property
    def failed(self) -> List[Outcome]:
        return self.by_action(ActionTaken.FAILED)

    @property
    def warned(self) -> List[Outcome]:
        return self.by_action(ActionTaken.WARNED)

    @property
    def pending(self) -> List[Outcome]:
        return self.by_action(ActionTaken.PENDING)

    @property
    def ok(self) -> bool:
        return not self.failed

    def outcome_for(self, item_id: str) -> Outcome:
        for o in self.outcomes:
            if o.item_id == item_id:
                return o
        raise KeyError(item_id)

    def summary(self) -> Dict[str, int]:
        return {a.value: len(self.by_action(a)) for a in ActionTaken}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "dry_run": self.dry_run,
            "summary": self.summary(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def _fmt_error(e: BaseException) -> str:
    return f"{type(e).__name__}: {e}"


class Executor:
    """Apply the deltas a Prober found, in plan order, one item at a time.

    - Satisfied items are skipped.
    - A failing item is recorded and the run moves on to the next one.
    - Nothing is retried and nothing is reordered.
    """

    def __init__(
        self,
        packages: Optional[PackagePrimitive] = None,
        *,
        runner: CommandRunner = run_cmd,
        sudo: str = "auto",
        command_timeout: Optional[float] = None,
        dry_run: bool = False,
        clock: Clock = time.time,
        no_packages_reason: str = "no supported package manager detected (apt, dnf, pacman)",
    ) -> None:
        self.packages = packages
        self.runner = runner
        self.sudo = sudo
        self.command_timeout = command_timeout
        self.dry_run = dry_run
        self.clock = clock
        self.no_packages_reason = no_packages_reason

    def apply(self, plan: Plan, probes: Mapping[str, ProbeResult]) -> Report:
        report = Report(dry_run=self.dry_run)
        for item in plan:
            probe = probes.get(item.identifier)
            if probe is None:
                logger.warning("No probe result for %s; treating as not satisfied", item.identifier)
                probe = ProbeResult(item.identifier, False, "not probed")
            report.add(self._apply_one(item, probe))
        return report

    def _apply_one(self, item: PlanItem, probe: ProbeResult) -> Outcome:
        if probe.currently_satisfied:
            logger.info("Skip %s (%s)", item.describe(), probe.detail)
            return Outcome(item.identifier, ActionTaken.SKIPPED, detail=probe.detail)

        if self.dry_run:
            logger.info("Would apply %s (%s)", item.describe(), probe.detail)
            return Outcome(item.identifier, ActionTaken.PENDING, detail=probe.detail)

        logger.info("Apply %s (%s)", item.describe(), probe.detail)
        try:
            detail = self._dispatch(item, probe)
        except Exception as e:
            failure = ApplyFailure(item.identifier, _fmt_error(e))
            if item.best_effort:
                logger.warning("Best-effort %s failed: %s", item.describe(), failure.message)
                return Outcome(item.identifier, ActionTaken.WARNED, error=failure.message)
            logger.error("Failed %s: %s", item.describe(), failure.message)
            return Outcome(item.identifier, ActionTaken.FAILED, error=failure.message)

        return Outcome(item.identifier, ActionTaken.APPLIED, detail=detail)

    def _dispatch(self, item: PlanItem, probe: ProbeResult) -> str:
        state = item.desired_state
        if isinstance(state, PackageState):
            return self._install_packages(state, probe)
        if isinstance(state, SymlinkState):
            return self._link(state)
        if isinstance(state, TextBlockState):
            return self._inject(state)
        if isinstance(state, DirectoryState):
            return self._make_dir(state)
        if isinstance(state, CopyState):
            return self._copy(state)
        if isinstance(state, DownloadState):
            return self._download(state)
        if isinstance(state, CommandState):
            return self._run_command(state)
        raise ApplyFailure(item.identifier, f"no action for {type(state).__name__}")

    def _install_packages(self, state: PackageState, probe: ProbeResult) -> str:
        if self.packages is None:
            raise EnvironmentMissing(self.no_packages_reason)
        # Only what the probe found missing; re-requesting installed packages
        # counts as a change for some managers.
        names = list(probe.pending) if probe.pending else list(state.names)
        self.packages.install(names)
        return f"installed {' '.join(names)}"

    def _link(self, state: SymlinkState) -> str:
        dst = state.dst
        backup = None
        if os.path.lexists(dst) and not dst.is_symlink():
            backup = backup_existing(dst, clock=self.clock)
        replace_symlink(dst, state.src)
        if backup is not None:
            return f"linked {dst} -> {state.src} (backup at {backup})"
        return f"linked {dst} -> {state.src}"

    def _inject(self, state: TextBlockState) -> str:
        backup = backup_copy(state.file, clock=self.clock) if state.backup else None
        inject(state.file, state.start_marker, state.end_marker, state.content)
        if backup is not None:
            return f"block written to {state.file} (backup at {backup})"
        return f"block written to {state.file}"

    def _make_dir(self, state: DirectoryState) -> str:
        state.path.mkdir(parents=True, exist_ok=True)
        if state.mode is not None:
            os.chmod(state.path, state.mode)
        return f"created {state.path}"

    def _copy(self, state: CopyState) -> str:
        if state.dst.exists() and same_content(state.src, state.dst):
            if state.mode is not None and file_mode(state.dst) != state.mode:
                os.chmod(state.dst, state.mode)
                return f"fixed mode of {state.dst}"
            return f"{state.dst} already up to date"
        backup = backup_existing(state.dst, clock=self.clock)
        copy_file(state.src, state.dst, mode=state.mode)
        if backup is not None:
            return f"copied {state.src} -> {state.dst} (backup at {backup})"
        return f"copied {state.src} -> {state.dst}"

    def _download(self, state: DownloadState) -> str:
        dest = state.dest
        tmp_dir: Optional[str] = None
        if state.privileged:
            tmp_dir = tempfile.mkdtemp(prefix="devbox-provisioner-")
            tmp = Path(tmp_dir) / dest.name
        else:
            tmp = dest.parent / f".{dest.name}.download"

        try:
            self.runner(
                ["curl", "-fsSL", "-o", str(tmp), state.url],
                timeout=self.command_timeout,
            )
            if state.sha256 is not None:
                actual = sha256_file(tmp)
                if actual != state.sha256:
                    raise ApplyFailure(
                        str(dest), f"checksum mismatch for {state.url}: expected {state.sha256}, got {actual}"
                    )
            mode = state.mode if state.mode is not None else 0o755
            if state.privileged:
                self.runner(
                    [*sudo_prefix(self.sudo), "install", "-m", format(mode, "o"), str(tmp), str(dest)],
                    timeout=self.command_timeout,
                )
            else:
                os.chmod(tmp, mode)
                os.replace(tmp, dest)
        finally:
            if tmp_dir is not None:
                shutil.rmtree(tmp_dir, ignore_errors=True)
            elif tmp.exists():
                tmp.unlink()
        return f"fetched {state.url} -> {dest}"

    def _run_command(self, state: CommandState) -> str:
        argv = [*sudo_prefix(self.sudo), *state.argv] if state.privileged else list(state.argv)
        r = self.runner(
            argv,
            env=dict(state.env),
            cwd=str(state.cwd) if state.cwd else None,
            timeout=state.timeout or self.command_timeout,
        )
        return f"exit {r.returncode}"
