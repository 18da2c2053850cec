from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .errors import EnvironmentMissing, MalformedSpec
from .executor import Executor, Report
from .lib.command import CommandRunner, run_cmd
from .lib.env import PATHS, have
from .lib.pkg import PackageManager, detect_package_manager
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .manifests import LoadedPlan, list_profiles, load_plan_file, load_profile
from .pipeline import run_pipeline
from .plan import ItemKind
from .probe import Prober
from .report_store import save_report

logger = logging.getLogger(__name__)


def build_components(
    loaded: LoadedPlan,
    *,
    dry_run: bool = False,
    runner: CommandRunner = run_cmd,
    which: Callable[[str], bool] = have,
) -> Tuple[Prober, Executor]:
    cfg = loaded.config

    packages: Optional[PackageManager] = None
    reason = "no supported package manager detected (apt, dnf, pacman)"
    if loaded.plan.has_kind(ItemKind.PACKAGE):
        try:
            packages = detect_package_manager(
                cfg.package_manager,
                sudo=cfg.sudo,
                refresh_index=cfg.refresh_index,
                install_recommends=cfg.install_recommends,
                timeout=cfg.command_timeout,
                runner=runner,
                which=which,
            )
        except EnvironmentMissing as e:
            # Only package items depend on this; everything else still runs.
            logger.error("%s", e)
            reason = str(e)

    prober = Prober(packages, runner=runner, command_timeout=cfg.command_timeout)
    executor = Executor(
        packages,
        runner=runner,
        sudo=cfg.sudo,
        command_timeout=cfg.command_timeout,
        dry_run=dry_run,
        no_packages_reason=reason,
    )
    return prober, executor


def load(
    *,
    plan_path: Optional[str] = None,
    profile: Optional[str] = None,
    home: str,
    variables: Optional[Mapping[str, str]] = None,
) -> LoadedPlan:
    if bool(plan_path) == bool(profile):
        raise ValueError("Exactly one of plan_path or profile is required")
    if plan_path:
        return load_plan_file(plan_path, home=home, overrides=variables)
    assert profile is not None
    return load_profile(profile, home=home, overrides=variables)


def run(
    *,
    plan_path: Optional[str] = None,
    profile: Optional[str] = None,
    home: Optional[str] = None,
    variables: Optional[Mapping[str, str]] = None,
    log_path: str = DEFAULT_LOG_PATH,
    report_path: Optional[str] = None,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    dry_run: bool = False,
    verbose: bool = False,
    runner: CommandRunner = run_cmd,
) -> Report:
    """Load a plan, probe it and apply the missing changes."""

    actual_log_path = configure_logging(log_path=log_path, level=logging.DEBUG if verbose else logging.INFO)
    logger.debug("Log file: %s", actual_log_path)

    loaded = load(
        plan_path=plan_path,
        profile=profile,
        home=home or str(Path.home()),
        variables=variables,
    )
    prober, executor = build_components(loaded, dry_run=dry_run, runner=runner)

    report = run_pipeline(
        plan=loaded.plan,
        prober=prober,
        executor=executor,
        start_at=start_at,
        stop_after=stop_after,
    )

    if report_path:
        save_report(report_path, report)
    return report


def parse_vars(pairs: List[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"--var expects KEY=VALUE, got {pair!r}")
        out[key.strip()] = value
    return out


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="devbox-provisioner",
        description="Bring a workstation to the state described by a plan, changing only what differs.",
    )
    src = p.add_mutually_exclusive_group()
    src.add_argument("--plan", default=None, help="Path to a YAML plan file")
    src.add_argument("--profile", default=None, help="Built-in profile name (see --list-profiles)")
    p.add_argument("--list-profiles", action="store_true", help="List built-in profiles and exit")
    p.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a plan variable (repeatable), e.g. --var DOTFILES=~/src/dotfiles",
    )
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to provisioning log")
    p.add_argument("--report", default=None, help=f"Write the run report here (json|yaml), e.g. {PATHS.report_default}")
    p.add_argument("--start-at", default=None, help="Start at this item id")
    p.add_argument("--stop-after", default=None, help="Stop after this item id")
    p.add_argument("--dry-run", action="store_true", help="Probe and report needed changes without applying them")
    p.add_argument("-v", "--verbose", action="store_true", help="Show debug output on the console (the log file always has it)")
    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    if args.list_profiles:
        for name in list_profiles():
            print(name)
        return 0

    if not args.plan and not args.profile:
        p.error("one of --plan or --profile is required")

    try:
        variables = parse_vars(args.var)
    except argparse.ArgumentTypeError as e:
        p.error(str(e))

    try:
        report = run(
            plan_path=args.plan,
            profile=args.profile,
            variables=variables,
            log_path=args.log,
            report_path=args.report,
            start_at=args.start_at,
            stop_after=args.stop_after,
            dry_run=bool(args.dry_run),
            verbose=bool(args.verbose),
        )
    except (MalformedSpec, FileNotFoundError, ValueError) as e:
        logger.error("Cannot run plan: %s", e)
        return 2
    except KeyboardInterrupt:
        return 130

    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
