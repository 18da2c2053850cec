from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from ..errors import EnvironmentMissing
from .command import CommandRunner, run_cmd
from .env import have, sudo_prefix

logger = logging.getLogger(__name__)


class PackagePrimitive(Protocol):
    """What the prober and executor need from a package manager."""

    name: str

    def is_installed(self, package: str) -> bool:
        ...

    def install(self, packages: Iterable[str]) -> None:
        ...


@dataclass(frozen=True)
class ManagerSpec:
    name: str
    binary: str
    query: Sequence[str]
    install: Sequence[str]
    refresh: Optional[Sequence[str]] = None
    no_recommends: Sequence[str] = ()


MANAGERS: Dict[str, ManagerSpec] = {
    "apt": ManagerSpec(
        name="apt",
        binary="apt-get",
        query=("dpkg", "-s"),
        install=("apt-get", "install", "-y"),
        refresh=("apt-get", "update", "-y"),
        no_recommends=("--no-install-recommends",),
    ),
    "dnf": ManagerSpec(
        name="dnf",
        binary="dnf",
        query=("rpm", "-q"),
        install=("dnf", "install", "-y"),
    ),
    "pacman": ManagerSpec(
        name="pacman",
        binary="pacman",
        query=("pacman", "-Qq"),
        install=("pacman", "-S", "--needed", "--noconfirm"),
        refresh=("pacman", "-Sy", "--noconfirm"),
    ),
}

# Detection order when package_manager is "auto".
DETECT_ORDER = ("apt", "dnf", "pacman")


@dataclass
class PackageManager:
    spec: ManagerSpec
    sudo: str = "auto"
    refresh_index: bool = True
    install_recommends: bool = False
    timeout: Optional[float] = None
    runner: CommandRunner = run_cmd
    _refreshed: bool = field(default=False, init=False, repr=False)

    @property
    def name(self) -> str:
        return self.spec.name

    def is_installed(self, package: str) -> bool:
        r = self.runner([*self.spec.query, package], check=False, timeout=self.timeout)
        if not r.ok:
            return False
        if self.spec.name == "pacman":
            # -Qq also matches packages that merely provide the name.
            return r.stdout.strip() == package
        if self.spec.name == "apt":
            # dpkg -s succeeds for removed-but-configured packages too.
            return "Status: install ok installed" in r.stdout
        return True

    def missing(self, packages: Iterable[str]) -> List[str]:
        return [p for p in packages if not self.is_installed(p)]

    def refresh(self) -> None:
        if self._refreshed or not self.refresh_index or not self.spec.refresh:
            return
        logger.info("Refreshing %s package index", self.name)
        self.runner([*sudo_prefix(self.sudo), *self.spec.refresh], timeout=self.timeout)
        self._refreshed = True

    def install(self, packages: Iterable[str]) -> None:
        pkgs = list(packages)
        if not pkgs:
            return
        self.refresh()
        argv = [*sudo_prefix(self.sudo), *self.spec.install]
        if not self.install_recommends:
            argv.extend(self.spec.no_recommends)
        logger.info("Installing via %s: %s", self.name, " ".join(pkgs))
        self.runner([*argv, *pkgs], timeout=self.timeout)


def detect_package_manager(
    preferred: str = "auto",
    *,
    sudo: str = "auto",
    refresh_index: bool = True,
    install_recommends: bool = False,
    timeout: Optional[float] = None,
    runner: CommandRunner = run_cmd,
    which: Callable[[str], bool] = have,
) -> Optional[PackageManager]:
    """Pick the package manager present on this machine.

    Returns None when nothing is found under "auto"; an explicitly requested
    manager that is absent raises EnvironmentMissing.
    """

    def build(spec: ManagerSpec) -> PackageManager:
        return PackageManager(
            spec=spec,
            sudo=sudo,
            refresh_index=refresh_index,
            install_recommends=install_recommends,
            timeout=timeout,
            runner=runner,
        )

    if preferred != "auto":
        spec = MANAGERS.get(preferred)
        if spec is None:
            raise ValueError(f"Unknown package manager: {preferred}")
        if not which(spec.binary):
            raise EnvironmentMissing(f"Requested package manager {preferred} not found ({spec.binary})")
        return build(spec)

    for name in DETECT_ORDER:
        spec = MANAGERS[name]
        if which(spec.binary) and which(spec.query[0]):
            logger.info("Detected package manager: %s", name)
            return build(spec)

    logger.warning("No supported package manager detected (tried %s)", ", ".join(DETECT_ORDER))
    return None
