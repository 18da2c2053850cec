from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import List

from ..errors import EnvironmentMissing


@dataclass(frozen=True)
class Paths:
    log_default: str = "~/.cache/devbox-provisioner/provision.log"
    report_default: str = "~/.cache/devbox-provisioner/last-report.json"


PATHS = Paths()


SUDO_POLICIES = ("auto", "always", "never")


def have(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return bool(geteuid and geteuid() == 0)


def sudo_prefix(policy: str = "auto") -> List[str]:
    """Return the argv prefix used for privileged commands.

    "auto" only adds sudo when not already root.
    """
    if policy not in SUDO_POLICIES:
        raise ValueError(f"Unknown sudo policy: {policy}")
    if policy == "never":
        return []
    if policy == "auto" and is_root():
        return []
    if not have("sudo"):
        raise EnvironmentMissing("sudo is required for privileged commands but was not found")
    return ["sudo"]
