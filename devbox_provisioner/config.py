from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import MalformedSpec
from .lib.env import SUDO_POLICIES
from .lib.pkg import MANAGERS


@dataclass(frozen=True)
class ProvisionConfig:
    """The `settings:` section of a plan file."""

    raw: Dict[str, Any]

    @property
    def package_manager(self) -> str:
        return str(self.raw.get("package_manager") or "auto")

    @property
    def sudo(self) -> str:
        return str(self.raw.get("sudo") or "auto")

    @property
    def refresh_index(self) -> bool:
        return bool(self.raw.get("refresh_index", True))

    @property
    def install_recommends(self) -> bool:
        return bool(self.raw.get("install_recommends", False))

    @property
    def command_timeout(self) -> Optional[float]:
        value = self.raw.get("command_timeout")
        return float(value) if value is not None else None

    def validate(self) -> "ProvisionConfig":
        if self.package_manager != "auto" and self.package_manager not in MANAGERS:
            allowed = ", ".join(["auto", *MANAGERS])
            raise MalformedSpec(f"settings.package_manager must be one of: {allowed}")
        if self.sudo not in SUDO_POLICIES:
            raise MalformedSpec(f"settings.sudo must be one of: {', '.join(SUDO_POLICIES)}")
        timeout = self.raw.get("command_timeout")
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
            raise MalformedSpec("settings.command_timeout must be a positive number of seconds")
        return self
