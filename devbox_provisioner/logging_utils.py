from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .lib.env import PATHS

DEFAULT_LOG_PATH = PATHS.log_default

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)-7s %(message)s"


def _open_log_file(requested: Path) -> logging.FileHandler:
    try:
        requested.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(requested, encoding="utf-8")
    except OSError:
        fallback = Path.cwd() / "devbox-provisioner.log"
        return logging.FileHandler(fallback, encoding="utf-8")


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Send provisioning logs to a file (always DEBUG) and to the console at `level`.

    The file gets every probe decision, every command and its captured output,
    so a failed run can be diagnosed after the fact. When the requested
    location is not writable the log goes to `./devbox-provisioner.log`.

    A second call only adjusts the console level. Returns the file actually used.
    """

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    if getattr(root, "_devbox_configured", False):
        for h in root.handlers:
            if getattr(h, "_devbox_console", False):
                h.setLevel(level)
        return getattr(root, "_devbox_log_path", log_path)

    requested = Path(log_path).expanduser()
    file_handler = _open_log_file(requested)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    handlers: List[logging.Handler] = [file_handler]

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT))
        setattr(console, "_devbox_console", True)
        handlers.append(console)

    for h in handlers:
        root.addHandler(h)

    chosen = file_handler.baseFilename
    setattr(root, "_devbox_configured", True)
    setattr(root, "_devbox_log_path", chosen)

    logging.getLogger(__name__).info("Logging to %s (requested %s)", chosen, requested)
    return chosen
