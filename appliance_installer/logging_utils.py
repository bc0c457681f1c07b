from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_LOG_PATH = "/var/log/appliance-installer.log"
FALLBACK_LOG_NAME = "appliance-installer.log"

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(message)s"


def _file_handler(log_path: str) -> tuple[logging.Handler, str]:
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path), log_path
    except OSError:
        fallback = str(Path.cwd() / FALLBACK_LOG_NAME)
        return logging.FileHandler(fallback), fallback


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure logging for one CLI invocation and return the log file actually used.

    The file always receives DEBUG, so captured command output survives even when the
    console shows only `level`. An appliance root is read-only and a build host may be
    unprivileged; if `log_path` cannot be opened the log goes to the working directory.
    Calling this twice keeps the first configuration.
    """

    root = logging.getLogger()
    configured: Optional[str] = getattr(root, "_appliance_log_path", None)
    if configured is not None:
        return configured

    root.setLevel(logging.DEBUG)

    file_handler, chosen_path = _file_handler(log_path)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    root.addHandler(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        root.addHandler(console)

    setattr(root, "_appliance_log_path", chosen_path)

    log = logging.getLogger(__name__)
    if chosen_path != log_path:
        log.warning("Cannot write %s; logging to %s", log_path, chosen_path)
    log.debug("Logging initialized at %s", chosen_path)
    return chosen_path
