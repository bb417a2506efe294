from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from .lib.env import PATHS

DEFAULT_LOG_PATH = PATHS.log_default


def _file_handler(path: str, fmt: logging.Formatter, level: int = logging.NOTSET) -> logging.Handler:
    Path(os.path.dirname(path) or ".").mkdir(parents=True, exist_ok=True)
    h = logging.FileHandler(path)
    h.setFormatter(fmt)
    h.setLevel(level)
    return h


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Configure logging.

    Every decision goes to `log_path`; warnings and errors are additionally
    mirrored to `<log_path>.errors` so a failed build can be triaged without
    reading the full command trace.

    Notes:
    - If the requested path is not writable we fall back to a file in the
      working directory and report the path actually used.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(level)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(logger, "_ailinux_configured", False):
        return getattr(logger, "_ailinux_log_path", log_path)

    chosen_path = log_path
    handlers: list[logging.Handler] = []

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    file_handler: Optional[logging.Handler] = None
    try:
        file_handler = _file_handler(log_path, fmt)
    except OSError:
        chosen_path = str(Path.cwd() / Path(log_path).name)
        file_handler = _file_handler(chosen_path, fmt)
    handlers.append(file_handler)

    try:
        handlers.append(_file_handler(chosen_path + ".errors", fmt, logging.WARNING))
    except OSError as e:
        logging.getLogger(__name__).warning("Error log unavailable: %s", e)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_ailinux_configured", True)
    setattr(logger, "_ailinux_log_path", chosen_path)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s, level=%s)",
        log_path,
        chosen_path,
        logging.getLevelName(level),
    )
    return chosen_path
