from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Union[int, str] = logging.WARNING, log_path: Optional[str] = None) -> Optional[str]:
    """Configure root logging once per process.

    Console output goes to stderr so stdout stays clean for JSON-lines events.
    When ``log_path`` cannot be opened, a file in the working directory is used
    instead. Returns the file path actually in use (or None).
    """
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(root, "_agent_guard_configured", False):
        return getattr(root, "_agent_guard_log_path", None)

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    handlers: list = []

    chosen_path: Optional[str] = None
    if log_path:
        try:
            Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
            chosen_path = log_path
        except OSError:
            fallback = str(Path.cwd() / "agent-guard.log")
            handlers.append(logging.FileHandler(fallback, encoding="utf-8"))
            chosen_path = fallback

    handlers.append(logging.StreamHandler(sys.stderr))

    for h in handlers:
        h.setFormatter(fmt)
        root.addHandler(h)

    setattr(root, "_agent_guard_configured", True)
    setattr(root, "_agent_guard_log_path", chosen_path)

    logging.getLogger(__name__).debug("Logging initialized (level=%s, file=%s)", logging.getLevelName(level), chosen_path)
    return chosen_path
