"""Process-wide logging configuration for the CLI and the panel services."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILE_NAME = "install.log"


def _writable_directory(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return os.access(path, os.W_OK)


def setup_logging(log_dir: Optional[Path] = None, level: int = logging.INFO) -> Optional[Path]:
    """Log to stderr and, when ``log_dir`` is writable, to ``install.log`` there.

    Returns the log file path or ``None`` when only stderr is used.
    """

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file: Optional[Path] = None
    if log_dir is not None and _writable_directory(log_dir):
        log_file = log_dir / LOG_FILE_NAME
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        os.chmod(log_file, 0o600)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    if log_dir is not None and log_file is None:
        logging.getLogger("serverpanel").warning("Log directory %s is not writable; logging to stderr only", log_dir)
    return log_file


__all__ = ["LOG_FILE_NAME", "LOG_FORMAT", "setup_logging"]
