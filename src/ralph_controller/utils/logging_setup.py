"""Root logger configuration for command-line runs."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from ralph_controller.constants import LOG_DIR

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_dir: Path = LOG_DIR) -> Optional[Path]:
    """Log to stderr at ``level`` and to a per-run file at DEBUG.

    Returns the log file path, or None if the log directory is not writable.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level.upper())
    console.setFormatter(formatter)
    root.addHandler(console)

    log_file = log_dir / f"ralph-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        root.warning(f"Could not open log file {log_file}: {e}")
        return None

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file
