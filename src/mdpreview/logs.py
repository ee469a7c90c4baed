"""Daily log file setup"""

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(log_dir: str | Path, level: int = logging.INFO) -> Path:
    """Append to <log_dir>/mdpreview.log, starting a new dated file each midnight.

    Returns the active log file path. Safe to call more than once; the handler is
    installed only for the first log_dir seen.
    """
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "mdpreview.log"

    root = logging.getLogger()
    for h in root.handlers:
        if isinstance(h, TimedRotatingFileHandler):
            return Path(h.baseFilename)

    handler = TimedRotatingFileHandler(log_file, when="midnight", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    return log_file
