from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

from aichatplayers.config import LoggingConfig


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_MANAGED_ATTR = "_aichatplayers_handler"


def _managed(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _MANAGED_ATTR, True)
    return handler


def configure_logging(cfg: LoggingConfig) -> Path | None:
    """Attach stdout and per-run file handlers to the root logger.

    Calling it again replaces the handlers installed by a previous call.
    Returns the log file path, or None when the log directory is unusable.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _MANAGED_ATTR, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = _managed(logging.StreamHandler(sys.stdout))
    stream_handler.setLevel(cfg.level_no)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_path: Path | None = Path(cfg.log_dir) / f"logs_{int(time.time())}"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = _managed(logging.FileHandler(log_path, encoding="utf-8"))
    except OSError as exc:
        logging.getLogger("aichatplayers.logging").warning("log_file_unavailable path=%s error=%s", log_path, exc)
        log_path = None
        root.setLevel(cfg.level_no)
    else:
        file_handler.setLevel(cfg.file_level_no)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        root.setLevel(min(cfg.level_no, cfg.file_level_no))
    return log_path
