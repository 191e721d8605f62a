"""Shared logging setup for pipeline runs.

Runs are often launched in the background and piped through `tee` or `head`,
so the console handler must survive a closed stdout. An optional file handler
keeps a complete run log regardless.
"""
import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class SafeStreamHandler(logging.StreamHandler):
    """Console handler that drops records once its stream has gone away.

    A run piped into `head` keeps going after the reader exits; records that
    can no longer be written to the console still reach any file handler.
    """

    def emit(self, record):
        try:
            super().emit(record)
        except (BrokenPipeError, ValueError):
            # reader exited or the stream was closed under us
            return


def configure_safe_logging(level=logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the root logger for a pipeline run.

    Safe to call more than once: the console handler and any file handler for
    the same path are only installed the first time.

    Args:
        level: Logging level to set (default: INFO)
        log_file: Optional path of a run log that receives the same records

    Returns:
        The root logger
    """
    root = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if not any(isinstance(h, SafeStreamHandler) for h in root.handlers):
        handler = SafeStreamHandler()
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root.addHandler(handler)

    if log_file:
        already = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_file)
            for h in root.handlers
        )
        if not already:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            file_handler.setLevel(level)
            root.addHandler(file_handler)

    # Some libraries lower the root level to WARNING at import time
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)

    # aiohttp access noise is not useful in run logs
    logging.getLogger("aiohttp").setLevel(max(level, logging.WARNING))
    return root
