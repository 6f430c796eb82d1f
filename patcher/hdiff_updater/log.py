"""Console and file logging.

Console records go through ``tqdm.write`` so they print above live progress
bars instead of tearing them. ``HDIFF_TQDM`` controls the bars themselves:
``0`` forces them on, ``1`` forces them off, otherwise they are shown only
when there is a real stderr (frozen GUI-less builds have none).

``HDIFF_LOG_FILE`` names a DEBUG-level log file when ``--log-file`` is not
given on the command line.
"""
from __future__ import annotations

import io
import logging
import os
import sys
from pathlib import Path

from tqdm import tqdm

ROOT_LOGGER = "hdiff_updater"
_LOG_FILE_ENV = "HDIFF_LOG_FILE"
_HANDLER_TAG = "_hdiff_updater_handler"


class TqdmHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=tqdm_file())
        except Exception:
            self.handleError(record)


class _ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if record.levelno >= logging.ERROR:
            return f"error: {msg}"
        if record.levelno >= logging.WARNING:
            return f"warning: {msg}"
        return msg


def tqdm_file():
    """
    Return a file-like object for tqdm to write to.
    In frozen builds sys.stderr may be None; fall back to a sink.
    """
    f = getattr(sys, "stderr", None)
    return f if (f is not None and hasattr(f, "write")) else io.StringIO()


def tqdm_disable() -> bool:
    env = os.environ.get("HDIFF_TQDM")
    if env == "0":
        return False
    if env == "1":
        return True
    f = getattr(sys, "stderr", None)
    return not (f is not None and hasattr(f, "write"))


def configure_logging(verbose: bool = False, log_file: str | Path | None = None) -> Path | None:
    """Install console (and optional file) handlers on the package logger.

    Safe to call repeatedly: handlers from an earlier call are replaced.
    Returns the log file path in use, if any.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for h in list(root.handlers):
        if getattr(h, _HANDLER_TAG, False):
            root.removeHandler(h)
            h.close()

    root.setLevel(logging.DEBUG)
    root.propagate = False

    console = TqdmHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(_ConsoleFormatter())
    setattr(console, _HANDLER_TAG, True)
    root.addHandler(console)

    log_file = log_file or os.environ.get(_LOG_FILE_ENV)
    if not log_file:
        return None
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s"))
    setattr(fh, _HANDLER_TAG, True)
    root.addHandler(fh)
    return path
