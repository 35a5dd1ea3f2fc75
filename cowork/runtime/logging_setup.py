from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILENAME = "cowork.log"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_HANDLER_MARK = "_cowork_handler"


def configure_logging(logs_dir: Path, *, verbose: bool = False) -> Path:
    """
    Route the `cowork` logger tree to a rotating file, plus stderr when `verbose`.

    Idempotent: handlers installed by an earlier call are replaced, not stacked.
    """

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / LOG_FILENAME

    root = logging.getLogger("cowork")
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(log_path, maxBytes=2 * 1024 * 1024, backupCount=3, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_FORMAT))
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    setattr(file_handler, _HANDLER_MARK, True)
    root.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        stream_handler.setLevel(logging.DEBUG)
        setattr(stream_handler, _HANDLER_MARK, True)
        root.addHandler(stream_handler)

    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return log_path
