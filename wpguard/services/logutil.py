from __future__ import annotations

import logging
import os
import sys
from typing import Optional


_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def configure_logging(log_file: Optional[str] = None, *, verbose: bool = False) -> None:
    """Attach stderr and (optionally) file handlers to the `wpguard` logger.

    The file handler is best-effort: an unwritable log path (e.g. running the
    verify command as an unprivileged user) falls back to stderr only.
    Calling this twice is a no-op.
    """
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger("wpguard")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False

    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    stream.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.addHandler(stream)

    if not log_file:
        return

    log_dir = os.path.dirname(log_file)
    try:
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        root.warning("Cannot write log file %s (%s); logging to stderr only", log_file, e)
        return
    fh.setFormatter(formatter)
    fh.setLevel(logging.DEBUG)
    root.addHandler(fh)
    try:
        os.chmod(log_file, 0o640)
    except OSError:
        pass


def reset_logging() -> None:
    """Drop handlers installed by configure_logging (tests call this)."""
    global _configured
    root = logging.getLogger("wpguard")
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    root.propagate = True
    _configured = False
