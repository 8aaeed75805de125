from __future__ import annotations

import logging
import os
from subprocess import run
from typing import Any, Optional, Tuple

from wpguard.services.errors import clean_text, describe_error
from wpguard.services.settings import Settings, get_settings


logger = logging.getLogger(__name__)


class LsController:
    """Thin wrapper around OpenLiteSpeed's `lswsctrl`."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def lswsctrl(self) -> str:
        return self.settings.lswsctrl

    def is_installed(self) -> bool:
        return os.path.isdir(self.settings.lsws_root) and os.path.isfile(self.lswsctrl)

    def _decode_completed(self, p: Any) -> str:
        out = getattr(p, "stdout", b"")
        err = getattr(p, "stderr", b"")
        if isinstance(out, bytes):
            out_s = out.decode("utf-8", errors="replace")
        else:
            out_s = str(out or "")
        if isinstance(err, bytes):
            err_s = err.decode("utf-8", errors="replace")
        else:
            err_s = str(err or "")
        if out_s and err_s:
            return (out_s + "\n" + err_s).strip()
        return (out_s or err_s).strip()

    def _run(self, *args: str) -> Tuple[bool, str]:
        cmd = [self.lswsctrl, *args]
        try:
            p = run(cmd, capture_output=True, timeout=self.settings.subprocess_timeout_seconds)
        except FileNotFoundError:
            return False, f"{self.lswsctrl} not found"
        except Exception as e:
            logger.exception("%s failed", " ".join(cmd))
            return False, describe_error(e, default=f"{' '.join(cmd)} failed. Check the log for details.")
        details = self._decode_completed(p)
        if details:
            logger.debug("%s: %s", " ".join(cmd), clean_text(details, max_len=500))
        return p.returncode == 0, details

    def test_config(self) -> Tuple[bool, str]:
        ok, details = self._run("-t")
        if ok:
            logger.info("OpenLiteSpeed configuration test passed")
        else:
            logger.error("OpenLiteSpeed configuration test failed: %s", clean_text(details))
        return ok, details

    def graceful_restart(self) -> Tuple[bool, str]:
        ok, details = self._run("-r")
        if ok:
            logger.info("OpenLiteSpeed restarted gracefully")
        else:
            logger.error("OpenLiteSpeed restart failed: %s", clean_text(details))
        return ok, details or ("OpenLiteSpeed restarted." if ok else "lswsctrl -r failed")
