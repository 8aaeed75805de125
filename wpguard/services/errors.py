from __future__ import annotations

import os
import re
from typing import Optional


class WpGuardError(Exception):
    """Base class for every error raised by wpguard."""


class FatalError(WpGuardError):
    """Stops the run. The live server keeps its previous configuration.

    `remediation` is a one-line instruction shown to the operator.
    """

    def __init__(self, message: str, *, remediation: str = ""):
        super().__init__(message)
        self.remediation = remediation


class SiteSkipped(WpGuardError):
    """A single site could not be processed; the run continues."""


class VhostNotFound(SiteSkipped):
    pass


class BoundaryNotFound(SiteSkipped):
    """The closing tag the include is anchored to is missing."""


class PartialBlockError(SiteSkipped):
    """Only one of a block's start/end sentinels was found (or they are out of order)."""


class FetchError(WpGuardError):
    pass


class DecodeError(FetchError):
    pass


def verbose_errors() -> bool:
    return (os.environ.get("WPGUARD_VERBOSE_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    # Remove other control chars.
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 3].rstrip() + "..."
    return s


def describe_error(
    e: Exception,
    *,
    default: str = "Operation failed. Check the log for details.",
    max_len: int = 200,
) -> str:
    """Return a one-line description of `e` for run summaries.

    - wpguard's own errors carry operator-facing messages and are returned as-is.
    - OSError and ValueError messages are returned (paths, bad input).
    - Anything else collapses to `default` unless WPGUARD_VERBOSE_ERRORS is set.
    """
    if verbose_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=max_len)
        return detail or default

    if isinstance(e, (WpGuardError, OSError, ValueError)):
        msg = clean_text(str(e), max_len=max_len)
        return msg or default

    return default


def remediation_for(e: BaseException) -> Optional[str]:
    r = getattr(e, "remediation", "") or ""
    return r or None
