from __future__ import annotations

import logging
import os
import re
import shutil
import time
from typing import List, Optional

from wpguard.services.settings import Settings, get_settings


logger = logging.getLogger(__name__)


_SNAPSHOT_RE = re.compile(r"^(lsws-backup|uninstall-backup)-\d{8}_\d{6}$")


def expired_snapshots(backup_dir: str, *, retention_days: int, now: Optional[float] = None) -> List[str]:
    """Snapshot directories under `backup_dir` older than `retention_days`."""
    cutoff = (time.time() if now is None else now) - max(0, int(retention_days)) * 86400
    out: List[str] = []
    try:
        with os.scandir(backup_dir) as it:
            entries = sorted(it, key=lambda e: e.name)
    except FileNotFoundError:
        return out
    for e in entries:
        if not e.is_dir(follow_symlinks=False) or not _SNAPSHOT_RE.match(e.name):
            continue
        try:
            mtime = e.stat(follow_symlinks=False).st_mtime
        except OSError:
            continue
        if mtime < cutoff:
            out.append(e.path)
    return out


def purge_backups(
    settings: Optional[Settings] = None,
    *,
    retention_days: Optional[int] = None,
    now: Optional[float] = None,
) -> List[str]:
    """Delete expired snapshot directories; returns the removed paths.

    Sibling `.bak-` copies next to vhost and .htaccess files are left alone.
    """
    s = settings or get_settings()
    days = s.backup_retention_days if retention_days is None else int(retention_days)
    removed: List[str] = []
    for path in expired_snapshots(s.backup_dir, retention_days=days, now=now):
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)
            continue
        logger.info("Removed expired backup %s", path)
        removed.append(path)
    if not removed:
        logger.info("No backups older than %d days under %s", days, s.backup_dir)
    return removed
