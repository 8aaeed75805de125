from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from typing import Optional


logger = logging.getLogger(__name__)


BACKUP_SUFFIX = ".bak-"


def timestamp(now: Optional[float] = None) -> str:
    return time.strftime("%Y%m%d_%H%M%S", time.localtime(time.time() if now is None else now))


def read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def atomic_write_text(path: str, content: str, *, mode: Optional[int] = None) -> None:
    # Write within the destination directory so os.replace is atomic on POSIX.
    d = os.path.dirname(path) or "."
    os.makedirs(d, exist_ok=True)
    if mode is None:
        try:
            mode = os.stat(path).st_mode & 0o777
        except FileNotFoundError:
            mode = 0o644
    tmp_path = ""
    try:
        with tempfile.NamedTemporaryFile(
            mode="w", encoding="utf-8", newline="", delete=False, dir=d, prefix=".tmp-"
        ) as f:
            tmp_path = f.name
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        tmp_path = ""
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.warning("Could not remove temp file %s", tmp_path)


def backup_file(path: str, *, now: Optional[float] = None) -> str:
    """Copy `path` to `<path>.bak-<timestamp>` and return the backup path.

    An existing backup is never overwritten; a counter is appended instead.
    """
    base = f"{path}{BACKUP_SUFFIX}{timestamp(now)}"
    dest = base
    n = 1
    while os.path.exists(dest):
        dest = f"{base}.{n}"
        n += 1
    shutil.copy2(path, dest)
    logger.debug("Backed up %s -> %s", path, dest)
    return dest


def snapshot_paths(dest_dir: str, *paths: str) -> str:
    """Copy files/directories into a fresh snapshot directory.

    Missing sources are skipped. Returns `dest_dir`.
    """
    os.makedirs(dest_dir, exist_ok=True)
    for src in paths:
        if not src or not os.path.exists(src):
            continue
        target = os.path.join(dest_dir, os.path.basename(src.rstrip(os.sep)))
        if os.path.isdir(src):
            shutil.copytree(src, target, dirs_exist_ok=True)
        else:
            shutil.copy2(src, target)
        logger.info("Backed up %s", src)
    return dest_dir
