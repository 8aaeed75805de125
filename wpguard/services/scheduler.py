from __future__ import annotations

import logging
from dataclasses import dataclass
from subprocess import run
from typing import Iterable, List, Optional, Sequence, Tuple

from wpguard.services.errors import clean_text
from wpguard.services.settings import Settings, get_settings


logger = logging.getLogger(__name__)


CRON_TAG = "# wpguard:"

# Entries written by the shell installer this tool replaces.
LEGACY_MARKERS = (
    "wp-security-nightly-cyberpanel",
    "update-bot-ips.sh",
)


@dataclass(frozen=True)
class CronJob:
    name: str
    schedule: str
    command: str

    def render(self) -> str:
        return f"{self.schedule} {self.command} >/dev/null 2>&1 {CRON_TAG}{self.name}"


def default_jobs(settings: Optional[Settings] = None) -> List[CronJob]:
    s = settings or get_settings()
    return [
        CronJob(name="update-only", schedule="30 2 * * *", command=f"{s.command} update-only"),
        CronJob(name="update-bot-ips", schedule="0 2 * * *", command=f"{s.command} update-bot-ips"),
        CronJob(name="purge-backups", schedule="45 3 * * *", command=f"{s.command} purge-backups"),
    ]


def _job_name(line: str) -> Optional[str]:
    idx = line.rfind(CRON_TAG)
    if idx < 0:
        return None
    return line[idx + len(CRON_TAG) :].strip() or None


def _is_legacy(line: str) -> bool:
    return any(m in line for m in LEGACY_MARKERS)


def installed_jobs(crontab_text: str) -> List[str]:
    return [n for n in (_job_name(line) for line in (crontab_text or "").splitlines()) if n]


def merge_jobs(crontab_text: str, jobs: Sequence[CronJob]) -> Tuple[str, bool]:
    """Return (new_crontab, changed) with exactly one line per job.

    Lines for other jobs and unrelated entries are kept in place; legacy
    installer entries are dropped.
    """
    lines = (crontab_text or "").splitlines()
    wanted = {j.name: j.render() for j in jobs}
    out: List[str] = []
    placed = set()
    for line in lines:
        if _is_legacy(line):
            continue
        name = _job_name(line)
        if name in wanted:
            if name in placed:
                continue
            out.append(wanted[name])
            placed.add(name)
            continue
        out.append(line)
    for j in jobs:
        if j.name not in placed:
            out.append(wanted[j.name])
    new_text = "\n".join(out) + "\n" if out else ""
    return new_text, new_text.strip() != (crontab_text or "").strip()


def remove_jobs(crontab_text: str, names: Optional[Iterable[str]] = None) -> Tuple[str, bool]:
    """Drop tagged lines (all wpguard jobs when `names` is None) and legacy entries."""
    only = set(names) if names is not None else None
    out: List[str] = []
    for line in (crontab_text or "").splitlines():
        if _is_legacy(line):
            continue
        name = _job_name(line)
        if name and (only is None or name in only):
            continue
        out.append(line)
    new_text = "\n".join(out) + "\n" if out else ""
    return new_text, new_text.strip() != (crontab_text or "").strip()


def read_crontab() -> str:
    p = run(["crontab", "-l"], capture_output=True, timeout=30)
    out = (p.stdout or b"").decode("utf-8", errors="replace")
    if p.returncode != 0:
        err = (p.stderr or b"").decode("utf-8", errors="replace")
        if "no crontab" in err.lower():
            return ""
        raise RuntimeError(f"crontab -l failed: {clean_text(err) or p.returncode}")
    return out


def write_crontab(text: str) -> None:
    p = run(["crontab", "-"], input=text.encode("utf-8"), capture_output=True, timeout=30)
    if p.returncode != 0:
        err = (p.stderr or b"").decode("utf-8", errors="replace")
        raise RuntimeError(f"crontab - failed: {clean_text(err) or p.returncode}")


def install_jobs(settings: Optional[Settings] = None) -> bool:
    jobs = default_jobs(settings)
    new_text, changed = merge_jobs(read_crontab(), jobs)
    if changed:
        write_crontab(new_text)
        logger.info("Installed cron jobs: %s", ", ".join(j.name for j in jobs))
    else:
        logger.info("Cron jobs already installed")
    return changed


def uninstall_jobs() -> bool:
    new_text, changed = remove_jobs(read_crontab())
    if changed:
        write_crontab(new_text)
        logger.info("Removed wpguard cron jobs")
    return changed
