from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from wpguard.services.settings import Settings, get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SiteRecord:
    domain: str
    docroot: str
    vhost_config: Optional[str]

    @property
    def wp_config(self) -> str:
        return os.path.join(self.docroot, "wp-config.php")

    @property
    def htaccess(self) -> str:
        return os.path.join(self.docroot, ".htaccess")


def _sorted_dirs(path: str) -> List[str]:
    with os.scandir(path) as it:
        names = [e.name for e in it if e.is_dir(follow_symlinks=False)]
    return sorted(names)


def resolve_vhost_config(domain: str, vhosts_dir: str) -> Optional[str]:
    """Find the vhost document for `domain`.

    Lookup order: vhosts/<domain>/vhconf.conf, vhosts/<domain>/<domain>.conf,
    then the first *.conf under vhosts/ whose file name contains the domain.
    """
    for candidate in (
        os.path.join(vhosts_dir, domain, "vhconf.conf"),
        os.path.join(vhosts_dir, domain, f"{domain}.conf"),
    ):
        if os.path.isfile(candidate):
            return candidate

    if not os.path.isdir(vhosts_dir):
        return None
    for root, dirs, files in os.walk(vhosts_dir):
        dirs.sort()
        for name in sorted(files):
            if name.endswith(".conf") and domain in name:
                return os.path.join(root, name)
    return None


def discover_sites(settings: Optional[Settings] = None) -> List[SiteRecord]:
    """Scan HOME_ROOT/<owner>/<domain>/public_html for WordPress installs."""
    s = settings or get_settings()
    sites: List[SiteRecord] = []
    try:
        owners = _sorted_dirs(s.home_root)
    except OSError as e:
        logger.error("Cannot list %s: %s", s.home_root, e)
        return sites

    for owner in owners:
        owner_dir = os.path.join(s.home_root, owner)
        try:
            domains = _sorted_dirs(owner_dir)
        except OSError as e:
            logger.warning("Skipping unreadable directory %s: %s", owner_dir, e)
            continue
        for domain in domains:
            if "." not in domain:
                continue
            docroot = os.path.join(owner_dir, domain, "public_html")
            if not os.path.isfile(os.path.join(docroot, "wp-config.php")):
                continue
            vhost = resolve_vhost_config(domain, s.vhosts_dir)
            logger.info("Found WordPress site: %s", domain)
            sites.append(SiteRecord(domain=domain, docroot=docroot, vhost_config=vhost))
    return sites
