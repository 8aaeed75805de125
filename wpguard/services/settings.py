from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, replace
from typing import Optional


SECURITY_INCLUDE = "wordpress-security.conf"
BOT_RULES_FILE = "bot-verification.conf"


def _env_str(name: str, default: str) -> str:
    v = (os.environ.get(name) or "").strip()
    return v or default


def _default_command() -> str:
    # Cron entries need an absolute path.
    found = shutil.which("wpguard")
    return os.path.abspath(found) if found else "/usr/local/bin/wpguard"


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except Exception:
        return int(default)


@dataclass(frozen=True)
class Settings:
    lsws_root: str = "/usr/local/lsws"
    home_root: str = "/home"
    security_conf_dir: str = "/usr/local/lsws/conf.d"
    backup_dir: str = "/var/backups/wp-security-cyberpanel"
    log_file: str = "/var/log/wpguard.log"
    bot_ip_dir: str = "/etc/openlitespeed/bot-ips"
    bot_ip_temp_dir: str = "/tmp/bot-ip-update"
    backup_retention_days: int = 7
    fetch_timeout_seconds: int = 30
    fetch_max_bytes: int = 16 * 1024 * 1024
    probe_timeout_seconds: int = 10
    subprocess_timeout_seconds: int = 60
    googlebot_max_patterns: int = 50
    bingbot_max_patterns: int = 20
    bing_service_tags_url: str = ""
    probe_target: str = ""
    command: str = "/usr/local/bin/wpguard"

    @property
    def conf_dir(self) -> str:
        return os.path.join(self.lsws_root, "conf")

    @property
    def vhosts_dir(self) -> str:
        return os.path.join(self.conf_dir, "vhosts")

    @property
    def httpd_config(self) -> str:
        return os.path.join(self.conf_dir, "httpd_config.xml")

    @property
    def lswsctrl(self) -> str:
        return os.path.join(self.lsws_root, "bin", "lswsctrl")

    @property
    def security_conf_path(self) -> str:
        return os.path.join(self.security_conf_dir, SECURITY_INCLUDE)

    @property
    def bot_rules_path(self) -> str:
        return os.path.join(self.bot_ip_dir, BOT_RULES_FILE)

    def with_overrides(self, **kwargs) -> "Settings":
        # CLI flags pass None for "not given".
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})


def load_settings() -> Settings:
    lsws_root = _env_str("LSWS_ROOT", "/usr/local/lsws")
    return Settings(
        lsws_root=lsws_root,
        home_root=_env_str("WPGUARD_HOME_ROOT", "/home"),
        security_conf_dir=_env_str("WPGUARD_SECURITY_CONF_DIR", os.path.join(lsws_root, "conf.d")),
        backup_dir=_env_str("WPGUARD_BACKUP_DIR", "/var/backups/wp-security-cyberpanel"),
        log_file=_env_str("WPGUARD_LOG_FILE", "/var/log/wpguard.log"),
        bot_ip_dir=_env_str("BOT_IP_DIR", "/etc/openlitespeed/bot-ips"),
        bot_ip_temp_dir=_env_str("BOT_IP_TEMP_DIR", "/tmp/bot-ip-update"),
        backup_retention_days=max(1, _env_int("BACKUP_RETENTION_DAYS", 7)),
        fetch_timeout_seconds=max(1, _env_int("BOT_FETCH_TIMEOUT", 30)),
        fetch_max_bytes=max(1024, _env_int("BOT_FETCH_MAX_BYTES", 16 * 1024 * 1024)),
        probe_timeout_seconds=max(1, _env_int("PROBE_TIMEOUT", 10)),
        subprocess_timeout_seconds=max(1, _env_int("LSWS_COMMAND_TIMEOUT", 60)),
        googlebot_max_patterns=max(1, _env_int("GOOGLEBOT_MAX_PATTERNS", 50)),
        bingbot_max_patterns=max(1, _env_int("BINGBOT_MAX_PATTERNS", 20)),
        bing_service_tags_url=(os.environ.get("BING_SERVICE_TAGS_URL") or "").strip(),
        probe_target=(os.environ.get("WPGUARD_PROBE_TARGET") or "").strip(),
        command=_env_str("WPGUARD_COMMAND", _default_command()),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
