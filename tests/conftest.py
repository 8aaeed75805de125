import os

import pytest

from wpguard.services.logutil import reset_logging
from wpguard.services.settings import Settings


VHOST_TEMPLATE = """docRoot                   $VH_ROOT/public_html
vhDomain                  {domain}
enableGzip                1

<virtualHost {domain}>
    vhRoot /home/{owner}/{domain}
    allowSymbolLink 1
</virtualHost>
"""


@pytest.fixture(autouse=True)
def _clean_logging():
    yield
    reset_logging()


@pytest.fixture
def settings(tmp_path):
    lsws = tmp_path / "lsws"
    (lsws / "bin").mkdir(parents=True)
    (lsws / "conf" / "vhosts").mkdir(parents=True)
    (lsws / "conf" / "httpd_config.xml").write_text("<httpServerConfig/>\n", encoding="utf-8")
    (lsws / "bin" / "lswsctrl").write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    (tmp_path / "home").mkdir()
    return Settings(
        lsws_root=str(lsws),
        home_root=str(tmp_path / "home"),
        security_conf_dir=str(lsws / "conf.d"),
        backup_dir=str(tmp_path / "backups"),
        log_file=str(tmp_path / "log" / "wpguard.log"),
        bot_ip_dir=str(tmp_path / "bot-ips"),
        bot_ip_temp_dir=str(tmp_path / "bot-ip-update"),
        command="/usr/local/bin/wpguard",
    )


@pytest.fixture
def make_site(settings):
    """make_site(owner, domain, wordpress=True, vhost=True) -> (docroot, vhost_path)"""

    def _make(owner, domain, *, wordpress=True, vhost=True):
        docroot = os.path.join(settings.home_root, owner, domain, "public_html")
        os.makedirs(docroot, exist_ok=True)
        if wordpress:
            with open(os.path.join(docroot, "wp-config.php"), "w", encoding="utf-8") as f:
                f.write("<?php define('DB_NAME', 'wp');\n")
        vhost_path = None
        if vhost:
            d = os.path.join(settings.vhosts_dir, domain)
            os.makedirs(d, exist_ok=True)
            vhost_path = os.path.join(d, "vhconf.conf")
            with open(vhost_path, "w", encoding="utf-8") as f:
                f.write(VHOST_TEMPLATE.format(domain=domain, owner=owner))
        return docroot, vhost_path

    return _make


class FakeController:
    def __init__(self, *, installed=True, test_ok=True, restart_ok=True):
        self.installed = installed
        self.test_ok = test_ok
        self.restart_ok = restart_ok
        self.calls = []
        self.lswsctrl = "/usr/local/lsws/bin/lswsctrl"

    def is_installed(self):
        return self.installed

    def test_config(self):
        self.calls.append("-t")
        return self.test_ok, "" if self.test_ok else "syntax error in vhconf.conf"

    def graceful_restart(self):
        self.calls.append("-r")
        return self.restart_ok, ""


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def controller_cls():
    return FakeController


@pytest.fixture
def fake_crontab(monkeypatch):
    from wpguard.services import scheduler

    state = {"text": "MAILTO=root\n15 4 * * * /usr/bin/certbot renew\n", "writes": 0}

    def read():
        return state["text"]

    def write(text):
        state["text"] = text
        state["writes"] += 1

    monkeypatch.setattr(scheduler, "read_crontab", read)
    monkeypatch.setattr(scheduler, "write_crontab", write)
    return state
