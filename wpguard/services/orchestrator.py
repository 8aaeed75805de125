"""Run the install / update / uninstall sequences as explicit state machines.

Each mode is a transition table over RunState. A FatalError raised by any step
moves the run to ABORT; everything else is recorded in the RunReport and the
run carries on. RELOAD never restarts the server unless the static checks and
`lswsctrl -t` both pass.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from wpguard.services import bot_ranges, scheduler
from wpguard.services.config_validator import validate_file
from wpguard.services.errors import FatalError, SiteSkipped, WpGuardError, describe_error
from wpguard.services.fsutil import atomic_write_text, read_text, snapshot_paths, timestamp
from wpguard.services.lsctl import LsController
from wpguard.services.probes import ProbeSummary, build_probes, parse_target, run_probes
from wpguard.services.settings import SECURITY_INCLUDE, Settings, get_settings
from wpguard.services.site_discovery import SiteRecord, discover_sites
from wpguard.services.vhost_patcher import (
    apply_block,
    bot_include_block,
    find_vhost_configs,
    htaccess_block,
    include_block,
    strip_block,
)


logger = logging.getLogger(__name__)


POLICY_SOURCE = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "configs", SECURITY_INCLUDE)


class RunState(Enum):
    INIT = "init"
    DISCOVER = "discover"
    PATCH = "patch"
    UNPATCH = "unpatch"
    REFRESH_RANGES = "refresh-ranges"
    RELOAD = "reload"
    SCHEDULE = "schedule"
    UNSCHEDULE = "unschedule"
    VERIFY = "verify"
    DONE = "done"
    ABORT = "abort"


class Mode(Enum):
    INSTALL = "install"
    UPDATE_ONLY = "update-only"
    UPDATE_BOT_IPS = "update-bot-ips"
    UNINSTALL = "uninstall"


S = RunState

TRANSITIONS: Dict[Mode, Dict[RunState, RunState]] = {
    Mode.INSTALL: {
        S.INIT: S.DISCOVER,
        S.DISCOVER: S.PATCH,
        S.PATCH: S.REFRESH_RANGES,
        S.REFRESH_RANGES: S.RELOAD,
        S.RELOAD: S.SCHEDULE,
        S.SCHEDULE: S.VERIFY,
        S.VERIFY: S.DONE,
    },
    Mode.UPDATE_ONLY: {
        S.INIT: S.DISCOVER,
        S.DISCOVER: S.PATCH,
        S.PATCH: S.RELOAD,
        S.RELOAD: S.DONE,
    },
    Mode.UPDATE_BOT_IPS: {
        S.INIT: S.REFRESH_RANGES,
        S.REFRESH_RANGES: S.RELOAD,
        S.RELOAD: S.DONE,
    },
    Mode.UNINSTALL: {
        S.INIT: S.DISCOVER,
        S.DISCOVER: S.UNPATCH,
        S.UNPATCH: S.UNSCHEDULE,
        S.UNSCHEDULE: S.RELOAD,
        S.RELOAD: S.VERIFY,
        S.VERIFY: S.DONE,
    },
}


PATCHED = "patched"
UNCHANGED = "unchanged"
REMOVED = "removed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class SiteOutcome:
    site: str
    action: str
    detail: str = ""


@dataclass(frozen=True)
class Check:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class RunReport:
    mode: Mode
    states: List[RunState] = field(default_factory=list)
    sites: List[SiteOutcome] = field(default_factory=list)
    providers: Dict[str, Dict[str, object]] = field(default_factory=dict)
    degraded: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    checks: List[Check] = field(default_factory=list)
    verification: Optional[ProbeSummary] = None
    snapshot: str = ""
    fatal: str = ""
    remediation: str = ""

    @property
    def aborted(self) -> bool:
        return bool(self.states) and self.states[-1] is RunState.ABORT

    @property
    def verification_failed(self) -> bool:
        if any(not c.ok for c in self.checks):
            return True
        return self.verification is not None and not self.verification.ok

    def count(self, action: str) -> int:
        return sum(1 for s in self.sites if s.action == action)

    def warn(self, message: str) -> None:
        logger.warning("%s", message)
        self.warnings.append(message)


class Orchestrator:
    def __init__(
        self,
        mode: Mode,
        settings: Optional[Settings] = None,
        *,
        controller: Optional[LsController] = None,
        probe_target: Optional[str] = None,
        now: Optional[float] = None,
    ):
        self.mode = mode
        self.settings = settings or get_settings()
        self.controller = controller or LsController(self.settings)
        self.probe_target = probe_target if probe_target is not None else self.settings.probe_target
        self.now = now
        self.sites: List[SiteRecord] = []
        self.report = RunReport(mode=mode)
        self._handlers: Dict[RunState, Callable[[], None]] = {
            S.INIT: self.init,
            S.DISCOVER: self.discover,
            S.PATCH: self.patch,
            S.UNPATCH: self.unpatch,
            S.REFRESH_RANGES: self.refresh_ranges,
            S.RELOAD: self.reload,
            S.SCHEDULE: self.schedule,
            S.UNSCHEDULE: self.unschedule,
            S.VERIFY: self.verify,
        }

    def run(self) -> RunReport:
        table = TRANSITIONS[self.mode]
        state = S.INIT
        while True:
            self.report.states.append(state)
            if state in (S.DONE, S.ABORT):
                break
            logger.info("[%s] %s", self.mode.value, state.value)
            try:
                self._handlers[state]()
            except FatalError as e:
                self._abort(e)
                state = S.ABORT
                continue
            except OSError as e:
                logger.debug("%s raised", state.value, exc_info=True)
                self._abort(
                    FatalError(
                        f"{state.value} failed: {describe_error(e)}",
                        remediation="Check permissions and free space for the path above, then re-run.",
                    )
                )
                state = S.ABORT
                continue
            state = table[state]
        return self.report

    def _abort(self, e: FatalError) -> None:
        self.report.fatal = str(e)
        self.report.remediation = e.remediation
        logger.error("Aborting %s: %s", self.mode.value, e)
        if e.remediation:
            logger.error("%s", e.remediation)

    # INIT

    def init(self) -> None:
        s = self.settings
        if not self.controller.is_installed():
            raise FatalError(
                f"OpenLiteSpeed not found under {s.lsws_root}.",
                remediation="This tool requires OpenLiteSpeed/CyberPanel; set LSWS_ROOT if it lives elsewhere.",
            )
        if self.mode in (Mode.INSTALL, Mode.UPDATE_ONLY, Mode.UNINSTALL) and not os.path.isdir(s.home_root):
            raise FatalError(
                f"Home directory {s.home_root} not found.",
                remediation="Set WPGUARD_HOME_ROOT to the directory holding the panel's user homes.",
            )

        if self.mode is Mode.INSTALL:
            for d in (s.security_conf_dir, s.backup_dir, s.bot_ip_dir):
                os.makedirs(d, exist_ok=True)
            self.report.snapshot = snapshot_paths(
                os.path.join(s.backup_dir, f"lsws-backup-{timestamp(self.now)}"),
                s.httpd_config,
                s.vhosts_dir,
            )
            self.install_policy()
        elif self.mode is Mode.UNINSTALL:
            os.makedirs(s.backup_dir, exist_ok=True)
            self.report.snapshot = snapshot_paths(
                os.path.join(s.backup_dir, f"uninstall-backup-{timestamp(self.now)}"),
                s.security_conf_path,
                s.bot_rules_path,
                s.vhosts_dir,
                s.httpd_config,
            )
        if self.report.snapshot:
            logger.info("Backup location: %s", self.report.snapshot)

    def install_policy(self) -> None:
        try:
            policy = read_text(POLICY_SOURCE)
        except OSError as e:
            raise FatalError(
                f"Security policy not found: {POLICY_SOURCE}",
                remediation="Reinstall the wpguard package.",
            ) from e
        policy, _ = bot_include_block(self.settings.bot_rules_path).upsert(policy)
        atomic_write_text(self.settings.security_conf_path, policy, mode=0o644)
        logger.info("Installed security configuration to %s", self.settings.security_conf_path)

    # DISCOVER / PATCH / UNPATCH

    def discover(self) -> None:
        self.sites = discover_sites(self.settings)
        if self.sites:
            logger.info("Found %d WordPress site(s)", len(self.sites))
        else:
            self.report.warn("No WordPress sites found")

    def _record(self, site: str, action: str, detail: str = "") -> None:
        self.report.sites.append(SiteOutcome(site=site, action=action, detail=detail))

    def patch(self) -> None:
        include = include_block(self.settings.security_conf_path)
        rules = htaccess_block()
        for site in self.sites:
            try:
                if not site.vhost_config:
                    raise SiteSkipped("virtual host config not found")
                vhost = apply_block(site.vhost_config, include, now=self.now)
                htaccess = apply_block(site.htaccess, rules, create=True, now=self.now)
            except (SiteSkipped, OSError) as e:
                detail = describe_error(e)
                logger.warning("Skipping %s: %s", site.domain, detail)
                self._record(site.domain, SKIPPED, detail)
                continue
            self._record(site.domain, PATCHED if (vhost.changed or htaccess.changed) else UNCHANGED)
        logger.info(
            "Patched %d site(s), %d already current, %d skipped",
            self.report.count(PATCHED),
            self.report.count(UNCHANGED),
            self.report.count(SKIPPED),
        )

    def unpatch(self) -> None:
        s = self.settings
        include = include_block(s.security_conf_path)
        for path in find_vhost_configs(s.vhosts_dir):
            try:
                outcome = strip_block(path, include, now=self.now)
            except OSError as e:
                self._record(path, SKIPPED, describe_error(e))
                continue
            if outcome.changed:
                self._record(path, REMOVED)

        rules = htaccess_block()
        for site in self.sites:
            try:
                outcome = strip_block(site.htaccess, rules, now=self.now)
            except (SiteSkipped, OSError) as e:
                detail = describe_error(e)
                logger.warning("Leaving %s untouched: %s", site.htaccess, detail)
                self._record(site.htaccess, SKIPPED, detail)
                continue
            if outcome.changed:
                self._record(site.htaccess, REMOVED)

        for path in (s.security_conf_path, s.bot_rules_path):
            if os.path.exists(path):
                os.unlink(path)
                logger.info("Removed %s", path)
        logger.info("Removed security rules from %d file(s)", self.report.count(REMOVED))

    # REFRESH_RANGES

    def refresh_ranges(self) -> None:
        try:
            result = bot_ranges.refresh(self.settings)
        except FatalError:
            raise
        except (WpGuardError, OSError) as e:
            if self.mode is Mode.UPDATE_BOT_IPS:
                raise FatalError(
                    f"Bot IP update failed: {describe_error(e)}",
                    remediation=f"Check network access and permissions on {self.settings.bot_ip_dir}.",
                ) from e
            self.report.warn(f"Bot IP update failed, but security rules are still active: {describe_error(e)}")
            return
        self.report.providers = bot_ranges.provider_summary(result)
        self.report.degraded = result.degraded
        for name in result.degraded:
            self.report.warn(f"{name}: all sources failed, using the built-in fallback ranges")

    # RELOAD

    def _rule_files(self) -> List[str]:
        s = self.settings
        files: List[str] = []
        if self.mode is not Mode.UNINSTALL:
            if not os.path.isfile(s.security_conf_path):
                raise FatalError(
                    f"Security configuration {s.security_conf_path} is missing.",
                    remediation="Run: wpguard install",
                )
            files.append(s.security_conf_path)
            if os.path.isfile(s.bot_rules_path):
                files.append(s.bot_rules_path)
        return files

    def reload(self) -> None:
        problems: List[str] = []
        for path in self._rule_files():
            report = validate_file(path)
            for w in report.warnings:
                logger.warning("%s: %s", path, w.message)
            problems.extend(f"{path}: {f.message}" for f in report.failures)
        if problems:
            for p in problems:
                logger.error("%s", p)
            raise FatalError(
                "Static validation failed; OpenLiteSpeed was not restarted.",
                remediation="Run: wpguard validate",
            )

        ok, _ = self.controller.test_config()
        if not ok:
            raise FatalError(
                "OpenLiteSpeed configuration test failed; the server was not restarted.",
                remediation=f"Run: {self.controller.lswsctrl} -t",
            )
        ok, details = self.controller.graceful_restart()
        if not ok:
            raise FatalError(
                f"OpenLiteSpeed restart failed: {details}",
                remediation=f"Run: {self.controller.lswsctrl} -r",
            )

    # SCHEDULE / UNSCHEDULE

    def schedule(self) -> None:
        try:
            scheduler.install_jobs(self.settings)
        except (RuntimeError, OSError) as e:
            self.report.warn(f"Could not install cron jobs: {describe_error(e)}")

    def unschedule(self) -> None:
        try:
            scheduler.uninstall_jobs()
        except (RuntimeError, OSError) as e:
            self.report.warn(f"Could not remove cron jobs: {describe_error(e)}")

    # VERIFY

    def _vhosts_with_include(self) -> List[str]:
        marker = include_block(self.settings.security_conf_path)
        found: List[str] = []
        for path in find_vhost_configs(self.settings.vhosts_dir):
            try:
                if marker.present(read_text(path)):
                    found.append(path)
            except OSError as e:
                logger.warning("Cannot read %s: %s", path, e)
        return found

    def _cron_jobs(self) -> Tuple[bool, List[str]]:
        try:
            return True, scheduler.installed_jobs(scheduler.read_crontab())
        except (RuntimeError, OSError) as e:
            logger.warning("Cannot read crontab: %s", describe_error(e))
            return False, []

    def verify(self) -> None:
        if self.mode is Mode.UNINSTALL:
            self._verify_removed()
        else:
            self._verify_installed()

    def _check(self, name: str, ok: bool, detail: str = "") -> None:
        self.report.checks.append(Check(name=name, ok=ok, detail=detail))
        if ok:
            logger.info("%s: ok %s", name, detail)
        else:
            logger.error("%s: FAILED %s", name, detail)

    def _verify_installed(self) -> None:
        s = self.settings
        self._check("security-config", os.path.isfile(s.security_conf_path), s.security_conf_path)
        active = self._vhosts_with_include()
        if active:
            logger.info("Security rules are active in %d virtual hosts", len(active))
        else:
            self.report.warn("No virtual hosts found with security rules")

        if not self.probe_target:
            return
        try:
            target = parse_target(self.probe_target)
        except ValueError as e:
            self._check("probes", False, str(e))
            return
        self.report.verification = run_probes(
            target,
            build_probes(),
            timeout=s.probe_timeout_seconds,
        )
        v = self.report.verification
        logger.info("Probe results for %s: %d passed, %d failed", target.url, v.passed, v.failed)

    def _verify_removed(self) -> None:
        s = self.settings
        self._check("security-config-removed", not os.path.exists(s.security_conf_path), s.security_conf_path)
        remaining = self._vhosts_with_include()
        if remaining:
            self.report.warn(
                "Security include still found in: " + ", ".join(os.path.basename(p) for p in remaining)
            )
        readable, jobs = self._cron_jobs()
        if readable:
            self._check("cron-removed", not jobs, ", ".join(jobs))
