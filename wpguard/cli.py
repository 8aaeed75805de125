#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from wpguard.services.config_validator import FAIL, PASS, WARN, validate_file
from wpguard.services.housekeeping import purge_backups
from wpguard.services.logutil import configure_logging
from wpguard.services.orchestrator import Mode, Orchestrator, RunReport
from wpguard.services.probes import (
    SUITES,
    Expectation,
    ProbeResult,
    build_probes,
    check_security_headers,
    local_ip,
    parse_target,
    run_probes,
)
from wpguard.services.settings import get_settings


logger = logging.getLogger("wpguard.cli")


EXIT_OK = 0
EXIT_FATAL = 1
EXIT_DECLINED = 2
EXIT_FAILURES = 3

_EXPECTED_TEXT = {
    Expectation.ALLOW: "200",
    Expectation.DENY: "403/404",
    Expectation.METHOD_REJECTED: "405/501/400",
}


def _out(line: str = "") -> None:
    sys.stdout.write(line + "\n")


def exit_code(report: RunReport) -> int:
    if report.aborted:
        return EXIT_FATAL
    if report.verification_failed:
        return EXIT_FAILURES
    return EXIT_OK


def print_report(report: RunReport) -> None:
    _out(f"=== wpguard {report.mode.value} ===")
    _out("States: " + " -> ".join(s.value for s in report.states))
    if report.sites:
        counts = {}
        for o in report.sites:
            counts[o.action] = counts.get(o.action, 0) + 1
        _out("Sites: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
        for o in report.sites:
            if o.action == "skipped":
                _out(f"  SKIPPED {o.site}: {o.detail}")
    for name, info in sorted(report.providers.items()):
        flag = " (fallback)" if info.get("degraded") else ""
        _out(f"{name}: {info.get('patterns')} patterns, {info.get('dropped')} dropped{flag}")
    if report.snapshot:
        _out(f"Backup: {report.snapshot}")
    for w in report.warnings:
        _out(f"WARNING: {w}")
    for c in report.checks:
        _out(f"{'PASS' if c.ok else 'FAIL'} {c.name} {c.detail}".rstrip())
    if report.verification is not None:
        v = report.verification
        _out(f"Probes: {v.passed}/{v.total} passed")
        for r in v.failures:
            _out(f"  FAIL {_describe_result(r)}")
    if report.fatal:
        _out(f"ERROR: {report.fatal}")
        if report.remediation:
            _out(report.remediation)


def _describe_result(r: ProbeResult) -> str:
    got = f"HTTP {r.status}" if r.status is not None else f"no response ({r.error})"
    return f"{r.probe.description} - got {got}, expected {_EXPECTED_TEXT[r.probe.expected]}"


def _run_mode(mode: Mode, args: argparse.Namespace) -> int:
    settings = get_settings()
    report = Orchestrator(mode, settings, probe_target=getattr(args, "target", None)).run()
    print_report(report)
    return exit_code(report)


def cmd_install(args: argparse.Namespace) -> int:
    return _run_mode(Mode.INSTALL, args)


def cmd_update_only(args: argparse.Namespace) -> int:
    return _run_mode(Mode.UPDATE_ONLY, args)


def cmd_update_bot_ips(args: argparse.Namespace) -> int:
    return _run_mode(Mode.UPDATE_BOT_IPS, args)


def confirm(prompt: str) -> bool:
    try:
        return input(prompt).strip() == "yes"
    except EOFError:
        return False


def cmd_uninstall(args: argparse.Namespace) -> int:
    if not args.yes:
        _out("This will remove all WordPress security protections from this server.")
        if not confirm("Are you sure you want to continue? (type 'yes' to confirm): "):
            _out("Uninstall cancelled.")
            return EXIT_DECLINED
    return _run_mode(Mode.UNINSTALL, args)


def cmd_verify(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        target = parse_target(args.target)
        probes = build_probes(args.suite)
    except ValueError as e:
        _out(f"ERROR: {e}")
        return EXIT_FATAL

    origin_ip = args.origin_ip
    if args.skip_cdn and not origin_ip:
        origin_ip = local_ip()
    timeout = args.timeout or settings.probe_timeout_seconds
    verify_tls = not args.insecure

    _out(f"Testing {target.url}" + (f" via origin {origin_ip}" if origin_ip else ""))

    def show(r: ProbeResult) -> None:
        if args.verbose or not r.passed:
            _out(f"{'PASS' if r.passed else 'FAIL'} [{r.probe.suite}] {_describe_result(r)}")

    summary = run_probes(
        target,
        probes,
        origin_ip=origin_ip,
        timeout=timeout,
        verify_tls=verify_tls,
        on_result=show,
    )

    headers = check_security_headers(target, origin_ip=origin_ip, timeout=timeout, verify_tls=verify_tls)
    present = [h for h, ok in headers.items() if ok]
    if present:
        _out(f"Security headers present: {', '.join(present)}")
    else:
        _out("No security headers detected (this may be normal)")

    _out("")
    for suite, (passed, total) in summary.by_suite().items():
        _out(f"{suite:8} {passed}/{total}")
    _out(f"Total: {summary.total}  Passed: {summary.passed}  Failed: {summary.failed}")
    return EXIT_OK if summary.ok else EXIT_FAILURES


def cmd_validate(args: argparse.Namespace) -> int:
    settings = get_settings()
    paths = args.config or [p for p in (settings.security_conf_path, settings.bot_rules_path) if os.path.exists(p)]
    if not paths:
        paths = [settings.security_conf_path]
    failed = 0
    for path in paths:
        report = validate_file(path)
        _out(f"=== {path} ===")
        for f in report.findings:
            tag = {PASS: "PASS", WARN: "WARN", FAIL: "FAIL"}[f.level]
            _out(f"{tag} [{f.check}] {f.message}")
        failed += len(report.failures)
    if failed:
        _out(f"{failed} error(s) found")
        return EXIT_FAILURES
    _out("Configuration validation passed")
    return EXIT_OK


def cmd_purge_backups(args: argparse.Namespace) -> int:
    removed = purge_backups(get_settings(), retention_days=args.days)
    _out(f"Removed {len(removed)} expired backup(s)")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="wpguard",
        description="Deploy and verify WordPress security rules on OpenLiteSpeed + CyberPanel",
    )
    ap.add_argument("--log-file", default=None, help="Log file (default: $WPGUARD_LOG_FILE or /var/log/wpguard.log)")
    ap.add_argument("--debug", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("install", help="Install rules for every WordPress site and schedule updates")
    p.add_argument("--target", default=None, help="Site to probe after installing")
    p.set_defaults(func=cmd_install)

    p = sub.add_parser("update-only", help="Protect newly added sites and reload (the nightly job)")
    p.set_defaults(func=cmd_update_only)

    p = sub.add_parser("update-bot-ips", help="Refresh Googlebot/Bingbot address ranges and reload")
    p.set_defaults(func=cmd_update_bot_ips)

    p = sub.add_parser("uninstall", help="Remove every rule this tool installed")
    p.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    p.set_defaults(func=cmd_uninstall)

    p = sub.add_parser("verify", help="Probe a live site and check that attacks are blocked")
    p.add_argument("target", help="Domain or URL, e.g. example.com or http://127.0.0.1:8080")
    p.add_argument("--verbose", action="store_true", help="Show every probe, not just failures")
    p.add_argument("--skip-cdn", action="store_true", help="Connect to this host's address instead of DNS")
    p.add_argument("--origin-ip", default=None, help="Connect to this address (implies bypassing the CDN)")
    p.add_argument("--suite", action="append", choices=sorted(SUITES), help="Run only these suites")
    p.add_argument("--timeout", type=int, default=None, help="Per-request timeout in seconds")
    p.add_argument("--insecure", action="store_true", help="Do not verify TLS certificates")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("validate", help="Static checks for the installed rule files")
    p.add_argument("--config", action="append", default=None, help="File to check (repeatable)")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("purge-backups", help="Delete backup snapshots past the retention period")
    p.add_argument("--days", type=int, default=None, help="Retention in days (default: $BACKUP_RETENTION_DAYS or 7)")
    p.set_defaults(func=cmd_purge_backups)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_file or settings.log_file, verbose=args.debug)
    try:
        return int(args.func(args))
    except KeyboardInterrupt:
        _out("Interrupted.")
        return EXIT_FATAL
    except Exception:
        logger.exception("wpguard %s failed", args.command)
        return EXIT_FATAL


if __name__ == "__main__":
    raise SystemExit(main())
