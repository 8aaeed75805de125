"""Static checks for rewrite-engine rule files.

OpenLiteSpeed accepts a subset of Apache's configuration language. These checks
catch the mistakes that make `lswsctrl` refuse a configuration (unbalanced
container tags, dangling `[OR]` conditions, unsupported directives) and flag
constructs that are legal but risky (SEO-hostile query string blocking,
very large rule counts).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import List, Tuple


PASS = "pass"
WARN = "warn"
FAIL = "fail"

_CONTAINERS = (
    "IfModule",
    "IfDefine",
    "Files",
    "FilesMatch",
    "Directory",
    "DirectoryMatch",
    "Location",
    "LocationMatch",
    "RequireAll",
    "RequireAny",
    "RequireNone",
    "Limit",
    "LimitExcept",
    "VirtualHost",
)

_TAG_RE = re.compile(r"^\s*<(/?)([A-Za-z]+)\b[^>]*>\s*$")
_ARG = r'(?:"[^"]*"|\S+)'
_COND_RE = re.compile(rf"^\s*RewriteCond\s+{_ARG}\s+{_ARG}(?:\s+\[([^\]]*)\])?\s*$", re.I)
_RULE_RE = re.compile(rf"^\s*RewriteRule\s+{_ARG}\s+{_ARG}(?:\s+\[[^\]]*\])?\s*$", re.I)

_UNSUPPORTED_MODULES = (
    "mod_remoteip",
    "mod_security2",
    "mod_evasive",
    "mod_reqtimeout",
)

_HARDCODED_PATHS = (
    "/home/",
    "/var/www/",
    "/usr/local/apache2/",
)

MAX_REWRITE_RULES = 50
MAX_FILES_BLOCKS = 20


@dataclass(frozen=True)
class Finding:
    level: str
    check: str
    message: str


@dataclass
class ValidationReport:
    path: str
    findings: List[Finding] = field(default_factory=list)

    def add(self, level: str, check: str, message: str) -> None:
        self.findings.append(Finding(level=level, check=check, message=message))

    @property
    def failures(self) -> List[Finding]:
        return [f for f in self.findings if f.level == FAIL]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if f.level == WARN]

    @property
    def ok(self) -> bool:
        return not self.failures


def _content_lines(text: str) -> List[Tuple[int, str]]:
    out: List[Tuple[int, str]] = []
    for i, line in enumerate((text or "").splitlines(), start=1):
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        out.append((i, line))
    return out


def check_tag_balance(text: str, report: ValidationReport) -> None:
    stack: List[Tuple[str, int]] = []
    errors = 0
    for lineno, line in _content_lines(text):
        m = _TAG_RE.match(line)
        if not m:
            continue
        closing, name = m.group(1), m.group(2)
        canonical = next((c for c in _CONTAINERS if c.lower() == name.lower()), None)
        if canonical is None:
            continue
        if not closing:
            stack.append((canonical, lineno))
            continue
        if not stack:
            report.add(FAIL, "syntax", f"line {lineno}: </{canonical}> has no matching opening tag")
            errors += 1
            continue
        open_name, open_line = stack.pop()
        if open_name != canonical:
            report.add(
                FAIL,
                "syntax",
                f"line {lineno}: </{canonical}> closes <{open_name}> opened on line {open_line}",
            )
            errors += 1
    for open_name, open_line in stack:
        report.add(FAIL, "syntax", f"line {open_line}: <{open_name}> is never closed")
        errors += 1
    if not errors:
        report.add(PASS, "syntax", "All container tags are properly matched")


def check_rewrite_chains(text: str, report: ValidationReport) -> None:
    pending: List[Tuple[int, bool]] = []
    errors = 0
    conds = 0
    for lineno, line in _content_lines(text):
        stripped = line.strip()
        lower = stripped.lower()
        if lower.startswith("rewritecond"):
            m = _COND_RE.match(stripped)
            if not m:
                report.add(FAIL, "rewrite", f"line {lineno}: malformed RewriteCond")
                errors += 1
                continue
            flags = [f.strip().upper() for f in (m.group(1) or "").split(",") if f.strip()]
            pending.append((lineno, "OR" in flags))
            conds += 1
            continue
        if lower.startswith("rewriterule"):
            if not _RULE_RE.match(stripped):
                report.add(FAIL, "rewrite", f"line {lineno}: malformed RewriteRule")
                errors += 1
            if pending and pending[-1][1]:
                report.add(
                    FAIL,
                    "rewrite",
                    f"line {pending[-1][0]}: last RewriteCond before a RewriteRule ends with [OR]",
                )
                errors += 1
            pending = []
            continue
        if pending:
            report.add(
                FAIL,
                "rewrite",
                f"line {pending[0][0]}: RewriteCond is not followed by a RewriteRule",
            )
            errors += 1
            pending = []
    if pending:
        report.add(FAIL, "rewrite", f"line {pending[0][0]}: RewriteCond at end of file has no RewriteRule")
        errors += 1
    if not errors:
        report.add(PASS, "rewrite", f"No RewriteCond chain errors ({conds} conditions)")


def check_ols_compatibility(text: str, report: ValidationReport) -> None:
    issues = 0
    for lineno, line in _content_lines(text):
        if line.strip().lower().startswith("includeoptional"):
            report.add(FAIL, "compatibility", f"line {lineno}: IncludeOptional is not supported by OpenLiteSpeed")
            issues += 1
    for module in _UNSUPPORTED_MODULES:
        if module in text:
            report.add(WARN, "compatibility", f"Potentially unsupported module: {module}")
    for path in _HARDCODED_PATHS:
        if path in text:
            report.add(WARN, "compatibility", f"Hardcoded path found: {path}")
    if not issues:
        report.add(PASS, "compatibility", "No OpenLiteSpeed compatibility issues")


def check_seo_safety(text: str, report: ValidationReport) -> None:
    if re.search(r"QUERY_STRING.*utm_", text):
        report.add(FAIL, "seo", "UTM parameter blocking found (will hurt SEO)")
    else:
        report.add(PASS, "seo", "No SEO-critical parameter blocking")
    lower = text.lower()
    engines = [name for name in ("googlebot", "bingbot") if name in lower]
    if engines:
        report.add(PASS, "seo", "Search engine verification present: " + ", ".join(engines))


def check_performance(text: str, report: ValidationReport) -> None:
    lines = [line.strip() for _, line in _content_lines(text)]
    rules = sum(1 for s in lines if s.lower().startswith("rewriterule"))
    files_blocks = sum(1 for s in lines if s.lower().startswith("<files"))
    if rules > MAX_REWRITE_RULES:
        report.add(WARN, "performance", f"High number of rewrite rules: {rules}")
    else:
        report.add(PASS, "performance", f"Reasonable number of rewrite rules: {rules}")
    if files_blocks > MAX_FILES_BLOCKS:
        report.add(WARN, "performance", f"High number of file-based rules: {files_blocks}")


def validate_text(text: str, *, name: str = "<text>") -> ValidationReport:
    report = ValidationReport(path=name)
    check_tag_balance(text, report)
    check_rewrite_chains(text, report)
    check_ols_compatibility(text, report)
    check_seo_safety(text, report)
    check_performance(text, report)
    return report


def validate_file(path: str) -> ValidationReport:
    if not os.path.isfile(path):
        report = ValidationReport(path=path)
        report.add(FAIL, "file", f"Configuration file not found: {path}")
        return report
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    return validate_text(text, name=path)
