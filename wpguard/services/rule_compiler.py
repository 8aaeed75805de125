from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from ipaddress import IPv4Network, ip_network
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from wpguard.services.config_validator import validate_text
from wpguard.services.errors import FatalError
from wpguard.services.fsutil import atomic_write_text


logger = logging.getLogger(__name__)


# Each pattern is an anchored dotted-octet stem: ^1\.2\.3\.
# The trailing escaped dot keeps "20." from matching "200.".
PATTERN_RE = re.compile(r"^\^(?:\d{1,3}\\\.){1,3}$")

RangeLike = Union[IPv4Network, str]


@dataclass(frozen=True)
class CompiledProvider:
    name: str
    user_agent_pattern: str
    patterns: Tuple[str, ...]
    dropped: int = 0
    degraded: bool = False


def _as_network(entry: RangeLike) -> Optional[IPv4Network]:
    if isinstance(entry, IPv4Network):
        return entry
    try:
        net = ip_network(str(entry).strip(), strict=False)
    except ValueError:
        return None
    if not isinstance(net, IPv4Network):
        return None
    return net


def prefix_stem(entry: RangeLike) -> Optional[str]:
    """Reduce a prefix to the anchored, escaped stem of its leading octets.

    Keeps prefixlen // 8 octets, at most three. Prefixes longer than /24 collapse
    to their /24 stem, and non-octet-aligned prefixes collapse to the coarser
    octet boundary, so the pattern may match addresses just outside the range
    but never misses one inside it. Anything broader than /8 is rejected.
    """
    net = _as_network(entry)
    if net is None:
        return None
    keep = min(3, net.prefixlen // 8)
    if keep < 1:
        return None
    octets = str(net.network_address).split(".")[:keep]
    return "^" + "".join(re.escape(o) + r"\." for o in octets)


def compile_patterns(entries: Iterable[RangeLike], cap: int) -> Tuple[List[str], int]:
    """Return (patterns, dropped).

    Discovery order is kept (first seen wins) so truncation to `cap` retains the
    ranges the provider listed first. `dropped` counts distinct patterns lost to
    the cap.
    """
    seen = set()
    patterns: List[str] = []
    rejected = 0
    for entry in entries:
        stem = prefix_stem(entry)
        if stem is None:
            rejected += 1
            continue
        if stem in seen:
            continue
        seen.add(stem)
        patterns.append(stem)
    if rejected:
        logger.info("Ignored %d range entries that are not usable IPv4 prefixes", rejected)

    cap = max(0, int(cap))
    dropped = max(0, len(patterns) - cap)
    if dropped:
        logger.info("Truncated %d patterns to the cap of %d (dropped %d)", len(patterns), cap, dropped)
    return patterns[:cap], dropped


def compile_provider(
    name: str,
    user_agent_pattern: str,
    entries: Iterable[RangeLike],
    cap: int,
    *,
    degraded: bool = False,
) -> CompiledProvider:
    patterns, dropped = compile_patterns(entries, cap)
    return CompiledProvider(
        name=name,
        user_agent_pattern=user_agent_pattern,
        patterns=tuple(patterns),
        dropped=dropped,
        degraded=degraded,
    )


def render_rule_file(providers: Sequence[CompiledProvider], *, generated_at: Optional[float] = None) -> str:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(time.time() if generated_at is None else generated_at))
    lines = [
        "# ============================================================",
        "# DYNAMIC BOT VERIFICATION CONFIGURATION",
        f"# Generated by wpguard update-bot-ips at {ts}. Do not edit.",
        "# ============================================================",
        "",
        "<IfModule mod_rewrite.c>",
        "    RewriteEngine On",
        "",
    ]
    for p in providers:
        if not p.patterns:
            # An empty allow-list would block every real crawler.
            logger.warning("No patterns for %s; leaving its crawler unverified", p.name)
            continue
        title = f"# === {p.name.upper()} VERIFICATION ({len(p.patterns)} ranges"
        title += ", FALLBACK LIST) ===" if p.degraded else ") ==="
        lines.append("    " + title)
        lines.append(f"    RewriteCond %{{HTTP_USER_AGENT}} {p.user_agent_pattern} [NC]")
        for pattern in p.patterns:
            if not PATTERN_RE.match(pattern):
                raise ValueError(f"Refusing to emit unsafe pattern for {p.name}: {pattern!r}")
            lines.append(f"    RewriteCond %{{REMOTE_ADDR}} !{pattern}")
        lines.append("    RewriteRule ^ - [F,L]")
        lines.append("")
    lines.append("</IfModule>")
    return "\n".join(lines) + "\n"


def write_rule_file(path: str, text: str) -> None:
    """Validate `text` and atomically put it in place at `path`."""
    report = validate_text(text, name=path)
    if not report.ok:
        details = "; ".join(f.message for f in report.failures)
        raise FatalError(
            f"Generated rule file failed validation: {details}",
            remediation=f"Inspect the generator output; the existing {path} was left untouched.",
        )
    atomic_write_text(path, text, mode=0o644)
    logger.info("Wrote %s", path)


def write_pattern_list(path: str, patterns: Sequence[str]) -> None:
    atomic_write_text(path, "".join(p + "\n" for p in patterns), mode=0o644)
