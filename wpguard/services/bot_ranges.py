"""Fetch published crawler address ranges and compile them into rewrite rules.

Each provider lists one or more endpoints. Endpoints are tried in order and the
first one that yields usable IPv4 prefixes wins. A structured JSON decoder is
tried first; when the body does not have the expected shape, a regex scanner
gets a second look at the same payload. If every endpoint fails the provider's
built-in fallback list is used and the result is marked degraded.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import urllib.request
from contextlib import contextmanager
from dataclasses import dataclass, field
from ipaddress import IPv4Network, ip_network
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from wpguard.services.errors import DecodeError, FetchError, describe_error
from wpguard.services.rule_compiler import (
    CompiledProvider,
    compile_provider,
    render_rule_file,
    write_pattern_list,
    write_rule_file,
)
from wpguard.services.settings import Settings, get_settings


logger = logging.getLogger(__name__)


USER_AGENT = "wpguard/bot-ranges"

GOOGLEBOT_URL = "https://developers.google.com/static/search/apis/ipranges/googlebot.json"
GOOGLE_URL = "https://www.gstatic.com/ipranges/goog.json"
BINGBOT_URL = "https://www.bing.com/toolbox/bingbot.json"

GOOGLEBOT_FALLBACK = ("66.249.64.0/19",)
BINGBOT_FALLBACK = (
    "157.55.39.0/24",
    "207.46.13.0/24",
    "40.77.167.0/24",
    "13.66.139.0/24",
    "199.30.24.0/23",
)

_CIDR_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d{1,3}){3}/\d{1,2})(?!\d)")


def _ipv4(values) -> List[IPv4Network]:
    out: List[IPv4Network] = []
    for v in values:
        try:
            net = ip_network(str(v).strip(), strict=False)
        except ValueError:
            continue
        if isinstance(net, IPv4Network):
            out.append(net)
    return out


def _load_json(payload: bytes):
    try:
        return json.loads(payload.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"Body is not JSON: {e}") from e


class Decoder:
    name = ""

    def decode(self, payload: bytes) -> List[IPv4Network]:
        raise NotImplementedError


class PrefixesDecoder(Decoder):
    """Google/Bing format: {"prefixes": [{"ipv4Prefix": "..."} | {"ipv6Prefix": "..."}]}."""

    name = "prefixes"

    def decode(self, payload: bytes) -> List[IPv4Network]:
        doc = _load_json(payload)
        prefixes = doc.get("prefixes") if isinstance(doc, dict) else None
        if not isinstance(prefixes, list):
            raise DecodeError("Missing 'prefixes' list")
        return _ipv4(p["ipv4Prefix"] for p in prefixes if isinstance(p, dict) and p.get("ipv4Prefix"))


class ServiceTagsDecoder(Decoder):
    """Microsoft service tags: {"values": [{"name", "properties": {"addressPrefixes": [...]}}]}."""

    name = "service-tags"

    def __init__(self, name_filter: str = "Bing"):
        self.name_filter = name_filter

    def decode(self, payload: bytes) -> List[IPv4Network]:
        doc = _load_json(payload)
        values = doc.get("values") if isinstance(doc, dict) else None
        if not isinstance(values, list):
            raise DecodeError("Missing 'values' list")
        found: List[str] = []
        for v in values:
            if not isinstance(v, dict) or self.name_filter not in str(v.get("name") or ""):
                continue
            props = v.get("properties")
            prefixes = props.get("addressPrefixes") if isinstance(props, dict) else None
            if not isinstance(prefixes, list):
                logger.debug("Skipping %s: no addressPrefixes list", v.get("name"))
                continue
            found.extend(prefixes)
        return _ipv4(found)


class ScanDecoder(Decoder):
    """Last resort: pull anything that looks like an IPv4 CIDR out of the body.

    With `near`, only lines within `context` lines of a line mentioning `near`
    are scanned.
    """

    name = "scan"

    def __init__(self, near: str = "", context: int = 5):
        self.near = near
        self.context = context

    def decode(self, payload: bytes) -> List[IPv4Network]:
        text = payload.decode("utf-8", errors="replace")
        if self.near:
            lines = text.splitlines()
            keep = set()
            for i, line in enumerate(lines):
                if self.near in line:
                    keep.update(range(max(0, i - self.context), min(len(lines), i + self.context + 1)))
            text = "\n".join(lines[i] for i in sorted(keep))
        found = _ipv4(_CIDR_RE.findall(text))
        if not found:
            raise DecodeError("No IPv4 prefixes found")
        return found


@dataclass(frozen=True)
class Endpoint:
    url: str
    decoder: Decoder
    fallback_decoder: Decoder = field(default_factory=ScanDecoder)


@dataclass(frozen=True)
class ProviderSpec:
    name: str
    user_agent_pattern: str
    endpoints: Tuple[Endpoint, ...]
    cap: int
    fallback: Tuple[str, ...]

    @property
    def list_filename(self) -> str:
        return f"{self.name}-ips.txt"


@dataclass(frozen=True)
class EndpointResult:
    url: str
    ok: bool
    entries: int = 0
    error: str = ""
    decoder: str = ""


@dataclass(frozen=True)
class FetchResult:
    provider: str
    entries: Tuple[IPv4Network, ...]
    degraded: bool
    endpoints: Tuple[EndpointResult, ...] = ()


@dataclass(frozen=True)
class RefreshResult:
    providers: Tuple[CompiledProvider, ...]
    fetches: Tuple[FetchResult, ...]
    rule_file: str

    @property
    def degraded(self) -> List[str]:
        return [f.provider for f in self.fetches if f.degraded]


def default_providers(settings: Optional[Settings] = None) -> List[ProviderSpec]:
    s = settings or get_settings()
    bing_endpoints = [Endpoint(BINGBOT_URL, PrefixesDecoder())]
    if s.bing_service_tags_url:
        bing_endpoints.append(
            Endpoint(s.bing_service_tags_url, ServiceTagsDecoder("Bing"), ScanDecoder(near="Bing"))
        )
    return [
        ProviderSpec(
            name="googlebot",
            user_agent_pattern="googlebot",
            endpoints=(
                Endpoint(GOOGLEBOT_URL, PrefixesDecoder()),
                Endpoint(GOOGLE_URL, PrefixesDecoder()),
            ),
            cap=s.googlebot_max_patterns,
            fallback=GOOGLEBOT_FALLBACK,
        ),
        ProviderSpec(
            name="bingbot",
            user_agent_pattern="bingbot",
            endpoints=tuple(bing_endpoints),
            cap=s.bingbot_max_patterns,
            fallback=BINGBOT_FALLBACK,
        ),
    ]


@contextmanager
def scratch_dir(path: str) -> Iterator[str]:
    os.makedirs(path, exist_ok=True)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def download(url: str, dest: str, *, timeout_seconds: int = 30, max_bytes: int = 16 * 1024 * 1024) -> bytes:
    """Download `url` into `dest` and return the body. Raises FetchError."""
    u = urlparse(url or "")
    if u.scheme not in ("http", "https"):
        raise FetchError("Only http/https URLs are supported.")

    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    chunks: List[bytes] = []
    total = 0
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            if status != 200:
                raise FetchError(f"HTTP {status}")
            cl = resp.headers.get("Content-Length")
            if cl is not None and cl.isdigit() and int(cl) > max_bytes:
                raise FetchError(f"Download too large (Content-Length={cl}).")
            while True:
                chunk = resp.read(256 * 1024)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise FetchError(f"Download exceeded limit ({max_bytes} bytes).")
                chunks.append(chunk)
    except FetchError:
        raise
    except Exception as e:
        raise FetchError(describe_error(e, default="Download failed.")) from e

    body = b"".join(chunks)
    with open(dest, "wb") as f:
        f.write(body)
    return body


def decode_payload(endpoint: Endpoint, payload: bytes) -> Tuple[List[IPv4Network], str]:
    """Returns (entries, decoder name). Raises DecodeError when nothing usable is found."""
    try:
        entries = endpoint.decoder.decode(payload)
        used = endpoint.decoder.name
    except (DecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(
            "%s: %s decoder failed (%s); falling back to %s",
            endpoint.url,
            endpoint.decoder.name,
            e,
            endpoint.fallback_decoder.name,
        )
        try:
            entries = endpoint.fallback_decoder.decode(payload)
        except DecodeError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e2:
            raise DecodeError(f"{endpoint.fallback_decoder.name} decoder failed: {e2}") from e2
        used = endpoint.fallback_decoder.name
    if not entries:
        raise DecodeError("No IPv4 prefixes in response")
    return entries, used


def fetch_provider(provider: ProviderSpec, workdir: str, settings: Optional[Settings] = None) -> FetchResult:
    s = settings or get_settings()
    results: List[EndpointResult] = []
    for i, endpoint in enumerate(provider.endpoints):
        logger.info("Downloading %s ranges: %s", provider.name, endpoint.url)
        dest = os.path.join(workdir, f"{provider.name}-{i}.json")
        try:
            payload = download(
                endpoint.url,
                dest,
                timeout_seconds=s.fetch_timeout_seconds,
                max_bytes=s.fetch_max_bytes,
            )
            entries, used = decode_payload(endpoint, payload)
        except FetchError as e:
            logger.warning("Failed to fetch %s ranges from %s: %s", provider.name, endpoint.url, e)
            results.append(EndpointResult(url=endpoint.url, ok=False, error=str(e)))
            continue
        logger.info("Fetched %d %s prefixes from %s", len(entries), provider.name, endpoint.url)
        results.append(EndpointResult(url=endpoint.url, ok=True, entries=len(entries), decoder=used))
        return FetchResult(provider=provider.name, entries=tuple(entries), degraded=False, endpoints=tuple(results))

    logger.warning("All %s endpoints failed; using the built-in fallback list", provider.name)
    return FetchResult(
        provider=provider.name,
        entries=tuple(_ipv4(provider.fallback)),
        degraded=True,
        endpoints=tuple(results),
    )


def refresh(
    settings: Optional[Settings] = None,
    providers: Optional[Sequence[ProviderSpec]] = None,
) -> RefreshResult:
    """Fetch every provider, compile, and atomically replace the rule file."""
    s = settings or get_settings()
    providers = list(providers) if providers is not None else default_providers(s)

    fetches: List[FetchResult] = []
    compiled: List[CompiledProvider] = []
    with scratch_dir(s.bot_ip_temp_dir) as workdir:
        for p in providers:
            fetched = fetch_provider(p, workdir, s)
            fetches.append(fetched)
            compiled.append(
                compile_provider(p.name, p.user_agent_pattern, fetched.entries, p.cap, degraded=fetched.degraded)
            )

    os.makedirs(s.bot_ip_dir, exist_ok=True)
    for p, c in zip(providers, compiled):
        write_pattern_list(os.path.join(s.bot_ip_dir, p.list_filename), c.patterns)
        logger.info("%s: %d patterns active (%d dropped by cap)", p.name, len(c.patterns), c.dropped)

    write_rule_file(s.bot_rules_path, render_rule_file(compiled))
    return RefreshResult(providers=tuple(compiled), fetches=tuple(fetches), rule_file=s.bot_rules_path)


def provider_summary(result: RefreshResult) -> Dict[str, Dict[str, object]]:
    return {
        c.name: {"patterns": len(c.patterns), "dropped": c.dropped, "degraded": c.degraded}
        for c in result.providers
    }
