"""Probe a live site with crafted requests and check the responses.

Each probe declares what the protected site should do with it (allow, deny, or
reject the method). `run_probes` sends them one at a time, never following
redirects, and folds the outcomes into an immutable ProbeSummary.

Cache-bypass mode opens the TCP connection to the origin address while the
Host header and TLS SNI still carry the site name, so a CDN in front of the
site is skipped without touching DNS.
"""
from __future__ import annotations

import http.client
import logging
import socket
import ssl
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlsplit


logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; SecurityTest/1.0)"
BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

SECURITY_HEADERS = ("X-Content-Type-Options", "X-Frame-Options", "X-XSS-Protection")

# Characters left unescaped in probe paths. Anything else (spaces, quotes,
# angle brackets) is percent-encoded so the request line stays valid.
_SAFE_CHARS = "/?=&:;,.!$*'()+@[]~_-"


class Expectation(Enum):
    ALLOW = "allow"
    DENY = "deny"
    METHOD_REJECTED = "method-rejected"


def classify(expected: Expectation, status: Optional[int]) -> bool:
    """Did the observed status meet the expectation? No status always fails."""
    if status is None:
        return False
    if expected is Expectation.ALLOW:
        return status == 200
    if expected is Expectation.DENY:
        return status in (403, 404)
    if expected is Expectation.METHOD_REJECTED:
        return status in (405, 501, 400)
    return False


@dataclass(frozen=True)
class Probe:
    suite: str
    description: str
    path: str = "/"
    expected: Expectation = Expectation.DENY
    method: str = "GET"
    user_agent: str = DEFAULT_USER_AGENT


@dataclass(frozen=True)
class ProbeResult:
    probe: Probe
    status: Optional[int]
    passed: bool
    error: str = ""


@dataclass(frozen=True)
class ProbeSummary:
    results: Tuple[ProbeResult, ...] = ()

    def add(self, result: ProbeResult) -> "ProbeSummary":
        return replace(self, results=self.results + (result,))

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return self.total - self.passed

    @property
    def failures(self) -> List[ProbeResult]:
        return [r for r in self.results if not r.passed]

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def by_suite(self) -> Dict[str, Tuple[int, int]]:
        """suite -> (passed, total)"""
        out: Dict[str, Tuple[int, int]] = {}
        for r in self.results:
            p, t = out.get(r.probe.suite, (0, 0))
            out[r.probe.suite] = (p + (1 if r.passed else 0), t + 1)
        return out


NORMAL_PATHS = (
    ("/", "Homepage access"),
    ("/wp-login.php", "WordPress login page"),
    ("/wp-includes/css/dashicons.min.css", "WordPress CSS files"),
)

SENSITIVE_PATHS = (
    "/wp-config.php",
    "/wp-config-sample.php",
    "/xmlrpc.php",
    "/readme.html",
    "/license.txt",
    "/wp-admin/install.php",
    "/wp-admin/upgrade.php",
    "/wp-content/debug.log",
    "/wp-content/uploads/test.php",
    "/wp-content/uploads/shell.php",
    "/wp-content/plugins/evil.php",
    "/wp-content/themes/malicious.php",
    "/wp-includes/backdoor.php",
    "/backup.sql",
    "/site.bak",
    "/config.backup",
    "/webshell.php",
    "/timthumb.php",
    "/wp-content/uploads/archive.zip",
    "/.git/config",
    "/.env",
    "/.htaccess",
    "/script.py",
    "/exec.exe",
    "/admin/",
    "/wp-admin/admin-ajax.php?action=revslider_show_image&img=../wp-config.php",
    "/?eval(base64_decode('malicious'))",
    "/?union select * from wp_users",
    "/etc/passwd",
    "/proc/self/environ",
)

MALICIOUS_USER_AGENTS = (
    "sqlmap/1.0",
    "nikto/2.1",
    "nmap",
    "w3af",
    "acunetix",
    "burp",
    "python-urllib",
    "curl",
    "java",
)

DANGEROUS_METHODS = ("TRACE", "TRACK", "CONNECT", "DEBUG", "MOVE")

MALICIOUS_QUERIES = (
    "?eval(base64_decode('test'))",
    "?union select * from wp_users",
    "?GLOBALS['_']",
    "?REQUEST['test']",
    "?<script>alert('xss')</script>",
    "?etc/passwd",
    "?127.0.0.1",
    "?javascript:alert(1)",
)

BOT_AGENTS = (
    ("Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)", Expectation.DENY, "Fake Googlebot blocked"),
    ("Mozilla/5.0 (compatible; bingbot/2.0; +http://www.bing.com/bingbot.htm)", Expectation.DENY, "Fake Bingbot blocked"),
    ("sqlmap/1.7.5 (automatic SQL injection and database takeover tool)", Expectation.DENY, "Malicious bot blocked"),
    (BROWSER_USER_AGENT, Expectation.ALLOW, "Normal browser access"),
    ("WordPress/6.4.3; http://localhost", Expectation.ALLOW, "WordPress user agent allowed"),
)


def _normal() -> List[Probe]:
    return [Probe("normal", d, path=p, expected=Expectation.ALLOW) for p, d in NORMAL_PATHS]


def _paths() -> List[Probe]:
    return [Probe("paths", f"Block access to: {p}", path=p) for p in SENSITIVE_PATHS]


def _agents() -> List[Probe]:
    return [Probe("agents", f"Block user agent: {ua}", user_agent=ua) for ua in MALICIOUS_USER_AGENTS]


def _methods() -> List[Probe]:
    return [
        Probe("methods", f"Block HTTP {m} method", method=m, expected=Expectation.METHOD_REJECTED)
        for m in DANGEROUS_METHODS
    ]


def _queries() -> List[Probe]:
    return [Probe("queries", f"Block query string: {q}", path="/" + q) for q in MALICIOUS_QUERIES]


def _bots() -> List[Probe]:
    return [Probe("bots", d, user_agent=ua, expected=e) for ua, e, d in BOT_AGENTS]


SUITES: Dict[str, Callable[[], List[Probe]]] = {
    "normal": _normal,
    "paths": _paths,
    "agents": _agents,
    "methods": _methods,
    "queries": _queries,
    "bots": _bots,
}


def build_probes(suites: Optional[Iterable[str]] = None) -> List[Probe]:
    names = list(suites) if suites else list(SUITES)
    probes: List[Probe] = []
    for name in names:
        if name not in SUITES:
            raise ValueError(f"Unknown probe suite: {name}")
        probes.extend(SUITES[name]())
    return probes


@dataclass(frozen=True)
class Target:
    scheme: str
    host: str
    port: int
    base_path: str = ""

    @property
    def url(self) -> str:
        default = 443 if self.scheme == "https" else 80
        netloc = self.host if self.port == default else f"{self.host}:{self.port}"
        return f"{self.scheme}://{netloc}{self.base_path}"


def parse_target(text: str) -> Target:
    """Accepts a bare domain (https assumed) or a full http/https URL."""
    raw = (text or "").strip()
    if not raw:
        raise ValueError("Target is required")
    if "://" not in raw:
        raw = "https://" + raw
    u = urlsplit(raw)
    if u.scheme not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {u.scheme}")
    if not u.hostname:
        raise ValueError(f"No host in target: {text}")
    port = u.port or (443 if u.scheme == "https" else 80)
    return Target(scheme=u.scheme, host=u.hostname, port=port, base_path=u.path.rstrip("/"))


def local_ip() -> str:
    """Primary address of this host (no packets are sent)."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("192.0.2.1", 80))
        return s.getsockname()[0]
    except OSError:
        return socket.gethostbyname(socket.gethostname())
    finally:
        s.close()


class _ProbeHTTPConnection(http.client.HTTPConnection):
    def __init__(self, host, port=None, *, connect_to=None, connect_timeout=5.0, timeout=10.0):
        super().__init__(host, port, timeout=timeout)
        self.connect_to = connect_to or host
        self.connect_timeout = connect_timeout

    def connect(self):
        self.sock = socket.create_connection((self.connect_to, self.port), timeout=self.connect_timeout)
        self.sock.settimeout(self.timeout)


class _ProbeHTTPSConnection(http.client.HTTPSConnection):
    def __init__(self, host, port=None, *, connect_to=None, connect_timeout=5.0, timeout=10.0, context=None):
        super().__init__(host, port, timeout=timeout, context=context)
        self.connect_to = connect_to or host
        self.connect_timeout = connect_timeout
        self.ssl_context = context or ssl.create_default_context()

    def connect(self):
        sock = socket.create_connection((self.connect_to, self.port), timeout=self.connect_timeout)
        sock.settimeout(self.timeout)
        # SNI carries the site name even when connecting to the origin address.
        self.sock = self.ssl_context.wrap_socket(sock, server_hostname=self.host)


def request_path(target: Target, path: str) -> str:
    p = path if path.startswith("/") else "/" + path
    return quote(target.base_path + p, safe=_SAFE_CHARS)


def _open(
    target: Target,
    *,
    origin_ip: Optional[str],
    timeout: float,
    connect_timeout: float,
    verify_tls: bool,
) -> http.client.HTTPConnection:
    if target.scheme == "https":
        ctx = ssl.create_default_context()
        if not verify_tls:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return _ProbeHTTPSConnection(
            target.host,
            target.port,
            connect_to=origin_ip,
            connect_timeout=connect_timeout,
            timeout=timeout,
            context=ctx,
        )
    return _ProbeHTTPConnection(
        target.host,
        target.port,
        connect_to=origin_ip,
        connect_timeout=connect_timeout,
        timeout=timeout,
    )


def fetch_status(
    target: Target,
    path: str = "/",
    *,
    method: str = "GET",
    user_agent: str = DEFAULT_USER_AGENT,
    origin_ip: Optional[str] = None,
    timeout: float = 10.0,
    connect_timeout: float = 5.0,
    verify_tls: bool = True,
) -> Tuple[int, Dict[str, str]]:
    """Send one request and return (status, headers). Redirects are not followed."""
    conn = _open(target, origin_ip=origin_ip, timeout=timeout, connect_timeout=connect_timeout, verify_tls=verify_tls)
    try:
        conn.request(method, request_path(target, path), headers={"User-Agent": user_agent, "Accept": "*/*"})
        resp = conn.getresponse()
        resp.read()
        return resp.status, {k.lower(): v for k, v in resp.getheaders()}
    finally:
        conn.close()


def send_probe(
    target: Target,
    probe: Probe,
    *,
    origin_ip: Optional[str] = None,
    timeout: float = 10.0,
    connect_timeout: float = 5.0,
    verify_tls: bool = True,
) -> ProbeResult:
    try:
        status, _ = fetch_status(
            target,
            probe.path,
            method=probe.method,
            user_agent=probe.user_agent,
            origin_ip=origin_ip,
            timeout=timeout,
            connect_timeout=connect_timeout,
            verify_tls=verify_tls,
        )
    except (OSError, http.client.HTTPException) as e:
        logger.debug("%s: request failed: %s", probe.description, e)
        return ProbeResult(probe=probe, status=None, passed=False, error=str(e) or type(e).__name__)
    return ProbeResult(probe=probe, status=status, passed=classify(probe.expected, status))


def run_probes(
    target: Target,
    probes: Sequence[Probe],
    *,
    origin_ip: Optional[str] = None,
    timeout: float = 10.0,
    connect_timeout: float = 5.0,
    verify_tls: bool = True,
    on_result: Optional[Callable[[ProbeResult], None]] = None,
) -> ProbeSummary:
    summary = ProbeSummary()
    for probe in probes:
        result = send_probe(
            target,
            probe,
            origin_ip=origin_ip,
            timeout=timeout,
            connect_timeout=connect_timeout,
            verify_tls=verify_tls,
        )
        summary = summary.add(result)
        logger.debug(
            "%s %s -> %s (%s)",
            probe.method,
            probe.path,
            result.status if result.status is not None else "no response",
            "pass" if result.passed else "fail",
        )
        if on_result is not None:
            on_result(result)
    return summary


def check_security_headers(
    target: Target,
    *,
    origin_ip: Optional[str] = None,
    timeout: float = 5.0,
    verify_tls: bool = True,
) -> Dict[str, bool]:
    """Which common security headers the homepage sends. Informational only."""
    try:
        _, headers = fetch_status(
            target,
            "/",
            user_agent="Mozilla/5.0",
            origin_ip=origin_ip,
            timeout=timeout,
            verify_tls=verify_tls,
        )
    except (OSError, http.client.HTTPException) as e:
        logger.info("Security header check failed: %s", e)
        headers = {}
    return {name: name.lower() in headers for name in SECURITY_HEADERS}
