"""Probe runs against a small protected site served on localhost."""
import re
import socket
import threading
from urllib.parse import unquote

import pytest

flask = pytest.importorskip("flask")
from werkzeug.serving import make_server

from wpguard.services.probes import (
    build_probes,
    check_security_headers,
    parse_target,
    run_probes,
    send_probe,
)


ALLOWED_PATHS = {"/", "/wp-login.php", "/wp-includes/css/dashicons.min.css"}

BAD_AGENTS = re.compile(r"sqlmap|nikto|nmap|w3af|acunetix|burp|python-urllib|^curl|^java|googlebot|bingbot", re.I)
BAD_QUERIES = re.compile(
    r"eval\(|union.*select|GLOBALS|REQUEST\[|<script|etc/passwd|127\.0\.0\.1|javascript:", re.I
)


def create_site(seen_hosts):
    app = flask.Flask(__name__)

    @app.before_request
    def guard():
        seen_hosts.append(flask.request.host)
        if flask.request.method not in ("GET", "HEAD"):
            flask.abort(405)
        if BAD_AGENTS.search(flask.request.headers.get("User-Agent", "")):
            flask.abort(403)
        if BAD_QUERIES.search(unquote(flask.request.query_string.decode("latin-1"))):
            flask.abort(403)
        if flask.request.path not in ALLOWED_PATHS:
            flask.abort(404)
        return None

    @app.route("/")
    @app.route("/wp-login.php")
    @app.route("/wp-includes/css/dashicons.min.css")
    def page():
        return "ok"

    @app.after_request
    def headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "SAMEORIGIN"
        return resp

    return app


@pytest.fixture
def site():
    seen_hosts = []
    server = make_server("127.0.0.1", 0, create_site(seen_hosts), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_port, seen_hosts
    finally:
        server.shutdown()
        thread.join(timeout=5)


@pytest.mark.parametrize("suite", ["normal", "paths", "agents", "queries", "bots"])
def test_protected_site_passes_suite(site, suite):
    port, _ = site
    target = parse_target(f"http://127.0.0.1:{port}")
    summary = run_probes(target, build_probes([suite]), timeout=5)
    assert summary.total > 0
    assert summary.ok, [(r.probe.path, r.probe.user_agent, r.status) for r in summary.failures]


def test_trace_is_rejected(site):
    port, _ = site
    target = parse_target(f"http://127.0.0.1:{port}")
    trace = [p for p in build_probes(["methods"]) if p.method == "TRACE"]
    result = send_probe(target, trace[0], timeout=5)
    assert result.status == 405
    assert result.passed


def test_results_reported_as_they_arrive(site):
    port, _ = site
    target = parse_target(f"http://127.0.0.1:{port}")
    seen = []
    summary = run_probes(target, build_probes(["normal"]), timeout=5, on_result=seen.append)
    assert list(summary.results) == seen


def test_cache_bypass_keeps_site_host_header(site):
    port, seen_hosts = site
    target = parse_target(f"http://wp.example.test:{port}")
    summary = run_probes(target, build_probes(["normal"]), origin_ip="127.0.0.1", timeout=5)
    assert summary.ok
    assert set(seen_hosts) == {f"wp.example.test:{port}"}


def test_unreachable_site_fails_every_probe():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()

    target = parse_target(f"http://127.0.0.1:{port}")
    summary = run_probes(target, build_probes(["normal"]), timeout=2, connect_timeout=2)
    assert summary.failed == summary.total == 3
    assert all(r.status is None and r.error for r in summary.results)


def test_security_header_check(site):
    port, _ = site
    target = parse_target(f"http://127.0.0.1:{port}")
    assert check_security_headers(target) == {
        "X-Content-Type-Options": True,
        "X-Frame-Options": True,
        "X-XSS-Protection": False,
    }
