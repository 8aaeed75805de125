import io
import json
import os
import urllib.error
from ipaddress import ip_network

import pytest

from wpguard.services import bot_ranges
from wpguard.services.errors import DecodeError, FetchError
from wpguard.services.rule_compiler import compile_patterns


GOOGLEBOT_JSON = json.dumps(
    {
        "creationTime": "2024-01-01T00:00:00",
        "prefixes": [
            {"ipv6Prefix": "2001:4860:4801:10::/64"},
            {"ipv4Prefix": "66.249.64.0/27"},
            {"ipv4Prefix": "66.249.66.0/27"},
            {"ipv4Prefix": "66.249.66.32/27"},
        ],
    }
).encode("utf-8")

BINGBOT_JSON = json.dumps(
    {"prefixes": [{"ipv4Prefix": "157.55.39.0/24"}, {"ipv4Prefix": "207.46.13.0/24"}]}
).encode("utf-8")

SERVICE_TAGS_JSON = json.dumps(
    {
        "values": [
            {"name": "AzureCloud", "properties": {"addressPrefixes": ["13.64.0.0/11"]}},
            {"name": "Bing.Crawler", "properties": {"addressPrefixes": ["40.77.167.0/24", "2603:1030::/48"]}},
        ]
    }
).encode("utf-8")


class FakeResponse:
    def __init__(self, body, status=200, headers=None):
        self._body = io.BytesIO(body)
        self.status = status
        self.headers = headers or {}

    def read(self, n=-1):
        return self._body.read(n)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def install_urlopen(monkeypatch, routes):
    """routes: url -> bytes | Exception | FakeResponse"""
    seen = []

    def fake_urlopen(req, timeout=None):
        url = req.full_url
        seen.append(url)
        r = routes.get(url)
        if r is None:
            raise urllib.error.URLError("no route to host")
        if isinstance(r, Exception):
            raise r
        if isinstance(r, FakeResponse):
            return r
        return FakeResponse(r)

    monkeypatch.setattr(bot_ranges.urllib.request, "urlopen", fake_urlopen)
    return seen


def test_prefixes_decoder_drops_ipv6():
    nets = bot_ranges.PrefixesDecoder().decode(GOOGLEBOT_JSON)
    assert [str(n) for n in nets] == ["66.249.64.0/27", "66.249.66.0/27", "66.249.66.32/27"]


def test_prefixes_decoder_rejects_wrong_shape():
    with pytest.raises(DecodeError):
        bot_ranges.PrefixesDecoder().decode(b'{"values": []}')
    with pytest.raises(DecodeError):
        bot_ranges.PrefixesDecoder().decode(b"<html>maintenance</html>")


def test_service_tags_decoder_filters_by_name():
    nets = bot_ranges.ServiceTagsDecoder("Bing").decode(SERVICE_TAGS_JSON)
    assert nets == [ip_network("40.77.167.0/24")]


def test_service_tags_decoder_skips_unexpected_properties():
    body = json.dumps(
        {
            "values": [
                {"name": "Bing.Crawler", "properties": ["40.77.167.0/24"]},
                {"name": "Bing.Other", "properties": {"addressPrefixes": "40.77.168.0/24"}},
                {"name": "Bing.Ok", "properties": {"addressPrefixes": ["157.55.39.0/24"]}},
            ]
        }
    ).encode("utf-8")
    nets = bot_ranges.ServiceTagsDecoder("Bing").decode(body)
    assert nets == [ip_network("157.55.39.0/24")]


def test_decode_payload_falls_back_when_decoder_raises_type_error():
    class Broken(bot_ranges.Decoder):
        name = "broken"

        def decode(self, payload):
            raise TypeError("unhashable type")

    endpoint = bot_ranges.Endpoint("https://example.test/x.json", Broken())
    entries, used = bot_ranges.decode_payload(endpoint, b"Bing 40.77.167.0/24")
    assert used == "scan"
    assert entries == [ip_network("40.77.167.0/24")]

    endpoint = bot_ranges.Endpoint("https://example.test/x.json", Broken(), Broken())
    with pytest.raises(DecodeError):
        bot_ranges.decode_payload(endpoint, b"{}")


def test_scan_decoder_context_window():
    body = b"\n".join(
        [b"AzureCloud 13.64.0.0/11", b"x", b"x", b"x", b"x", b"x", b"x", b"Bing 40.77.167.0/24", b"157.55.39.0/24"]
    )
    nets = bot_ranges.ScanDecoder(near="Bing", context=1).decode(body)
    assert [str(n) for n in nets] == ["40.77.167.0/24", "157.55.39.0/24"]
    with pytest.raises(DecodeError):
        bot_ranges.ScanDecoder().decode(b"nothing here")


def test_fetch_uses_first_working_endpoint(monkeypatch, settings, tmp_path):
    seen = install_urlopen(
        monkeypatch,
        {bot_ranges.GOOGLEBOT_URL: GOOGLEBOT_JSON, bot_ranges.GOOGLE_URL: GOOGLEBOT_JSON},
    )
    provider = bot_ranges.default_providers(settings)[0]
    result = bot_ranges.fetch_provider(provider, str(tmp_path), settings)
    assert not result.degraded
    assert len(result.entries) == 3
    assert seen == [bot_ranges.GOOGLEBOT_URL]
    assert os.path.isfile(tmp_path / "googlebot-0.json")


def test_fetch_falls_back_to_scanner_on_malformed_json(monkeypatch, settings, tmp_path):
    broken = b'{"prefixes": [{"ipv4Prefix": "66.249.66.0/24"}, {"ipv4Prefix": "66.249.68.0/24"'
    install_urlopen(monkeypatch, {bot_ranges.GOOGLEBOT_URL: broken})
    provider = bot_ranges.default_providers(settings)[0]
    result = bot_ranges.fetch_provider(provider, str(tmp_path), settings)
    assert not result.degraded
    assert result.endpoints[0].decoder == "scan"
    assert [str(n) for n in result.entries] == ["66.249.66.0/24", "66.249.68.0/24"]


def test_fetch_tries_next_endpoint_after_http_error(monkeypatch, settings, tmp_path):
    err = urllib.error.HTTPError(bot_ranges.GOOGLEBOT_URL, 503, "Service Unavailable", {}, None)
    install_urlopen(monkeypatch, {bot_ranges.GOOGLEBOT_URL: err, bot_ranges.GOOGLE_URL: GOOGLEBOT_JSON})
    provider = bot_ranges.default_providers(settings)[0]
    result = bot_ranges.fetch_provider(provider, str(tmp_path), settings)
    assert not result.degraded
    assert [e.ok for e in result.endpoints] == [False, True]


def test_all_endpoints_failing_uses_fallback(monkeypatch, settings, tmp_path):
    install_urlopen(monkeypatch, {})
    provider = bot_ranges.default_providers(settings)[1]
    result = bot_ranges.fetch_provider(provider, str(tmp_path), settings)
    assert result.degraded
    assert [str(n) for n in result.entries] == list(bot_ranges.BINGBOT_FALLBACK)
    assert all(not e.ok for e in result.endpoints)


def test_download_enforces_size_limit(monkeypatch, tmp_path):
    install_urlopen(monkeypatch, {"https://example.test/big.json": b"x" * 5000})
    with pytest.raises(FetchError):
        bot_ranges.download("https://example.test/big.json", str(tmp_path / "big"), max_bytes=1024)

    install_urlopen(
        monkeypatch,
        {"https://example.test/cl.json": FakeResponse(b"{}", headers={"Content-Length": "999999"})},
    )
    with pytest.raises(FetchError):
        bot_ranges.download("https://example.test/cl.json", str(tmp_path / "cl"), max_bytes=1024)


def test_download_rejects_non_http_scheme(tmp_path):
    with pytest.raises(FetchError):
        bot_ranges.download("file:///etc/passwd", str(tmp_path / "x"))


def test_refresh_with_every_source_down_writes_fallback_rules(monkeypatch, settings):
    install_urlopen(monkeypatch, {})
    result = bot_ranges.refresh(settings)

    assert result.degraded == ["googlebot", "bingbot"]
    expected, _ = compile_patterns(bot_ranges.BINGBOT_FALLBACK, settings.bingbot_max_patterns)
    bing = [p for p in result.providers if p.name == "bingbot"][0]
    assert list(bing.patterns) == expected

    text = open(settings.bot_rules_path, encoding="utf-8").read()
    assert "FALLBACK LIST" in text
    lines = open(os.path.join(settings.bot_ip_dir, "bingbot-ips.txt"), encoding="utf-8").read().splitlines()
    assert lines == expected
    assert not os.path.exists(settings.bot_ip_temp_dir)


def test_refresh_uses_service_tags_endpoint_when_configured(monkeypatch, settings):
    s = settings.with_overrides(bing_service_tags_url="https://download.example.test/ServiceTags_Public.json")
    install_urlopen(
        monkeypatch,
        {
            bot_ranges.GOOGLEBOT_URL: GOOGLEBOT_JSON,
            "https://download.example.test/ServiceTags_Public.json": SERVICE_TAGS_JSON,
        },
    )
    result = bot_ranges.refresh(s)
    assert result.degraded == []
    summary = bot_ranges.provider_summary(result)
    assert summary["bingbot"]["patterns"] == 1
    assert summary["googlebot"] == {"patterns": 2, "dropped": 0, "degraded": False}


def test_refresh_survives_malformed_service_tags(monkeypatch, settings):
    url = "https://download.example.test/ServiceTags_Public.json"
    s = settings.with_overrides(bing_service_tags_url=url)
    body = json.dumps({"values": [{"name": "Bing.Crawler", "properties": ["40.77.167.0/24"]}]}).encode("utf-8")
    install_urlopen(monkeypatch, {bot_ranges.GOOGLEBOT_URL: GOOGLEBOT_JSON, url: body})
    result = bot_ranges.refresh(s)
    assert result.degraded == ["bingbot"]
    assert os.path.isfile(s.bot_rules_path)


def test_scratch_dir_removed_on_error(tmp_path):
    work = str(tmp_path / "scratch")
    with pytest.raises(RuntimeError):
        with bot_ranges.scratch_dir(work):
            open(os.path.join(work, "payload.json"), "w").close()
            raise RuntimeError("boom")
    assert not os.path.exists(work)
