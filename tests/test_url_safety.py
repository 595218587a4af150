from __future__ import annotations

import json
from pathlib import Path

import pytest

from pagesnap.errors import UnsafeUrlError
from pagesnap.url_safety import (
    DEFAULT_BLOCKED_DOMAINS,
    UrlSafetyValidator,
    build_validator,
    cached_url_blocklist,
    load_url_blocklist,
    parse_ipv4_host,
)


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com",
        "http://example.com:8080/path?q=1",
        "https://sub.example.org/a/b#frag",
        "https://8.8.8.8/",
    ],
)
def test_public_urls_pass(url: str) -> None:
    validator = UrlSafetyValidator()
    assert validator.validate(url) == url
    assert validator.is_safe(url)


@pytest.mark.parametrize(
    ("url", "message"),
    [
        ("ftp://example.com/file", "Only HTTP and HTTPS protocols are allowed"),
        ("file:///etc/passwd", "Only HTTP and HTTPS protocols are allowed"),
        ("javascript:alert(1)", "Only HTTP and HTTPS protocols are allowed"),
        ("not a url", "Only HTTP and HTTPS protocols are allowed"),
        ("http://localhost:3000", "Localhost addresses are not allowed"),
        ("http://api.localhost/", "Localhost addresses are not allowed"),
        ("http://[::1]/", "Localhost addresses are not allowed"),
        ("http://0.0.0.0/", "Localhost addresses are not allowed"),
        ("http://127.0.0.1/admin", "Internal network addresses are not allowed"),
        ("http://10.1.2.3/", "Internal network addresses are not allowed"),
        ("http://172.20.0.5/", "Internal network addresses are not allowed"),
        ("http://192.168.1.1/", "Internal network addresses are not allowed"),
        ("http://169.254.169.254/latest/meta-data", "Internal network addresses are not allowed"),
        ("http://[::ffff:10.0.0.1]/", "Internal network addresses are not allowed"),
        ("http://[fd00::1]/", "Internal network addresses are not allowed"),
        ("http://127.1/", "Internal network addresses are not allowed"),
        ("http://2130706433/", "Internal network addresses are not allowed"),
        ("http://0x7f000001/", "Internal network addresses are not allowed"),
        ("http://0177.0.0.1/", "Internal network addresses are not allowed"),
        ("http://10.1/", "Internal network addresses are not allowed"),
        ("http://0xa9.0xfe.0xa9.0xfe/", "Internal network addresses are not allowed"),
        ("http://192.11010049/", "Internal network addresses are not allowed"),
        ("https://malicious-site.com/", "Domain is blacklisted"),
        ("https://cdn.MALICIOUS-SITE.com/x", "Domain is blacklisted"),
        ("http://example.com:notaport/", "Invalid URL format"),
        ("http:///path-only", "Invalid URL format"),
    ],
)
def test_unsafe_urls_rejected(url: str, message: str) -> None:
    validator = UrlSafetyValidator()
    with pytest.raises(UnsafeUrlError) as excinfo:
        validator.validate(url)
    assert excinfo.value.public_message == message
    assert excinfo.value.status_code == 400
    assert not validator.is_safe(url)


def test_172_outside_private_range_is_allowed() -> None:
    assert UrlSafetyValidator().is_safe("http://172.32.0.1/")


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("127.1", "127.0.0.1"),
        ("2130706433", "127.0.0.1"),
        ("0x7F000001", "127.0.0.1"),
        ("0177.0.0.1", "127.0.0.1"),
        ("10.1", "10.0.0.1"),
        ("134744072", "8.8.8.8"),
        ("0x", "0.0.0.0"),
        ("example.com", None),
        ("1.2.3.4.5", None),
        ("256.1.1.1", None),
        ("1.2.65536", None),
        ("09.1.1.1", None),
    ],
)
def test_parse_ipv4_host_follows_browser_rules(host: str, expected: str | None) -> None:
    parsed = parse_ipv4_host(host)
    assert (str(parsed) if parsed is not None else None) == expected


def test_numeric_spelling_of_public_address_is_allowed() -> None:
    assert UrlSafetyValidator().is_safe("http://134744072/")


def test_blocklist_does_not_match_lookalike_domains() -> None:
    validator = UrlSafetyValidator()
    assert validator.is_safe("https://notmalicious-site.com/")


def test_extra_domains_extend_the_blocklist() -> None:
    validator = UrlSafetyValidator(extra_domains=["*.Tracker.Example."])
    assert not validator.is_safe("https://tracker.example/")
    assert not validator.is_safe("https://a.tracker.example/")
    assert validator.is_safe("https://example.com/")


def test_load_url_blocklist_from_file(tmp_path: Path) -> None:
    path = tmp_path / "blocklist.json"
    path.write_text(json.dumps({"version": "v7", "domains": ["Evil.test", "", "*.phish.test"]}), "utf-8")

    blocklist = load_url_blocklist(path)

    assert blocklist.version == "v7"
    assert blocklist.domains == ("evil.test", "phish.test")
    assert blocklist.matches("login.phish.test")


def test_missing_blocklist_falls_back_to_defaults(tmp_path: Path) -> None:
    blocklist = cached_url_blocklist(str(tmp_path / "absent.json"))
    assert blocklist.version == "builtin"
    assert blocklist.domains == DEFAULT_BLOCKED_DOMAINS


def test_build_validator_uses_file_domains(tmp_path: Path) -> None:
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"version": "1", "domains": ["blocked.example"]}), "utf-8")

    validator = build_validator(path)

    assert validator.blocklist.version == "1"
    assert not validator.is_safe("https://www.blocked.example/")
    assert validator.is_safe("https://malicious-site.com/")
