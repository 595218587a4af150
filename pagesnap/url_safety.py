"""Capture-target validation that keeps the renderer away from internal hosts."""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable
from urllib.parse import urlsplit

from pagesnap.errors import UnsafeUrlError

LOGGER = logging.getLogger(__name__)

DEFAULT_BLOCKED_DOMAINS: tuple[str, ...] = (
    "malicious-site.com",
    "badsite.example",
    "scam.test",
)

_ALLOWED_SCHEMES = frozenset({"http", "https"})
_LOCALHOST_NAMES = frozenset({"localhost", "0.0.0.0", "::", "::1", "0:0:0:0:0:0:0:1"})
_DECIMAL_DIGITS = frozenset("0123456789")
_OCTAL_DIGITS = frozenset("01234567")
_HEX_DIGITS = frozenset("0123456789abcdef")
_BLOCKED_V4_NETWORKS = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "0.0.0.0/8",
    )
)


@dataclass(frozen=True)
class UrlBlocklist:
    """Domains that may never be captured, with the source file version."""

    version: str
    domains: tuple[str, ...]

    def matches(self, host: str) -> bool:
        """True when ``host`` is a blocked domain or any subdomain of one."""

        host = host.lower().rstrip(".")
        return any(host == domain or host.endswith("." + domain) for domain in self.domains)


def load_url_blocklist(path: Path) -> UrlBlocklist:
    """Parse the JSON blocklist file (``{"version": ..., "domains": [...]}``)."""

    data = json.loads(path.read_text("utf-8"))
    domains = tuple(_normalize_domain(entry) for entry in data.get("domains", []) if entry)
    return UrlBlocklist(version=str(data.get("version", "unknown")), domains=domains)


@lru_cache(maxsize=4)
def cached_url_blocklist(path: str) -> UrlBlocklist:
    """Memoized loader; falls back to the built-in list when the file is absent."""

    candidate = Path(path)
    if not candidate.is_file():
        LOGGER.debug("URL blocklist %s not found; using built-in defaults", candidate)
        return UrlBlocklist(version="builtin", domains=DEFAULT_BLOCKED_DOMAINS)
    return load_url_blocklist(candidate)


class UrlSafetyValidator:
    """Rejects capture targets that could turn the service into an SSRF proxy."""

    def __init__(self, blocklist: UrlBlocklist | None = None, *, extra_domains: Iterable[str] = ()) -> None:
        base = blocklist or UrlBlocklist(version="builtin", domains=DEFAULT_BLOCKED_DOMAINS)
        extra = tuple(_normalize_domain(domain) for domain in extra_domains)
        self.blocklist = UrlBlocklist(version=base.version, domains=base.domains + extra)

    def validate(self, url: str) -> str:
        """Return ``url`` unchanged when it is safe to capture."""

        try:
            parts = urlsplit(url.strip())
            hostname = parts.hostname
            parts.port  # noqa: B018 - raises ValueError on a malformed port
        except (AttributeError, ValueError):
            raise UnsafeUrlError("Invalid URL format") from None

        if parts.scheme.lower() not in _ALLOWED_SCHEMES:
            raise UnsafeUrlError("Only HTTP and HTTPS protocols are allowed")
        if not hostname:
            raise UnsafeUrlError("Invalid URL format")

        host = hostname.lower().rstrip(".")
        if host in _LOCALHOST_NAMES or host.endswith(".localhost"):
            raise UnsafeUrlError("Localhost addresses are not allowed")
        if _is_internal_address(host):
            raise UnsafeUrlError("Internal network addresses are not allowed")
        if self.blocklist.matches(host):
            raise UnsafeUrlError("Domain is blacklisted")
        return url

    def is_safe(self, url: str) -> bool:
        try:
            self.validate(url)
        except UnsafeUrlError:
            return False
        return True


def build_validator(blocklist_path: Path | str) -> UrlSafetyValidator:
    return UrlSafetyValidator(cached_url_blocklist(str(blocklist_path)))


def _is_internal_address(host: str) -> bool:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = parse_ipv4_host(host)
        if address is None:
            return False
    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            return _is_internal_address(str(address.ipv4_mapped))
        return (
            address.is_loopback
            or address.is_unspecified
            or address.is_link_local
            or address.is_private
        )
    return any(address in network for network in _BLOCKED_V4_NETWORKS)


def parse_ipv4_host(host: str) -> ipaddress.IPv4Address | None:
    """Read ``host`` the way browsers do, so ``127.1`` and ``0x7f000001`` are loopback.

    One to four dot-separated parts, each decimal, ``0x`` hex or ``0``-prefixed
    octal; the last part fills every remaining byte. Returns None when
    ``host`` is a domain name rather than a numeric address.
    """

    parts = host.split(".")
    if len(parts) > 4:
        return None
    numbers = []
    for part in parts:
        number = _parse_ipv4_number(part)
        if number is None:
            return None
        numbers.append(number)
    if any(number > 255 for number in numbers[:-1]):
        return None
    if numbers[-1] >= 256 ** (5 - len(numbers)):
        return None
    value = numbers[-1]
    for index, number in enumerate(numbers[:-1]):
        value += number * 256 ** (3 - index)
    return ipaddress.IPv4Address(value)


def _parse_ipv4_number(part: str) -> int | None:
    if not part:
        return None
    digits, base, alphabet = part, 10, _DECIMAL_DIGITS
    if part[:2].lower() == "0x":
        digits, base, alphabet = part[2:], 16, _HEX_DIGITS
    elif len(part) > 1 and part[0] == "0":
        digits, base, alphabet = part[1:], 8, _OCTAL_DIGITS
    if not digits:
        return 0
    if any(char not in alphabet for char in digits.lower()):
        return None
    return int(digits, base)


def _normalize_domain(domain: str) -> str:
    return domain.strip().lower().lstrip("*.").rstrip(".")
