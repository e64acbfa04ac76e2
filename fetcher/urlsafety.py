"""
URL safety validation against SSRF.

Pure classification of URLs and IP addresses; nothing in this module touches
the network. DNS resolution lives in fetcher.http so the fetcher can pin the
addresses it validated.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from ipaddress import IPv4Address, IPv6Address, ip_address, ip_network
from urllib.parse import urlparse

from urllib3.exceptions import LocationParseError
from urllib3.util import parse_url

from core.config import ImportConfig
from core.errors import UnsafeUrlError


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of classifying a URL or address."""

    valid: bool
    error: str | None = None


VALID = ValidationResult(valid=True)


@lru_cache(maxsize=1)
def _blocked_networks() -> tuple[list, list]:
    """Build (ipv4, ipv6) blocked network lists from config."""
    v4 = [ip_network(cidr) for cidr in ImportConfig.BLOCKED_IPV4_RANGES]
    v6 = [ip_network(cidr) for cidr in ImportConfig.BLOCKED_IPV6_RANGES]
    return v4, v6


def parse_ip_literal(host: str) -> IPv4Address | IPv6Address | None:
    """Return the address if `host` is an IP literal (brackets allowed)."""
    candidate = host.strip().strip("[]")
    # Drop an IPv6 zone id ("fe80::1%eth0").
    candidate = candidate.split("%", 1)[0]
    try:
        return ip_address(candidate)
    except ValueError:
        return None


def _is_blocked_hostname(hostname: str) -> bool:
    """Exact or subdomain match against the hostname blocklist."""
    for blocked in ImportConfig.BLOCKED_HOSTNAMES:
        if hostname == blocked or hostname.endswith(f".{blocked}"):
            return True
    return any(hostname.endswith(suffix) for suffix in ImportConfig.BLOCKED_HOST_SUFFIXES)


def classify_ip(address: IPv4Address | IPv6Address) -> ValidationResult:
    """Classify one address by range."""
    v4_networks, v6_networks = _blocked_networks()

    if isinstance(address, IPv6Address):
        mapped = address.ipv4_mapped
        if mapped is not None:
            # ::ffff:127.0.0.1 reaches the IPv4 loopback.
            return classify_ip(mapped)
        if any(address in network for network in v6_networks):
            return ValidationResult(False, "Access to private IPv6 addresses not allowed")
        return VALID

    if any(address in network for network in v4_networks):
        return ValidationResult(False, "Access to private IP addresses not allowed")
    return VALID


def validate_ip_address(ip_text: str) -> ValidationResult:
    """Validate a resolved address string (DNS rebinding check)."""
    address = parse_ip_literal(ip_text)
    if address is None:
        return ValidationResult(False, f"Resolver returned a non-IP value: {ip_text!r}")
    if str(address) in ImportConfig.BLOCKED_HOSTNAMES:
        return ValidationResult(False, "DNS resolved to a blocked IP address")
    result = classify_ip(address)
    if not result.valid:
        return ValidationResult(
            False,
            "DNS resolved to a private address (possible DNS rebinding attack)",
        )
    return VALID


def transport_host(url: str) -> str:
    """Hostname as urllib3 (and so requests) will connect to it."""
    host = parse_url(url).host or ""
    return host.strip("[]").lower().rstrip(".")


def normalized_host(hostname: str) -> str:
    """Run a urllib.parse hostname through urllib3's host normalization."""
    netloc = f"[{hostname}]" if ":" in hostname else hostname
    return transport_host(f"http://{netloc}/")


def validate_external_url(url: str) -> ValidationResult:
    """
    Validate that a URL is safe for server-side fetching.

    Rules, in order:
    1. no backslashes, whitespace or control characters
    2. URL must parse; http/https only; a hostname is required
    3. urllib.parse and urllib3 must agree on the hostname
    4. hostname blocklist (loopback names, cloud metadata, *.localhost, *.local)
    5. IP-literal hostnames classified by range
    """
    url = url.strip()
    if any(char == "\\" or ord(char) <= 0x20 or ord(char) == 0x7F for char in url):
        return ValidationResult(False, "Invalid URL")

    try:
        parsed = urlparse(url)
        # Accessing .port raises ValueError on a malformed port.
        _ = parsed.port
        hostname = (parsed.hostname or "").lower()
    except (ValueError, AttributeError):
        return ValidationResult(False, "Invalid URL")

    if parsed.scheme.lower() not in ImportConfig.ALLOWED_PROTOCOLS:
        return ValidationResult(False, "Only HTTP and HTTPS protocols are allowed")

    if not hostname:
        return ValidationResult(False, "Invalid URL")

    hostname = hostname.rstrip(".")
    try:
        agree = transport_host(url) == normalized_host(hostname)
    except LocationParseError:
        return ValidationResult(False, "Invalid URL")
    if not agree:
        return ValidationResult(False, "Ambiguous URL host")

    if _is_blocked_hostname(hostname):
        return ValidationResult(False, "Access to local or cloud metadata hosts not allowed")

    address = parse_ip_literal(hostname)
    if address is not None:
        return classify_ip(address)

    return VALID


def assert_valid_external_url(url: str) -> None:
    """Raise UnsafeUrlError when `url` is not fetch-safe."""
    result = validate_external_url(url)
    if not result.valid:
        raise UnsafeUrlError(result.error or "URL not allowed")
