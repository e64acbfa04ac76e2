"""DNS-pinned HTTP fetcher with SSRF and body-size protections."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import unquote, urlsplit, urlunsplit

import requests

from core.config import ImportConfig
from core.errors import (
    ImportFailure,
    UnsafeUrlError,
    UpstreamHttpError,
    UpstreamTimeoutError,
    UpstreamUnreachableError,
)
from core.models import FetchedContent, FetchLog
from fetcher.body import read_text_with_limit
from fetcher.logging import emit_fetch_log
from fetcher.urlsafety import (
    assert_valid_external_url,
    normalized_host,
    parse_ip_literal,
    transport_host,
    validate_ip_address,
)

# (hostname, address family) -> addresses. Empty list when the family has none.
Resolver = Callable[[str, int], list[str]]


@dataclass(frozen=True)
class ResolvedAddresses:
    """DNS answer for one fetch attempt, after per-address validation."""

    valid: bool
    resolved_ip: str | None = None
    all_ips: tuple[str, ...] = field(default_factory=tuple)
    error: str | None = None


def system_resolver(hostname: str, family: int) -> list[str]:
    """Resolve one address family via getaddrinfo; failures yield []."""
    try:
        infos = socket.getaddrinfo(hostname, None, family=family, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError, OSError):
        return []
    addresses: list[str] = []
    for item in infos:
        address = str(item[4][0])
        if address not in addresses:
            addresses.append(address)
    return addresses


def resolve_addresses(hostname: str, resolver: Resolver | None = None) -> ResolvedAddresses:
    """
    Resolve A and AAAA records independently and validate every address.

    - IP literals are validated without any lookup.
    - No addresses at all is not a security failure: the result is valid with
      no pin, and the request fails naturally later.
    - One disallowed address rejects the whole answer.
    """
    literal = parse_ip_literal(hostname)
    if literal is not None:
        result = validate_ip_address(str(literal))
        if not result.valid:
            return ResolvedAddresses(valid=False, error=result.error)
        return ResolvedAddresses(valid=True, resolved_ip=str(literal), all_ips=(str(literal),))

    resolve = resolver or system_resolver
    ipv4 = resolve(hostname, socket.AF_INET)
    ipv6 = resolve(hostname, socket.AF_INET6)
    all_ips = tuple(dict.fromkeys([*ipv4, *ipv6]))

    if not all_ips:
        return ResolvedAddresses(valid=True)

    for ip_text in all_ips:
        result = validate_ip_address(ip_text)
        if not result.valid:
            return ResolvedAddresses(valid=False, all_ips=all_ips, error=result.error)

    preferred = ipv4[0] if ipv4 else ipv6[0]
    # Strip a zone id so the address can be embedded in a URL.
    return ResolvedAddresses(valid=True, resolved_ip=preferred.split("%", 1)[0], all_ips=all_ips)


def _format_host(host: str) -> str:
    """Bracket IPv6 literals for use in a URL netloc or Host header."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


def host_header(url: str) -> str:
    """Original host (and explicit port) for the Host header."""
    parts = urlsplit(url)
    host = _format_host((parts.hostname or "").lower())
    if parts.port is not None:
        return f"{host}:{parts.port}"
    return host


def _rebuild(url: str, host: str) -> str:
    """Scheme, host, port, path and query only; userinfo and fragment are dropped."""
    parts = urlsplit(url)
    netloc = _format_host(host)
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme.lower(), netloc, parts.path, parts.query, ""))


def pin_url(url: str, ip_text: str) -> str:
    """Replace the URL's hostname with a validated IP literal."""
    return _rebuild(url, ip_text)


def canonical_url(url: str) -> str:
    """The URL rebuilt around its validated hostname, for unpinned requests."""
    return _rebuild(url, (urlsplit(url).hostname or "").lower())


def url_credentials(url: str) -> tuple[str, str] | None:
    """Userinfo from the URL, decoded, to send as basic auth instead of in the netloc."""
    parts = urlsplit(url)
    if parts.username is None:
        return None
    return unquote(parts.username), unquote(parts.password or "")


def _require_transport_host(url: str, expected: str) -> None:
    """Refuse to send a request whose connect target is not the validated host."""
    if transport_host(url) != normalized_host(expected):
        raise UnsafeUrlError("Ambiguous URL host")


class PinnedFetcher:
    """
    Fetch a URL while defeating DNS-rebinding TOCTOU attacks.

    DNS is resolved here, every address is validated, and the request goes to
    one validated IP literal with the original Host header, so the transport
    never re-resolves the name between check and use.

    Residual risk: when the pinned request fails with a TLS error (the
    certificate names the host, not the IP), the request is retried once
    against the hostname. The name is re-resolved and re-validated right
    before that retry, which narrows but does not close the rebinding window.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        resolver: Resolver | None = None,
        max_bytes: int = ImportConfig.MAX_RESPONSE_BYTES,
        user_agent: str = ImportConfig.USER_AGENT,
        clock_fn: Callable[[], float] | None = None,
        log_fetches: bool = True,
    ) -> None:
        """Initialize transport, resolver and limits; hooks are for tests."""
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        self.session = session or requests.Session()
        self.resolver = resolver or system_resolver
        self.max_bytes = max_bytes
        self.user_agent = user_agent
        self._clock = clock_fn or time.monotonic
        self.log_fetches = log_fetches

    def _base_headers(self) -> dict[str, str]:
        return {
            "Accept": ImportConfig.ACCEPT_HEADER,
            "User-Agent": self.user_agent,
        }

    def _get(
        self,
        url: str,
        headers: dict[str, str],
        timeout_seconds: float,
        auth: tuple[str, str] | None = None,
    ) -> Any:
        return self.session.get(
            url,
            headers=headers,
            auth=auth,
            timeout=timeout_seconds,
            allow_redirects=False,
            stream=True,
        )

    def _get_mapped(
        self,
        url: str,
        headers: dict[str, str],
        timeout_seconds: float,
        auth: tuple[str, str] | None = None,
    ) -> Any:
        """Issue the request, translating transport errors into import failures."""
        try:
            return self._get(url, headers, timeout_seconds, auth)
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(
                "Request timed out while fetching the file. The server may be slow or unreachable."
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamUnreachableError(f"Error retrieving file: {exc}") from exc

    def fetch(self, url: str, timeout_seconds: float, run_id: str | None = None) -> FetchedContent:
        """
        Fetch `url` and return its decoded, size-capped body.

        Raises:
            UnsafeUrlError: URL or any resolved address is disallowed.
            PayloadTooLargeError: body exceeds `max_bytes`.
            UpstreamHttpError: non-2xx status.
            UpstreamTimeoutError / UpstreamUnreachableError: transport failures.
        """
        start = self._clock()
        fetch_log = FetchLog(url=url, run_id=run_id)
        try:
            content = self._fetch(url, timeout_seconds, start, fetch_log)
            fetch_log.status_code = content.status_code
            fetch_log.bytes_received = content.bytes_received
            return content
        except ImportFailure as exc:
            fetch_log.error_code = exc.code
            fetch_log.error_reason = exc.reason
            raise
        finally:
            fetch_log.latency_ms = int((self._clock() - start) * 1000)
            if self.log_fetches:
                emit_fetch_log(fetch_log)

    def _fetch(
        self,
        url: str,
        timeout_seconds: float,
        start: float,
        fetch_log: FetchLog,
    ) -> FetchedContent:
        url = url.strip()
        assert_valid_external_url(url)
        hostname = (urlsplit(url).hostname or "").lower().rstrip(".")
        auth = url_credentials(url)
        hostname_url = canonical_url(url)
        _require_transport_host(hostname_url, hostname)

        resolved = resolve_addresses(hostname, self.resolver)
        if not resolved.valid:
            raise UnsafeUrlError(resolved.error or "DNS resolution returned a disallowed address")

        headers = self._base_headers()
        target_url = hostname_url
        if resolved.resolved_ip is not None:
            target_url = pin_url(url, resolved.resolved_ip)
            _require_transport_host(target_url, resolved.resolved_ip)
            headers["Host"] = host_header(url)
            fetch_log.pinned_ip = resolved.resolved_ip

        try:
            response = self._get(target_url, headers, timeout_seconds, auth)
        except requests.exceptions.SSLError as exc:
            if resolved.resolved_ip is None:
                raise UpstreamUnreachableError(f"TLS error retrieving file: {exc}") from exc
            recheck = resolve_addresses(hostname, self.resolver)
            if not recheck.valid:
                raise UnsafeUrlError(recheck.error or "DNS resolution returned a disallowed address") from exc
            fetch_log.tls_fallback = True
            target_url = hostname_url
            response = self._get_mapped(hostname_url, self._base_headers(), timeout_seconds, auth)
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(
                "Request timed out while fetching the file. The server may be slow or unreachable."
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamUnreachableError(f"Error retrieving file: {exc}") from exc

        try:
            status_code = int(response.status_code)
            fetch_log.status_code = status_code
            if not 200 <= status_code < 300:
                raise UpstreamHttpError(status_code, url)

            text, bytes_received = read_text_with_limit(
                response,
                self.max_bytes,
                deadline=start + timeout_seconds,
                clock_fn=self._clock,
            )
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(
                "Request timed out while reading the file. The server may be slow or unreachable."
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamUnreachableError(f"Error reading file: {exc}") from exc
        finally:
            close = getattr(response, "close", None)
            if callable(close):
                close()

        return FetchedContent(
            url=url,
            final_url=target_url,
            status_code=status_code,
            text=text,
            bytes_received=bytes_received,
            pinned_ip=None if fetch_log.tls_fallback else resolved.resolved_ip,
            tls_fallback=fetch_log.tls_fallback,
            latency_ms=int((self._clock() - start) * 1000),
        )
