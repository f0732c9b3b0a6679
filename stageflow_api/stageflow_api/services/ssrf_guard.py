"""SSRF guard for tenant-supplied webhook URLs.

A URL is allowed only when its scheme is HTTP(S) and every address its
hostname resolves to is publicly routable.  Loopback, private,
link-local (including the cloud metadata endpoint), carrier-grade NAT,
multicast, reserved and unspecified ranges are rejected, as are
IPv4-mapped IPv6 forms of any of those.  A hostname that cannot be
resolved is rejected.

The guard checks addresses at validation time only.  The HTTP client
resolves the name again when it connects, so a DNS answer that changes
in between (rebinding) is not covered here.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import urllib.parse
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Resolver = Callable[[str, int], Awaitable[list[str]]]

_RESOLVE_TIMEOUT_SECONDS = 5.0

_ALLOWED_SCHEMES: frozenset[str] = frozenset({"http", "https"})

_BLOCKED_HOSTNAMES: frozenset[str] = frozenset(
    {
        "localhost",
        "0.0.0.0",
        "metadata",
        "metadata.google.internal",
        "169.254.169.254",
    }
)

_BLOCKED_HOST_SUFFIXES: tuple[str, ...] = (".localhost", ".local", ".internal")

# Ranges blocked in addition to what the ``ipaddress`` flags already cover.
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.0.0.0/24"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("198.18.0.0/15"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


@dataclass(frozen=True)
class SSRFVerdict:
    """Result of :meth:`SSRFGuard.validate`."""

    allowed: bool
    reason: str | None = None


_ALLOWED = SSRFVerdict(allowed=True)


def _deny(reason: str) -> SSRFVerdict:
    return SSRFVerdict(allowed=False, reason=reason)


def is_blocked_address(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    """Return ``True`` if *ip* is not a publicly routable unicast address."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return is_blocked_address(ip.ipv4_mapped)

    if (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or not ip.is_global
    ):
        return True
    return any(ip in network for network in _BLOCKED_NETWORKS if network.version == ip.version)


def _hostname_verdict(hostname: str) -> SSRFVerdict | None:
    """Name-based checks.  Returns a denial, or ``None`` to continue."""
    if ".." in hostname:
        return _deny("Malformed hostname")
    if hostname in _BLOCKED_HOSTNAMES or hostname.endswith(_BLOCKED_HOST_SUFFIXES):
        return _deny("Internal hostnames are not allowed")
    return None


async def _default_resolver(hostname: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    return [sockaddr[0] for _family, _type, _proto, _canonname, sockaddr in infos]


class SSRFGuard:
    """Allow/deny gate for outbound webhook URLs.

    Parameters
    ----------
    allow_http:
        Permit plain ``http://`` targets.  Only for development.
    resolver:
        Async callable ``(hostname, port) -> [address, ...]``.  Defaults to
        the event loop's ``getaddrinfo``.
    resolve_timeout:
        Upper bound in seconds on name resolution.
    """

    def __init__(
        self,
        *,
        allow_http: bool = False,
        resolver: Resolver | None = None,
        resolve_timeout: float = _RESOLVE_TIMEOUT_SECONDS,
    ) -> None:
        self._allow_http = allow_http
        self._resolver = resolver or _default_resolver
        self._resolve_timeout = resolve_timeout

    async def validate(self, url: str) -> SSRFVerdict:
        """Decide whether *url* may be used as a delivery target."""
        try:
            parsed = urllib.parse.urlsplit(url.strip())
            port = parsed.port
        except ValueError:
            return _deny("Malformed URL")

        scheme = parsed.scheme.lower()
        if scheme not in _ALLOWED_SCHEMES:
            return _deny(f"Unsupported URL scheme: {scheme or 'none'}")
        if scheme == "http" and not self._allow_http:
            return _deny("Webhook URL must use HTTPS")

        if parsed.username is not None or parsed.password is not None:
            return _deny("Credentials in webhook URLs are not allowed")

        hostname = (parsed.hostname or "").rstrip(".")
        if not hostname:
            return _deny("Webhook URL has no hostname")

        # Re-check the percent-decoded form so that encoded names cannot
        # slip past the name checks.
        decoded = urllib.parse.unquote(hostname).lower()
        for candidate in {hostname, decoded}:
            verdict = _hostname_verdict(candidate)
            if verdict is not None:
                return verdict
        if decoded != hostname:
            return _deny("Encoded hostnames are not allowed")

        try:
            literal = ipaddress.ip_address(hostname)
        except ValueError:
            literal = None

        if literal is not None:
            if is_blocked_address(literal):
                return _deny(f"Address {literal} is not publicly routable")
            return _ALLOWED

        return await self._validate_resolved(hostname, port or (443 if scheme == "https" else 80))

    async def _validate_resolved(self, hostname: str, port: int) -> SSRFVerdict:
        try:
            addresses = await asyncio.wait_for(self._resolver(hostname, port), timeout=self._resolve_timeout)
        except (OSError, TimeoutError) as exc:
            logger.info("Could not resolve webhook hostname %s: %s", hostname, exc)
            return _deny("Hostname could not be resolved")

        if not addresses:
            return _deny("Hostname could not be resolved")

        for raw in addresses:
            try:
                ip = ipaddress.ip_address(raw.split("%", 1)[0])
            except ValueError:
                return _deny("Hostname resolved to an invalid address")
            if is_blocked_address(ip):
                return _deny(f"Hostname resolves to non-public address {ip}")
        return _ALLOWED
