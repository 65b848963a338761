from __future__ import annotations

import ipaddress
import socket
from urllib.parse import urlsplit

import anyio
from loguru import logger

from app.config import PROXY_ALLOW_PRIVATE, PROXY_RESOLVE_DNS
from app.utils.logger import redact_url
from .errors import BlockedTargetError

_ALLOWED_SCHEMES = ("http", "https")
_LOCAL_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _parse_ip(host: str) -> IPAddress | None:
    """
    Parse an IP literal, including legacy IPv4 spellings (``127.1``,
    ``0x7f.0.0.1``, ``2130706433``) that resolvers still honour.
    """
    candidate = host.strip("[]")
    try:
        return ipaddress.ip_address(candidate)
    except ValueError:
        pass
    if ":" in candidate:
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(candidate))
    except OSError:
        return None


def _is_disallowed(addr: IPAddress) -> bool:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_unspecified
        or addr.is_reserved
        or addr.is_multicast
    )


def _reject(url: str, reason: str, *, status_code: int = 403) -> BlockedTargetError:
    logger.warning("SECURITY: blocked proxy target {} ({})", redact_url(url), reason)
    return BlockedTargetError(reason, status_code=status_code)


def check_target(url: str, *, allow_private: bool = PROXY_ALLOW_PRIVATE) -> str:
    """
    Static validation of a proxy target. Returns the hostname.

    Raises:
        BlockedTargetError: 400 for unusable URLs, 403 for loopback,
            link-local, private and otherwise non-public destinations.
    """
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise _reject(url, "malformed url", status_code=400) from exc
    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        raise _reject(url, f"scheme {parts.scheme or '(none)'!r} not allowed", status_code=400)
    host = (parts.hostname or "").rstrip(".").lower()
    if not host:
        raise _reject(url, "missing host", status_code=400)
    if allow_private:
        return host
    if host in _LOCAL_HOSTNAMES or host.endswith(".localhost"):
        raise _reject(url, "local hostname")
    addr = _parse_ip(host)
    if addr is not None and _is_disallowed(addr):
        raise _reject(url, f"non-public address {addr}")
    return host


async def ensure_public_target(
    url: str,
    *,
    allow_private: bool = PROXY_ALLOW_PRIVATE,
    resolve_dns: bool = PROXY_RESOLVE_DNS,
) -> None:
    """
    Reject ``url`` before any outbound request when it points at a
    non-public destination. With ``resolve_dns`` the hostname's addresses
    are checked too; an unresolvable host is rejected.
    """
    host = check_target(url, allow_private=allow_private)
    if allow_private or not resolve_dns or _parse_ip(host) is not None:
        return
    try:
        infos = await anyio.getaddrinfo(host, None)
    except (OSError, UnicodeError) as exc:
        raise _reject(url, f"unresolvable host: {exc}") from exc
    for _family, _type, _proto, _canon, sockaddr in infos:
        addr = _parse_ip(str(sockaddr[0]))
        if addr is not None and _is_disallowed(addr):
            raise _reject(url, f"host resolves to non-public address {addr}")
