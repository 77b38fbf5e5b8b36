# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Destination Guard — SSRF-safe navigation policy.

Two enforcement points share one policy object:

1. Admission: ``DestinationStage`` checks the ``url`` field of every request
   body before any browser resource is touched.
2. Network layer: ``install_egress_guard()`` routes every request made by a
   browsing context (redirects, iframes, sub-resources) through the same check.

Evaluation order is fixed:

- internal addresses (loopback, cloud metadata, RFC 1918, link-local, ULA) are
  always rejected, whatever the lists say
- deny-list match (exact host or subdomain) is rejected
- when an allow-list is configured, only matching hosts pass
- anything that is not http/https is rejected

IP literals are parsed the way a browser parses them, so short, octal, hex
and decimal spellings of 127.0.0.1 cannot slip through. Admission checks
also resolve domain hostnames when DNS checking is enabled, which catches
names like ``127.0.0.1.nip.io``; the network-layer guard never resolves.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Route

logger = logging.getLogger(__name__)

ALLOWED_URL_SCHEMES = frozenset({"http", "https"})

INVALID_URL_REASON = "Invalid URL"

# Hostnames that always resolve to something internal.
_BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "ip6-localhost",
        "ip6-loopback",
        "metadata.google.internal",  # GCP metadata
        "metadata.azure.com",
        "instance-data",  # AWS metadata alias
    }
)

_BLOCKED_HOST_SUFFIXES = (".localhost", ".internal")

_CLOUD_METADATA_NETWORKS = (
    ipaddress.ip_network("169.254.0.0/16"),  # AWS/GCP/Azure IMDS
    ipaddress.ip_network("fd00:ec2::/32"),  # AWS IMDS over IPv6
)

_INTERNAL_NETWORKS = (
    ipaddress.ip_network("0.0.0.0/8"),  # "This" network
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # CGNAT
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("198.18.0.0/15"),  # benchmarking
    ipaddress.ip_network("224.0.0.0/4"),  # multicast
    ipaddress.ip_network("240.0.0.0/4"),  # reserved
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),  # ULA
    ipaddress.ip_network("fe80::/10"),  # link-local
    ipaddress.ip_network("ff00::/8"),  # multicast
)


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GuardDecision:
    """Outcome of a destination check. ``reason`` is empty when allowed."""

    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


_ALLOW = GuardDecision(allowed=True)


# ---------------------------------------------------------------------------
# IP helpers
# ---------------------------------------------------------------------------


def _parse_ipv4_number(part: str) -> int | None:
    """One dotted part: ``0x`` prefix is hex, a leading ``0`` is octal, else decimal."""
    if not part:
        return None
    if part[:2] in ("0x", "0X"):
        digits, base = part[2:], 16
    elif len(part) > 1 and part.startswith("0"):
        digits, base = part[1:], 8
    else:
        digits, base = part, 10
    if not digits:
        return 0
    try:
        return int(digits, base) if digits.isascii() and digits.isalnum() else None
    except ValueError:
        return None


def _ends_in_number(hostname: str) -> bool:
    """True when a browser would parse *hostname* as an IPv4 address."""
    last = hostname.split(".")[-1]
    return bool(last) and ((last.isascii() and last.isdigit()) or _parse_ipv4_number(last) is not None)


def _normalize_ip(hostname: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse *hostname* as an IP address the way a browser does.

    IPv4 may use one to four parts, each decimal, octal or hex, with the last
    part filling the remaining bytes: ``127.1``, ``0x7f.1``, ``2130706433``
    and ``0177.0.0.01`` all mean 127.0.0.1. Returns None when *hostname* is
    not an IP literal. Pure arithmetic, no DNS.

    Raises:
        ValueError: *hostname* ends in a number but is not a valid IPv4 address.
    """
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        pass
    if not _ends_in_number(hostname):
        return None

    parts = hostname.split(".")
    if len(parts) > 4:
        raise ValueError(f"Too many IPv4 parts in {hostname!r}")
    numbers = [_parse_ipv4_number(p) for p in parts]
    if any(n is None for n in numbers):
        raise ValueError(f"Invalid IPv4 part in {hostname!r}")
    *leading, last = numbers
    if any(n > 255 for n in leading) or last >= 256 ** (5 - len(numbers)):
        raise ValueError(f"IPv4 part out of range in {hostname!r}")
    value = last
    for i, n in enumerate(leading):
        value += n << (8 * (3 - i))
    return ipaddress.IPv4Address(value)


def _internal_ip_reason(addr: ipaddress.IPv4Address | ipaddress.IPv6Address, hostname: str) -> str | None:
    # IPv4-mapped IPv6 (::ffff:127.0.0.1) is judged by its embedded IPv4 address
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if any(addr in net for net in _CLOUD_METADATA_NETWORKS):
        return f"Blocked: cloud metadata address {hostname}"
    if any(addr in net for net in _INTERNAL_NETWORKS):
        return f"Blocked: internal address {hostname}"
    return None


def _host_matches(hostname: str, domain: str) -> bool:
    """Exact host or subdomain match (``a.example.com`` matches ``example.com``)."""
    return hostname == domain or hostname.endswith(f".{domain}")


def _normalize_domains(domains: Iterable[str]) -> tuple[str, ...]:
    cleaned = []
    for raw in domains:
        d = raw.strip().lower().rstrip(".")
        if d.startswith("*."):
            d = d[2:]
        if d:
            cleaned.append(d)
    return tuple(cleaned)


# ── DNS rebinding defense ────────────────────────────────────────────

DNS_RESOLVE_TIMEOUT_SECONDS = 2.0


async def _resolve_dns(hostname: str) -> list[str]:
    """Resolve hostname to deduplicated IP address list.

    Raises ValueError on DNS failure or timeout.
    """

    def _sync_resolve() -> list[str]:
        results = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
        seen: set[str] = set()
        ips: list[str] = []
        for _family, _type, _proto, _canonname, sockaddr in results:
            ip = sockaddr[0]
            if ip not in seen:
                seen.add(ip)
                ips.append(ip)
        return ips

    try:
        async with asyncio.timeout(DNS_RESOLVE_TIMEOUT_SECONDS):
            return await asyncio.to_thread(_sync_resolve)
    except TimeoutError as e:
        raise ValueError(f"DNS resolution timed out for {hostname}") from e
    except socket.gaierror as e:
        raise ValueError(f"DNS resolution failed for {hostname}: {e}") from e


def _resolved_ip_reason(ips: list[str], hostname: str) -> str | None:
    """Reason to block when any resolved address is internal or non-global, else None."""
    if not ips:
        return f"DNS resolution returned no addresses for {hostname}"
    for ip_str in ips:
        try:
            addr = ipaddress.ip_address(ip_str.split("%", 1)[0])
        except ValueError:
            return f"Invalid address {ip_str} resolved from {hostname}"
        if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        if any(addr in net for net in _CLOUD_METADATA_NETWORKS):
            return f"DNS rebinding blocked: {hostname} resolved to cloud metadata address {ip_str}"
        if any(addr in net for net in _INTERNAL_NETWORKS) or not addr.is_global:
            return f"DNS rebinding blocked: {hostname} resolved to internal address {ip_str}"
    return None


# ---------------------------------------------------------------------------
# DestinationGuard
# ---------------------------------------------------------------------------


class DestinationGuard:
    """URL policy: internal-address blocking plus allow/deny lists.

    With *resolve_dns* on, ``check_resolved``/``is_allowed_resolved`` also
    resolve domain hostnames and refuse names that point inside.
    """

    def __init__(
        self,
        *,
        allowed_domains: Iterable[str] = (),
        blocked_domains: Iterable[str] = (),
        resolve_dns: bool = False,
    ) -> None:
        self.allowed_domains = _normalize_domains(allowed_domains)
        self.blocked_domains = _normalize_domains(blocked_domains)
        self.resolve_dns = resolve_dns

    def is_allowed(self, url: str) -> GuardDecision:
        """Classify *url* without DNS. Never raises."""
        try:
            parsed = urlsplit(url.strip())
            scheme = parsed.scheme.lower()
            hostname = (parsed.hostname or "").lower().rstrip(".")
            parsed.port  # noqa: B018  raises ValueError on an out-of-range port
        except (ValueError, AttributeError):
            return GuardDecision(False, INVALID_URL_REASON)

        if not scheme or (scheme in ALLOWED_URL_SCHEMES and not hostname):
            return GuardDecision(False, INVALID_URL_REASON)

        # 1. Internal / metadata addresses (always)
        if hostname:
            if hostname in _BLOCKED_HOSTS or hostname.endswith(_BLOCKED_HOST_SUFFIXES):
                return GuardDecision(False, f"Blocked: internal address {hostname}")
            try:
                addr = _normalize_ip(hostname)
            except ValueError:
                return GuardDecision(False, INVALID_URL_REASON)
            if addr is not None:
                reason = _internal_ip_reason(addr, hostname)
                if reason is not None:
                    return GuardDecision(False, reason)

        # 2. Deny-list
        for domain in self.blocked_domains:
            if _host_matches(hostname, domain):
                return GuardDecision(False, f"Domain {hostname} is blocked")

        # 3. Allow-list (only when configured)
        if self.allowed_domains and not any(_host_matches(hostname, d) for d in self.allowed_domains):
            return GuardDecision(False, f"Domain {hostname} not in allowlist")

        # 4. Scheme
        if scheme not in ALLOWED_URL_SCHEMES:
            return GuardDecision(False, f"Protocol {scheme}: not allowed")

        return _ALLOW

    async def is_allowed_resolved(self, url: str) -> GuardDecision:
        """``is_allowed`` plus, when enabled, resolution of domain hostnames.

        A failed lookup blocks the destination. Never raises.
        """
        decision = self.is_allowed(url)
        if not decision.allowed or not self.resolve_dns:
            return decision
        hostname = (urlsplit(url.strip()).hostname or "").lower().rstrip(".")
        if _normalize_ip(hostname) is not None:
            return decision
        try:
            ips = await _resolve_dns(hostname)
        except ValueError as e:
            return GuardDecision(False, str(e))
        reason = _resolved_ip_reason(ips, hostname)
        return GuardDecision(False, reason) if reason is not None else decision

    def check(self, url: str) -> None:
        """Raise ``DestinationBlockedError`` if *url* is not allowed."""
        _raise_if_blocked(url, self.is_allowed(url))

    async def check_resolved(self, url: str) -> None:
        """Like ``check`` but with DNS resolution when enabled."""
        _raise_if_blocked(url, await self.is_allowed_resolved(url))


def _raise_if_blocked(url: str, decision: GuardDecision) -> None:
    if not decision.allowed:
        from .errors import DestinationBlockedError

        raise DestinationBlockedError(url, decision.reason)


# ---------------------------------------------------------------------------
# Network-layer enforcement
# ---------------------------------------------------------------------------


async def install_egress_guard(context: BrowserContext, guard: DestinationGuard) -> None:
    """Route every request of *context* through *guard*.

    Covers navigations, redirects, iframes and sub-resources, so an in-page
    redirect to an internal address is aborted even though the admission
    check only ever saw the public URL. ``about:blank`` passes so pages can
    be reset.
    """

    async def _route_handler(route: Route) -> None:
        request = route.request
        url = request.url
        if url == "about:blank":
            await route.continue_()
            return
        decision = guard.is_allowed(url)
        if decision.allowed:
            await route.continue_()
            return
        logger.warning(
            "Egress blocked: url=%.200s type=%s reason=%s",
            url,
            request.resource_type,
            decision.reason,
        )
        await route.abort("blockedbyclient")

    await context.route("**/*", _route_handler)
    logger.debug("Egress guard installed on browser context")
