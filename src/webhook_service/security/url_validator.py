"""SSRF guard for user-supplied webhook target URLs.

The validator is pure: it never resolves hostnames. It judges the URL from
its syntax alone, optionally together with an address the caller already
resolved and will pin for the actual connection (see
:mod:`webhook_service.security.resolver`). Hostname checks alone do not stop
DNS rebinding, so every connection made by the dispatcher re-checks the
resolved address with :meth:`UrlValidator.check_address` right before the
socket is opened.
"""
from __future__ import annotations

import ipaddress
import re
import socket
from dataclasses import dataclass
from typing import Iterable, Union
from urllib.parse import SplitResult, urlsplit

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

MAX_URL_LENGTH = 2048

ALLOWED_SCHEMES = frozenset({"http", "https"})

# Reason categories, stable strings callers and tests can match on
CATEGORY_PARSE = "parse error"
CATEGORY_PROTOCOL = "protocol not allowed"
CATEGORY_PRIVATE = "private/internal"
CATEGORY_BLOCKED_PATTERN = "blocked pattern"
CATEGORY_BLOCKED_PORT = "blocked port"

LOOPBACK_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"})

METADATA_HOSTNAMES = frozenset(
    {
        "metadata",
        "metadata.google.internal",
        "metadata.google.com",
        "metadata.azure.internal",
        "instance-data",
        "instance-data.ec2.internal",
    }
)

DEFAULT_BLOCKED_HOST_SUFFIXES = (".local", ".internal", ".localhost", ".svc.cluster.local")

DEFAULT_BLOCKED_PORTS = frozenset(
    {
        22,  # SSH
        23,  # Telnet
        25,  # SMTP
        2375,  # Docker API
        2379,  # etcd
        3306,  # MySQL
        5432,  # PostgreSQL
        6379,  # Redis
        9200,  # Elasticsearch
        10250,  # kubelet
        10255,  # kubelet read-only
        11211,  # memcached
        27017,  # MongoDB
    }
)

_LOOPBACK_OR_LINK_LOCAL = (
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
)

_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # carrier-grade NAT
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.0.0.0/24"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("198.18.0.0/15"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fec0::/10"),  # deprecated site-local
)

# Hosts made only of digits, hex prefixes and dots are handed to inet_aton,
# which understands the shorthand forms (127.1, 0x7f.0.0.1, 2130706433)
# that the system resolver would otherwise turn into loopback addresses.
_NUMERIC_HOST_RE = re.compile(r"^[0-9a-fx.]+$", re.IGNORECASE)
_FORBIDDEN_CHARS_RE = re.compile(r"[\s\x00-\x1f\x7f\\]")


@dataclass(frozen=True)
class UrlValidationResult:
    ok: bool
    reason: str | None = None
    category: str | None = None

    @classmethod
    def valid(cls) -> "UrlValidationResult":
        return cls(ok=True)

    @classmethod
    def invalid(cls, category: str, reason: str) -> "UrlValidationResult":
        return cls(ok=False, reason=reason, category=category)


def parse_ip_literal(host: str) -> IPAddress | None:
    """Return the address a host literal denotes, or ``None`` for names."""
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None
    if address is None and _NUMERIC_HOST_RE.match(host) and any(ch.isdigit() for ch in host):
        try:
            address = ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    if isinstance(address, ipaddress.IPv6Address):
        mapped = address.ipv4_mapped
        if mapped is not None:
            return mapped
    return address


def _tunneled_ipv4(address: ipaddress.IPv6Address) -> list[ipaddress.IPv4Address]:
    embedded = []
    if address.sixtofour is not None:
        embedded.append(address.sixtofour)
    if address.teredo is not None:
        embedded.append(address.teredo[1])
    return embedded


def _normalize_suffix(suffix: str) -> str:
    suffix = suffix.strip().lower().lstrip("*")
    if not suffix.startswith("."):
        suffix = "." + suffix
    return suffix


class UrlValidator:
    """Allow/deny decision for a candidate webhook URL.

    Checks run in a fixed order and the first failure wins: parseability,
    scheme allowlist, loopback/link-local, private ranges, cloud metadata
    names, blocked hostname suffixes, blocked ports.
    """

    def __init__(
        self,
        *,
        blocked_host_suffixes: Iterable[str] = DEFAULT_BLOCKED_HOST_SUFFIXES,
        blocked_ports: Iterable[int] = DEFAULT_BLOCKED_PORTS,
    ):
        self._blocked_suffixes = tuple(_normalize_suffix(s) for s in blocked_host_suffixes if s.strip())
        self._blocked_ports = frozenset(int(p) for p in blocked_ports)

    @classmethod
    def from_settings(cls, settings) -> "UrlValidator":
        return cls(
            blocked_host_suffixes=settings.webhook_blocked_host_suffixes or DEFAULT_BLOCKED_HOST_SUFFIXES,
            blocked_ports=settings.webhook_blocked_ports or DEFAULT_BLOCKED_PORTS,
        )

    @property
    def blocked_ports(self) -> frozenset[int]:
        return self._blocked_ports

    def validate(self, url: str, *, resolved_address: str | None = None) -> UrlValidationResult:
        """Judge ``url``; ``resolved_address`` is the pinned IP the caller will dial."""
        if not url or not url.strip():
            return UrlValidationResult.invalid(CATEGORY_PARSE, "URL is empty")
        if len(url) > MAX_URL_LENGTH:
            return UrlValidationResult.invalid(
                CATEGORY_PARSE, f"URL exceeds {MAX_URL_LENGTH} characters"
            )
        if _FORBIDDEN_CHARS_RE.search(url):
            return UrlValidationResult.invalid(
                CATEGORY_PARSE, "URL contains whitespace or control characters"
            )

        try:
            parsed = urlsplit(url)
            port = parsed.port
        except ValueError as exc:
            return UrlValidationResult.invalid(CATEGORY_PARSE, f"Invalid URL format: {exc}")

        scheme = parsed.scheme.lower()
        if not scheme:
            return UrlValidationResult.invalid(CATEGORY_PARSE, "URL has no scheme")
        if scheme not in ALLOWED_SCHEMES:
            return UrlValidationResult.invalid(
                CATEGORY_PROTOCOL,
                f"Protocol '{scheme}' is not allowed. Only HTTP and HTTPS are permitted.",
            )

        host = self._hostname(parsed)
        if not host:
            return UrlValidationResult.invalid(CATEGORY_PARSE, "URL must have a valid hostname")

        result = self._check_host(host)
        if not result.ok:
            return result

        if resolved_address is not None:
            result = self.check_address(resolved_address)
            if not result.ok:
                return UrlValidationResult.invalid(
                    CATEGORY_PRIVATE,
                    f"Hostname '{host}' resolves to a private/internal address: {resolved_address}",
                )

        if port is not None and port in self._blocked_ports:
            return UrlValidationResult.invalid(
                CATEGORY_BLOCKED_PORT, f"Port {port} is a blocked port"
            )

        return UrlValidationResult.valid()

    def check_address(self, address: str | IPAddress) -> UrlValidationResult:
        """Judge a concrete IP address (used for resolved, pinned addresses)."""
        if isinstance(address, str):
            parsed = parse_ip_literal(address.split("%", 1)[0])
            if parsed is None:
                return UrlValidationResult.invalid(CATEGORY_PARSE, f"Not an IP address: {address}")
            address = parsed
        elif isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped

        if isinstance(address, ipaddress.IPv6Address):
            # 6to4 and Teredo addresses route to the IPv4 address they carry
            for embedded in _tunneled_ipv4(address):
                result = self.check_address(embedded)
                if not result.ok:
                    return UrlValidationResult.invalid(
                        result.category or CATEGORY_PRIVATE,
                        f"{address} embeds a blocked IPv4 address: {result.reason}",
                    )

        if any(address in net for net in _LOOPBACK_OR_LINK_LOCAL if net.version == address.version):
            return UrlValidationResult.invalid(
                CATEGORY_PRIVATE,
                f"Loopback/link-local addresses are private/internal and not allowed: {address}",
            )
        if (
            any(address in net for net in _PRIVATE_NETWORKS if net.version == address.version)
            or address.is_multicast
            or address.is_reserved
        ):
            return UrlValidationResult.invalid(
                CATEGORY_PRIVATE, f"Private/internal addresses are not allowed: {address}"
            )
        return UrlValidationResult.valid()

    @staticmethod
    def _hostname(parsed: SplitResult) -> str:
        host = parsed.hostname or ""
        return host.rstrip(".").lower()

    def _check_host(self, host: str) -> UrlValidationResult:
        if host in LOOPBACK_HOSTNAMES:
            return UrlValidationResult.invalid(
                CATEGORY_PRIVATE, f"Hostname '{host}' is a private/internal loopback name"
            )

        address = parse_ip_literal(host)
        if address is not None:
            return self.check_address(address)

        if host in METADATA_HOSTNAMES:
            return UrlValidationResult.invalid(
                CATEGORY_PRIVATE, f"Hostname '{host}' is a private/internal metadata endpoint"
            )

        for suffix in self._blocked_suffixes:
            if host.endswith(suffix) or host == suffix[1:]:
                return UrlValidationResult.invalid(
                    CATEGORY_BLOCKED_PATTERN,
                    f"Hostname '{host}' matches blocked pattern '*{suffix}'",
                )
        return UrlValidationResult.valid()
