"""aiohttp resolver that refuses to hand out unsafe addresses.

The connector dials exactly the addresses returned here, so validating them
at this point pins the checked IP to the connected IP and closes the DNS
rebinding window between URL validation and socket connect.
"""
from __future__ import annotations

import socket
from typing import Any

import structlog
from aiohttp.abc import AbstractResolver
from aiohttp.resolver import DefaultResolver

from webhook_service.security.url_validator import UrlValidator

logger = structlog.get_logger(__name__)


class UnsafeAddressError(OSError):
    """A hostname resolved to an address rejected by the safety policy."""

    def __init__(self, host: str, address: str, reason: str):
        super().__init__(f"{host} resolved to blocked address {address}: {reason}")
        self.host = host
        self.address = address
        self.reason = reason


class PinnedResolver(AbstractResolver):
    def __init__(self, validator: UrlValidator, resolver: AbstractResolver | None = None):
        self._validator = validator
        self._resolver = resolver or DefaultResolver()

    async def resolve(
        self, host: str, port: int = 0, family: socket.AddressFamily = socket.AF_INET
    ) -> list[dict[str, Any]]:
        infos = await self._resolver.resolve(host, port, family)
        for info in infos:
            result = self._validator.check_address(info["host"])
            if not result.ok:
                logger.warning("webhook target resolved to blocked address", host=host, address=info["host"])
                raise UnsafeAddressError(host, info["host"], result.reason or "blocked")
        return infos

    async def close(self) -> None:
        await self._resolver.close()
