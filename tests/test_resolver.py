from __future__ import annotations

import socket

import pytest
from aiohttp.abc import AbstractResolver

from webhook_service.security.resolver import PinnedResolver, UnsafeAddressError
from webhook_service.security.url_validator import UrlValidator


class StaticResolver(AbstractResolver):
    """Answers every lookup with a fixed address list (a rebinding DNS server, say)."""

    def __init__(self, *addresses: str):
        self.addresses = addresses
        self.closed = False

    async def resolve(self, host, port=0, family=socket.AF_INET):
        return [
            {
                "hostname": host,
                "host": address,
                "port": port,
                "family": family,
                "proto": 0,
                "flags": socket.AI_NUMERICHOST,
            }
            for address in self.addresses
        ]

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_public_addresses_pass_through():
    resolver = PinnedResolver(UrlValidator(), StaticResolver("8.8.8.8", "1.1.1.1"))
    infos = await resolver.resolve("hooks.example.com", 443)
    assert [info["host"] for info in infos] == ["8.8.8.8", "1.1.1.1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("address", ["127.0.0.1", "10.0.0.7", "169.254.169.254", "::1", "fd00::5"])
async def test_rebinding_to_internal_address_is_refused(address):
    resolver = PinnedResolver(UrlValidator(), StaticResolver(address))
    with pytest.raises(UnsafeAddressError) as exc_info:
        await resolver.resolve("rebind.example.com", 443)
    assert exc_info.value.host == "rebind.example.com"
    assert exc_info.value.address == address


@pytest.mark.asyncio
async def test_one_unsafe_answer_poisons_the_whole_lookup():
    resolver = PinnedResolver(UrlValidator(), StaticResolver("8.8.8.8", "192.168.0.10"))
    with pytest.raises(UnsafeAddressError):
        await resolver.resolve("mixed.example.com", 80)


def test_unsafe_address_error_is_an_os_error():
    assert isinstance(UnsafeAddressError("h", "10.0.0.1", "private"), OSError)


@pytest.mark.asyncio
async def test_close_delegates():
    inner = StaticResolver("8.8.8.8")
    await PinnedResolver(UrlValidator(), inner).close()
    assert inner.closed
