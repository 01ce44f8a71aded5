from __future__ import annotations

import asyncio
import hmac
import socket
from hashlib import sha256

import pytest
from aiohttp import web
from aiohttp.resolver import ThreadedResolver

from webhook_service.dispatcher import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    Dispatcher,
    sign_payload,
)
from webhook_service.security.resolver import PinnedResolver
from webhook_service.security.url_validator import UrlValidator

from tests.utils import AllowLoopbackValidator, make_config, make_delivery, run_receiver


class Receiver:
    """Local webhook receiver recording every request it gets."""

    def __init__(self):
        self.requests: list[tuple[str, dict[str, str], bytes]] = []
        self.app = web.Application()
        self.app.router.add_route("*", "/{tail:.*}", self.handle)
        self.responses: dict[str, dict] = {}
        self.delay = 0.0

    async def handle(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((request.path, dict(request.headers), await request.read()))
        if self.delay:
            await asyncio.sleep(self.delay)
        kwargs = self.responses.get(request.path, {"status": 200, "text": "ok"})
        return web.Response(**kwargs)


@pytest.fixture
async def receiver():
    rcv = Receiver()
    async with run_receiver(rcv.app) as base_url:
        rcv.base_url = base_url
        yield rcv


def test_sign_payload_is_hex_hmac_sha256():
    body = b'{"event":"RUN_COMPLETED"}'
    assert sign_payload("s3cret", body) == hmac.new(b"s3cret", body, sha256).hexdigest()


@pytest.mark.asyncio
async def test_successful_attempt_sends_signed_request(receiver):
    config = make_config(url=f"{receiver.base_url}/hook", secret="s3cret", headers={"X-Team": "qa"})
    delivery = make_delivery(config)

    async with Dispatcher(UrlValidator()) as dispatcher:
        outcome = await dispatcher.attempt(delivery, config)

    assert outcome.status_code == 200
    assert outcome.body == "ok"
    assert outcome.error is None
    assert outcome.blocked_reason is None

    path, headers, body = receiver.requests[0]
    assert path == "/hook"
    assert body == delivery.payload.encode("utf-8")
    assert headers["Content-Type"] == "application/json"
    assert headers["User-Agent"].startswith("webhook-service/")
    assert headers[EVENT_HEADER] == "RUN_COMPLETED"
    assert headers[DELIVERY_ID_HEADER] == str(delivery.id)
    assert headers["X-Team"] == "qa"
    expected = hmac.new(b"s3cret", body, sha256).hexdigest()
    assert hmac.compare_digest(headers["X-Signature"], expected)


@pytest.mark.asyncio
async def test_no_signature_without_secret(receiver):
    config = make_config(url=f"{receiver.base_url}/hook")
    async with Dispatcher(UrlValidator(), signature_header="X-Hub-Signature") as dispatcher:
        await dispatcher.attempt(make_delivery(config), config)
    _, headers, _ = receiver.requests[0]
    assert "X-Hub-Signature" not in headers
    assert "X-Signature" not in headers


@pytest.mark.asyncio
async def test_error_status_is_captured(receiver):
    receiver.responses["/hook"] = dict(status=503, text="maintenance")
    config = make_config(url=f"{receiver.base_url}/hook")
    async with Dispatcher(UrlValidator()) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)
    assert outcome.status_code == 503
    assert outcome.body == "maintenance"


@pytest.mark.asyncio
async def test_response_body_is_capped(receiver):
    receiver.responses["/hook"] = dict(status=500, text="x" * 50_000)
    config = make_config(url=f"{receiver.base_url}/hook")
    async with Dispatcher(UrlValidator(), body_limit=100) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)
    assert outcome.status_code == 500
    assert outcome.body == "x" * 100


@pytest.mark.asyncio
async def test_timeout_is_reported_as_error(receiver):
    receiver.delay = 1.0
    config = make_config(url=f"{receiver.base_url}/slow")
    async with Dispatcher(UrlValidator(), timeout_seconds=0.2) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)
    assert outcome.status_code is None
    assert outcome.error == "timeout after 0.2s"
    assert outcome.blocked_reason is None


@pytest.mark.asyncio
async def test_connection_refused_is_reported_as_error():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    config = make_config(url=f"http://127.0.0.1:{port}/hook")
    async with Dispatcher(UrlValidator()) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)
    assert outcome.status_code is None
    assert outcome.error
    assert outcome.blocked_reason is None


@pytest.mark.asyncio
async def test_redirect_to_internal_target_is_not_followed(receiver):
    receiver.responses["/hook"] = dict(
        status=307, headers={"Location": f"{receiver.base_url}/internal"}
    )
    config = make_config(url=f"{receiver.base_url}/hook")
    async with Dispatcher(UrlValidator()) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)

    assert outcome.blocked_reason is not None
    assert "redirect" in outcome.blocked_reason
    assert [path for path, _, _ in receiver.requests] == ["/hook"]


@pytest.mark.asyncio
async def test_allowed_redirect_is_followed_with_same_body(receiver):
    receiver.responses["/hook"] = dict(status=308, headers={"Location": "/final"})
    receiver.responses["/final"] = dict(status=200, text="done")
    config = make_config(url=f"{receiver.base_url}/hook", headers={"X-Team": "qa"}, secret="k")
    delivery = make_delivery(config)

    async with Dispatcher(AllowLoopbackValidator()) as dispatcher:
        outcome = await dispatcher.attempt(delivery, config)

    assert outcome.status_code == 200
    assert outcome.body == "done"
    path, headers, body = receiver.requests[1]
    assert path == "/final"
    assert body == delivery.payload.encode("utf-8")
    assert headers["X-Team"] == "qa"


@pytest.mark.asyncio
async def test_cross_origin_redirect_drops_custom_headers(receiver):
    other = Receiver()
    async with run_receiver(other.app) as other_url:
        receiver.responses["/hook"] = dict(status=307, headers={"Location": f"{other_url}/moved"})
        config = make_config(
            url=f"{receiver.base_url}/hook", headers={"Authorization": "Bearer t"}, secret="k"
        )
        async with Dispatcher(AllowLoopbackValidator()) as dispatcher:
            outcome = await dispatcher.attempt(make_delivery(config), config)

    assert outcome.status_code == 200
    _, headers, _ = other.requests[0]
    assert "Authorization" not in headers
    assert "X-Signature" in headers


@pytest.mark.asyncio
async def test_non_preserving_redirect_is_returned_as_is(receiver):
    receiver.responses["/hook"] = dict(status=302, headers={"Location": "/elsewhere"})
    config = make_config(url=f"{receiver.base_url}/hook")
    async with Dispatcher(AllowLoopbackValidator()) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)
    assert outcome.status_code == 302
    assert len(receiver.requests) == 1


@pytest.mark.asyncio
async def test_redirect_loop_is_bounded(receiver):
    receiver.responses["/loop"] = dict(status=307, headers={"Location": "/loop"})
    config = make_config(url=f"{receiver.base_url}/loop")
    async with Dispatcher(AllowLoopbackValidator(), max_redirects=2) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)
    assert outcome.error is not None
    assert "too many redirects" in outcome.error
    assert len(receiver.requests) == 3


@pytest.mark.asyncio
async def test_hostname_resolving_to_loopback_is_blocked_at_connect(receiver):
    port = receiver.base_url.rsplit(":", 1)[1]
    config = make_config(url=f"http://localhost:{port}/hook")
    validator = UrlValidator()
    resolver = PinnedResolver(validator, ThreadedResolver())

    async with Dispatcher(validator, resolver=resolver) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)

    assert outcome.status_code is None
    assert outcome.blocked_reason is not None
    assert "localhost" in outcome.blocked_reason
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_timeout_covers_the_whole_redirect_chain(receiver):
    # Each hop alone fits in the timeout, the chain does not
    receiver.delay = 0.3
    receiver.responses["/hook"] = dict(status=307, headers={"Location": "/final"})
    config = make_config(url=f"{receiver.base_url}/hook")
    async with Dispatcher(AllowLoopbackValidator(), timeout_seconds=0.5) as dispatcher:
        outcome = await dispatcher.attempt(make_delivery(config), config)

    assert outcome.status_code is None
    assert outcome.error == "timeout after 0.5s"
    assert [path for path, _, _ in receiver.requests] == ["/hook", "/final"]


@pytest.mark.asyncio
async def test_unencodable_payload_is_a_permanent_error(receiver):
    config = make_config(url=f"{receiver.base_url}/hook", secret="k")
    delivery = make_delivery(config).model_copy(update={"payload": '{"x":"\ud800"}'})

    async with Dispatcher(UrlValidator()) as dispatcher:
        outcome = await dispatcher.attempt(delivery, config)

    assert outcome.status_code is None
    assert outcome.permanent
    assert "UTF-8" in outcome.error
    assert receiver.requests == []
