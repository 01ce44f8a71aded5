"""Single delivery attempt: build the signed request, send it, capture the result."""
from __future__ import annotations

import asyncio
import hmac
from hashlib import sha256

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector
from aiohttp.abc import AbstractResolver
from yarl import URL

from webhook_service import __version__
from webhook_service.domain.webhooks import AttemptOutcome, WebhookConfig, WebhookDelivery
from webhook_service.otel import get_tracer
from webhook_service.security.resolver import PinnedResolver, UnsafeAddressError
from webhook_service.security.url_validator import UrlValidator

logger = structlog.get_logger(__name__)

DEFAULT_SIGNATURE_HEADER = "X-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
USER_AGENT = f"webhook-service/{__version__}"

# Only method-preserving redirects are followed; the payload is re-POSTed.
FOLLOWED_REDIRECTS = frozenset({307, 308})


def sign_payload(secret: str, body_bytes: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body_bytes, sha256).hexdigest()


def _unsafe_cause(exc: BaseException) -> UnsafeAddressError | None:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, UnsafeAddressError):
            return current
        seen.add(id(current))
        os_error = getattr(current, "os_error", None)
        if isinstance(os_error, UnsafeAddressError):
            return os_error
        current = current.__cause__ or current.__context__
    return None


def _same_origin(a: URL, b: URL) -> bool:
    return (a.scheme, a.host, a.port) == (b.scheme, b.host, b.port)


class Dispatcher:
    """Performs one HTTP attempt per call and never raises for delivery failures.

    The HTTP session dials through :class:`PinnedResolver`, so hostnames that
    resolve to internal addresses are refused at connect time, and every
    redirect target is re-validated before it is followed.
    """

    def __init__(
        self,
        validator: UrlValidator,
        *,
        timeout_seconds: float = 10.0,
        body_limit: int = 1000,
        max_redirects: int = 3,
        signature_header: str = DEFAULT_SIGNATURE_HEADER,
        resolver: AbstractResolver | None = None,
    ):
        self._validator = validator
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._timeout_seconds = timeout_seconds
        self._body_limit = body_limit
        self._max_redirects = max_redirects
        self._signature_header = signature_header
        self._resolver = resolver
        self._owned_resolver: AbstractResolver | None = None
        self._session: ClientSession | None = None
        self._tracer = get_tracer(__name__)

    @classmethod
    def from_settings(cls, validator: UrlValidator, settings) -> "Dispatcher":
        return cls(
            validator,
            timeout_seconds=settings.webhook_request_timeout_seconds,
            body_limit=settings.webhook_response_body_limit,
            max_redirects=settings.webhook_max_redirects,
            signature_header=settings.webhook_signature_header,
        )

    @property
    def signature_header(self) -> str:
        return self._signature_header

    async def start(self) -> None:
        if self._session is None:
            resolver = self._resolver
            if resolver is None:
                resolver = self._owned_resolver = PinnedResolver(self._validator)
            connector = TCPConnector(resolver=resolver)
            self._session = ClientSession(connector=connector, timeout=self._timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        if self._owned_resolver is not None:
            await self._owned_resolver.close()
            self._owned_resolver = None

    async def __aenter__(self) -> "Dispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def build_headers(self, delivery: WebhookDelivery, config: WebhookConfig, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            EVENT_HEADER: delivery.event_type,
            DELIVERY_ID_HEADER: str(delivery.id),
        }
        headers.update(config.headers)
        if config.secret:
            headers[self._signature_header] = sign_payload(config.secret, body)
        return headers

    async def attempt(self, delivery: WebhookDelivery, config: WebhookConfig) -> AttemptOutcome:
        if self._session is None:
            await self.start()
        assert self._session is not None

        with self._tracer.start_as_current_span("webhook.attempt") as span:
            span.set_attribute("webhook.delivery_id", str(delivery.id))
            span.set_attribute("webhook.config_id", str(config.id))
            span.set_attribute("webhook.attempt", delivery.attempt_count + 1)
            try:
                body = delivery.payload.encode("utf-8")
                headers = self.build_headers(delivery, config, body)
            except UnicodeEncodeError as exc:
                outcome = AttemptOutcome(
                    error=f"request cannot be encoded as UTF-8: {exc.reason}", permanent=True
                )
            else:
                outcome = await self._send_within_deadline(URL(config.url), body, headers)
            if outcome.status_code is not None:
                span.set_attribute("http.status_code", outcome.status_code)
        logger.info(
            "webhook attempt finished",
            delivery_id=str(delivery.id),
            config_id=str(config.id),
            attempt=delivery.attempt_count + 1,
            status_code=outcome.status_code,
            error=outcome.error,
            blocked=outcome.blocked_reason is not None,
        )
        return outcome

    async def _send_within_deadline(self, url: URL, body: bytes, headers: dict[str, str]) -> AttemptOutcome:
        """One deadline covers every redirect hop and the body read."""
        try:
            return await asyncio.wait_for(self._send(url, body, headers), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            return AttemptOutcome(error=f"timeout after {self._timeout_seconds:g}s")

    async def _send(self, url: URL, body: bytes, headers: dict[str, str]) -> AttemptOutcome:
        assert self._session is not None
        origin = url
        for _hop in range(self._max_redirects + 1):
            try:
                async with self._session.post(
                    url, data=body, headers=headers, allow_redirects=False
                ) as resp:
                    location = resp.headers.get("Location")
                    if resp.status in FOLLOWED_REDIRECTS and location:
                        target = resp.url.join(URL(location))
                        check = self._validator.validate(str(target))
                        if not check.ok:
                            return AttemptOutcome(
                                status_code=None,
                                blocked_reason=f"redirect to {target} rejected: {check.reason}",
                            )
                        if not _same_origin(origin, target):
                            # Custom headers may carry credentials meant for the configured origin
                            headers = {
                                k: v
                                for k, v in headers.items()
                                if k in (
                                    "Content-Type",
                                    "User-Agent",
                                    EVENT_HEADER,
                                    DELIVERY_ID_HEADER,
                                    self._signature_header,
                                )
                            }
                        url = target
                        continue
                    captured = await self._read_capped(resp)
                    return AttemptOutcome(status_code=resp.status, body=captured)
            except asyncio.TimeoutError:
                return AttemptOutcome(error=f"timeout after {self._timeout_seconds:g}s")
            except (ClientError, OSError) as exc:
                unsafe = _unsafe_cause(exc)
                if unsafe is not None:
                    return AttemptOutcome(blocked_reason=str(unsafe))
                return AttemptOutcome(error=f"{type(exc).__name__}: {exc}")
        return AttemptOutcome(error=f"too many redirects (more than {self._max_redirects})")

    async def _read_capped(self, resp) -> str:
        """Read at most ``body_limit`` bytes; the rest is discarded with the connection."""
        chunks: list[bytes] = []
        remaining = self._body_limit
        while remaining > 0:
            chunk = await resp.content.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks).decode("utf-8", errors="replace")
