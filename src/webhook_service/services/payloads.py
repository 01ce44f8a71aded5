"""Request body formatting per webhook kind."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from webhook_service.domain.enums import WebhookEvent, WebhookKind

_SLACK_TITLES: dict[str, tuple[str, str]] = {
    WebhookEvent.RUN_COMPLETED.value: (":white_check_mark:", "Test Run Completed"),
    WebhookEvent.RUN_FAILED.value: (":x:", "Test Run Failed"),
    WebhookEvent.COVERAGE_THRESHOLD_BREACH.value: (":warning:", "Coverage Threshold Breach"),
    WebhookEvent.PACKAGE_COMPLETED.value: (":package:", "QA Package Completed"),
    WebhookEvent.PACKAGE_FAILED.value: (":rotating_light:", "QA Package Failed"),
    WebhookEvent.WEBHOOK_TEST.value: (":wave:", "Webhook Test"),
}


def dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def decode_event_data(payload: Any) -> Any:
    """Accept already-serialized JSON (``bytes``/``str``) or a JSON-able value.

    Raises ``ValueError`` for data that cannot be sent as a UTF-8 JSON body,
    e.g. lone surrogates produced by ``\\ud800`` escapes.
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    if isinstance(payload, str):
        payload = json.loads(payload)
    try:
        dumps(payload).encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValueError(f"event payload is not encodable as UTF-8: {exc.reason}") from exc
    return payload



def format_payload(kind: WebhookKind, event_type: str, data: Any, *, now: datetime) -> str:
    if kind is WebhookKind.SLACK:
        return _slack_payload(event_type, data)
    return dumps({"event": event_type, "timestamp": now.isoformat(), "data": data})


def _slack_payload(event_type: str, data: Any) -> str:
    emoji, title = _SLACK_TITLES.get(event_type, (":bell:", event_type.replace("_", " ").title()))
    return dumps(
        {
            "text": title,
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": f"{emoji} {title}", "emoji": True},
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"```{dumps(data)}```"},
                },
            ],
        }
    )
