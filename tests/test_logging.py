from __future__ import annotations

from webhook_service.logging_config import escape_newlines
from webhook_service.middleware.trace import safe_headers


def test_escape_newlines_keeps_entries_single_line():
    event = escape_newlines(
        None,
        "error",
        {"event": "boom", "exception": "Traceback\n  line\tx", "items": ["a\nb", 1], "extra": {"k": "v\r"}},
    )
    assert event["exception"] == "Traceback\\n  line\\tx"
    assert event["items"] == ["a\\nb", 1]
    assert event["extra"] == {"k": "v\\r"}


def test_safe_headers_drops_credentials():
    headers = {"Authorization": "Bearer x", "Cookie": "a=b", "X-User-Id": "user-1"}
    assert safe_headers(headers) == {"X-User-Id": "user-1"}
