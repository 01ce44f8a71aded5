"""Subscription matching of event types against webhook configs.

Patterns are a closed set: an exact event name, ``*`` for every event, or a
name prefix followed by a single trailing ``*``. Matching is a plain string
comparison, never a regex evaluated against the incoming event type.
"""
from __future__ import annotations

import re
from typing import Iterable

from webhook_service.domain.webhooks import WebhookConfig

WILDCARD = "*"
MAX_PATTERNS = 64
MAX_PATTERN_LENGTH = 128

_PATTERN_RE = re.compile(r"^[A-Za-z0-9_.:-]+\*?$")


def event_matches(pattern: str, event_type: str) -> bool:
    if pattern == WILDCARD:
        return True
    if pattern.endswith(WILDCARD):
        return event_type.startswith(pattern[:-1])
    return pattern == event_type


def is_subscribed(config: WebhookConfig, event_type: str) -> bool:
    return config.is_active and any(event_matches(p, event_type) for p in config.events)


def match(event_type: str, configs: Iterable[WebhookConfig]) -> list[WebhookConfig]:
    """Active configs subscribed to ``event_type``, in input order."""
    return [config for config in configs if is_subscribed(config, event_type)]


def normalize_event_patterns(patterns: Iterable[str]) -> list[str]:
    """Validate, strip and de-duplicate subscription patterns (order kept)."""
    cleaned = [p.strip() for p in patterns if p and p.strip()]
    cleaned = list(dict.fromkeys(cleaned))
    if not cleaned:
        raise ValueError("events must be a non-empty list")
    if len(cleaned) > MAX_PATTERNS:
        raise ValueError(f"at most {MAX_PATTERNS} event patterns are allowed")
    for pattern in cleaned:
        if pattern == WILDCARD:
            continue
        if len(pattern) > MAX_PATTERN_LENGTH or not _PATTERN_RE.match(pattern):
            raise ValueError(f"invalid event pattern: {pattern!r}")
    return cleaned
