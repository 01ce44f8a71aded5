"""Common exceptions for domain, repository and service layers."""
from __future__ import annotations


class WebhookServiceError(Exception):
    """Base error for service layer."""


class RepositoryError(WebhookServiceError):
    """Raised when repository operations fail."""


class NotFoundError(RepositoryError):
    """Raised when requested entity is missing."""


class StoreUnavailableError(RepositoryError):
    """Raised when the delivery store cannot be reached at all."""


class UnsafeUrlError(WebhookServiceError):
    """Raised when a target URL is rejected by the safety policy."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidStatusTransitionError(WebhookServiceError):
    """Raised when a delivery attempts an unsupported status change."""


class DeliveryNotTerminalError(WebhookServiceError):
    """Raised when re-triggering a delivery that is still in flight."""
