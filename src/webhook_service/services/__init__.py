"""Service layer exports."""
from webhook_service.services.retry_policy import RetryPolicy
from webhook_service.services.webhooks import WebhookService

__all__ = ["RetryPolicy", "WebhookService"]
