"""Target URL safety checks."""
from __future__ import annotations

from webhook_service.security.resolver import PinnedResolver, UnsafeAddressError
from webhook_service.security.url_validator import UrlValidationResult, UrlValidator

__all__ = [
    "PinnedResolver",
    "UnsafeAddressError",
    "UrlValidationResult",
    "UrlValidator",
]
