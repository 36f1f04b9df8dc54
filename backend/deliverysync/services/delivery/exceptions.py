"""Exceptions raised by the delivery integration layer."""

from typing import Any, Optional


class DeliveryIntegrationError(Exception):
    """Base class for delivery integration failures."""


class UnsupportedPlatformError(DeliveryIntegrationError, ValueError):
    def __init__(self, platform: Any):
        super().__init__(f"Unsupported platform: {platform}")
        self.platform = platform


class PlatformRequestError(DeliveryIntegrationError):
    """A platform API call failed; carries the platform's own error."""

    def __init__(self, code: str, message: str, details: Optional[Any] = None):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.details = details


class PlatformOrderNotFound(PlatformRequestError):
    def __init__(self, order_id: str, details: Optional[Any] = None):
        super().__init__("ORDER_NOT_FOUND", f"Order {order_id} not found on platform", details)
        self.order_id = order_id


class IntegrationNotFound(DeliveryIntegrationError):
    """No active integration for a platform / organization pair."""


class WebhookRejected(DeliveryIntegrationError):
    """A webhook that can never be processed (bad signature, foreign store, garbage body).

    The queue marks such entries exhausted instead of retrying them.
    """
