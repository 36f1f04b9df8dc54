"""Database models."""

from deliverysync.models.delivery import (
    DeliveryPlatform,
    Order,
    OrderItem,
    OrderStatus,
    PlatformIntegration,
    WebhookQueueEntry,
)

__all__ = [
    "DeliveryPlatform",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PlatformIntegration",
    "WebhookQueueEntry",
]
