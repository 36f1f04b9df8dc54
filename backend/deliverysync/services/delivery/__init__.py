"""Delivery platform clients (Uber Eats, Deliveroo, Just Eat)."""

from deliverysync.services.delivery.base import DeliveryProvider
from deliverysync.services.delivery.deliveroo import DeliverooProvider
from deliverysync.services.delivery.factory import (
    PlatformClientCache,
    create_platform_client,
    platform_configs_from_settings,
)
from deliverysync.services.delivery.justeat import JustEatProvider, calculate_acceptance_timeout
from deliverysync.services.delivery.ubereats import UberEatsProvider

__all__ = [
    "DeliveryProvider",
    "DeliverooProvider",
    "JustEatProvider",
    "PlatformClientCache",
    "UberEatsProvider",
    "calculate_acceptance_timeout",
    "create_platform_client",
    "platform_configs_from_settings",
]
