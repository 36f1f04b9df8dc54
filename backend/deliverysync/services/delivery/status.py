"""Order status vocabulary shared by all delivery platform clients.

Three vocabularies meet here:

* the platform contract status (``PlatformOrderStatus``) every client speaks,
* each marketplace's own tokens (``created``, ``ACCEPT_ORDER``, ``cooking`` ...),
* the internal order status stored on ``orders.status``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from deliverysync.models.delivery import DeliveryPlatform, OrderStatus


class PlatformOrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StatusMapping:
    internal: PlatformOrderStatus
    platform_tokens: Dict[DeliveryPlatform, str]


ORDER_STATUS_MAPPINGS: List[StatusMapping] = [
    StatusMapping(PlatformOrderStatus.PENDING, {
        DeliveryPlatform.UBER_EATS: "created",
        DeliveryPlatform.DELIVEROO: "PENDING",
        DeliveryPlatform.JUST_EAT: "new",
    }),
    StatusMapping(PlatformOrderStatus.ACCEPTED, {
        DeliveryPlatform.UBER_EATS: "accepted",
        DeliveryPlatform.DELIVEROO: "ACCEPT_ORDER",
        DeliveryPlatform.JUST_EAT: "acknowledged",
    }),
    StatusMapping(PlatformOrderStatus.PREPARING, {
        DeliveryPlatform.UBER_EATS: "in_progress",
        DeliveryPlatform.DELIVEROO: "PREPARATION_STARTED",
        DeliveryPlatform.JUST_EAT: "cooking",
    }),
    StatusMapping(PlatformOrderStatus.READY, {
        DeliveryPlatform.UBER_EATS: "ready_for_pickup",
        DeliveryPlatform.DELIVEROO: "READY_FOR_COLLECTION",
        DeliveryPlatform.JUST_EAT: "ready",
    }),
    StatusMapping(PlatformOrderStatus.COMPLETED, {
        DeliveryPlatform.UBER_EATS: "delivered",
        DeliveryPlatform.DELIVEROO: "COLLECTED",
        DeliveryPlatform.JUST_EAT: "delivered",
    }),
    StatusMapping(PlatformOrderStatus.CANCELLED, {
        DeliveryPlatform.UBER_EATS: "cancelled",
        DeliveryPlatform.DELIVEROO: "REJECT_ORDER",
        DeliveryPlatform.JUST_EAT: "cancelled",
    }),
]


# Extra tokens seen in webhooks that are not part of the table above
PLATFORM_STATUS_ALIASES: Dict[DeliveryPlatform, Dict[str, PlatformOrderStatus]] = {
    DeliveryPlatform.UBER_EATS: {
        "denied": PlatformOrderStatus.CANCELLED,
        "finished": PlatformOrderStatus.PREPARING,
    },
    DeliveryPlatform.JUST_EAT: {
        "accepted": PlatformOrderStatus.ACCEPTED,
        "rejected": PlatformOrderStatus.CANCELLED,
    },
}


def map_internal_status_to_platform(status: str, platform: DeliveryPlatform) -> str:
    """Return the marketplace token for a contract status.

    Unknown statuses pass through unchanged so the caller always gets a token.
    """
    for mapping in ORDER_STATUS_MAPPINGS:
        if mapping.internal.value == status:
            return mapping.platform_tokens.get(platform, status)
    return status


def map_platform_status_to_internal(
    token: Optional[str], platform: DeliveryPlatform
) -> PlatformOrderStatus:
    """Best-effort reverse lookup; anything unrecognised is treated as pending."""
    if token is None:
        return PlatformOrderStatus.PENDING
    for mapping in ORDER_STATUS_MAPPINGS:
        if mapping.platform_tokens.get(platform) == token:
            return mapping.internal
    return PLATFORM_STATUS_ALIASES.get(platform, {}).get(token, PlatformOrderStatus.PENDING)


_TO_ORDER_STATUS = {
    PlatformOrderStatus.PENDING: OrderStatus.PENDING,
    PlatformOrderStatus.ACCEPTED: OrderStatus.CONFIRMED,
    PlatformOrderStatus.PREPARING: OrderStatus.PREPARING,
    PlatformOrderStatus.READY: OrderStatus.READY,
    PlatformOrderStatus.COMPLETED: OrderStatus.COMPLETED,
    PlatformOrderStatus.CANCELLED: OrderStatus.CANCELLED,
}

_TO_PLATFORM_STATUS = {v: k for k, v in _TO_ORDER_STATUS.items()}

# Position in the kitchen lifecycle; cancellation is handled separately
_ORDER_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PREPARING: 2,
    OrderStatus.READY: 3,
    OrderStatus.OUT_FOR_DELIVERY: 4,
    OrderStatus.COMPLETED: 5,
}


def to_order_status(status: PlatformOrderStatus) -> OrderStatus:
    return _TO_ORDER_STATUS[status]


def to_platform_status(status: OrderStatus) -> Optional[PlatformOrderStatus]:
    """Contract status for an internal status, None for ``out_for_delivery``."""
    return _TO_PLATFORM_STATUS.get(status)


def is_forward_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """True when ``new`` moves the order on from ``current``.

    Cancellation is accepted from any non-terminal state; nothing leaves a
    terminal state.
    """
    if current in (OrderStatus.COMPLETED, OrderStatus.CANCELLED):
        return False
    if new == OrderStatus.CANCELLED:
        return True
    return _ORDER_STATUS_RANK[new] > _ORDER_STATUS_RANK[current]
