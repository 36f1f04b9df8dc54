"""Normalized order / menu types shared by the delivery platform clients."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from deliverysync.services.delivery.status import PlatformOrderStatus

T = TypeVar("T")

CENT = Decimal("0.01")


# ==================== ORDERS ====================

@dataclass
class PlatformCustomer:
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class PlatformModifier:
    id: str
    name: str
    price: Decimal = Decimal("0")
    quantity: int = 1


@dataclass
class PlatformOrderItem:
    id: str
    name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    modifiers: List[PlatformModifier] = field(default_factory=list)
    special_instructions: Optional[str] = None


@dataclass
class PlatformOrderTotals:
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    service_fee: Decimal = Decimal("0")
    tip: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    currency: Optional[str] = None


@dataclass
class PlatformAddress:
    street: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def one_line(self) -> str:
        return ", ".join(part for part in (self.street, self.city, self.postal_code, self.country) if part)


@dataclass
class PlatformDeliveryInfo:
    type: Literal["delivery", "pickup"] = "delivery"
    address: Optional[PlatformAddress] = None
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    requested_delivery_time: Optional[datetime] = None
    courier_name: Optional[str] = None
    courier_phone: Optional[str] = None


@dataclass
class PlatformOrder:
    """A marketplace order in the shape every client produces."""
    id: str
    display_id: str
    status: PlatformOrderStatus
    created_at: datetime
    customer: PlatformCustomer
    items: List[PlatformOrderItem]
    totals: PlatformOrderTotals
    delivery_info: PlatformDeliveryInfo
    special_instructions: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


# ==================== MENU ====================

@dataclass
class PlatformModifierOption:
    id: str
    name: str
    price: Decimal = Decimal("0")
    is_available: bool = True


@dataclass
class PlatformModifierGroup:
    id: str
    name: str
    min_selections: int = 0
    max_selections: int = 1
    options: List[PlatformModifierOption] = field(default_factory=list)


@dataclass
class PlatformMenuItem:
    id: str
    name: str
    price: Decimal
    description: str = ""
    category_id: Optional[str] = None
    image_url: Optional[str] = None
    is_available: bool = True
    modifier_group_ids: List[str] = field(default_factory=list)


@dataclass
class PlatformCategory:
    id: str
    name: str
    description: str = ""
    sort_order: int = 0


@dataclass
class PlatformMenu:
    categories: List[PlatformCategory] = field(default_factory=list)
    items: List[PlatformMenuItem] = field(default_factory=list)
    modifier_groups: List[PlatformModifierGroup] = field(default_factory=list)


@dataclass
class MenuSyncOutcome:
    """Result of a full-replace menu push from a single client."""
    success: bool
    item_mappings: Dict[str, str] = field(default_factory=dict)


@dataclass
class MenuSyncResult:
    """Per-platform menu sync result reported back to the caller."""
    success: bool
    platform: str
    message: str = ""
    item_mappings: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "platform": self.platform,
            "message": self.message,
            "item_mappings": self.item_mappings,
        }


# ==================== TRANSPORT ====================

@dataclass
class PlatformApiError:
    code: str
    message: str
    details: Optional[Any] = None
    status_code: Optional[int] = None


@dataclass
class PlatformApiResponse(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[PlatformApiError] = None
    request_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AuthToken:
    access_token: str
    token_type: str
    expires_at: datetime
    refresh_token: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PlatformConfig:
    """Endpoints and limits a client is constructed with."""
    api_url: str
    auth_url: Optional[str] = None
    timeout: float = 30.0
    currency: Optional[str] = None


@dataclass
class AcceptanceTimeout:
    timeout: int
    unit: Literal["minutes", "hours"]

    def as_timedelta(self) -> timedelta:
        if self.unit == "hours":
            return timedelta(hours=self.timeout)
        return timedelta(minutes=self.timeout)


# ==================== WEBHOOKS ====================

class WebhookEventType(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_UPDATED = "order_updated"
    ORDER_CANCELLED = "order_cancelled"
    UNKNOWN = "unknown"


@dataclass
class WebhookEvent:
    """A decoded marketplace webhook."""
    event_type: WebhookEventType
    platform_order_id: str
    order: Optional[PlatformOrder] = None
    status: Optional[PlatformOrderStatus] = None
    store_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# ==================== HELPERS ====================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def from_minor_units(value: Any) -> Decimal:
    """Cents (or pence) to currency units."""
    return (to_decimal(value) / 100).quantize(CENT)


def to_minor_units(value: Decimal) -> int:
    return int((to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
