"""Delivery platform integration models - Uber Eats / Deliveroo / Just Eat."""

import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from deliverysync.db.base import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class DeliveryPlatform(str, Enum):
    UBER_EATS = "uber_eats"
    DELIVEROO = "deliveroo"
    JUST_EAT = "just_eat"

    @property
    def slug(self) -> str:
        """URL form used in webhook paths (``uber-eats``)."""
        return self.value.replace("_", "-")

    @classmethod
    def from_slug(cls, slug: str) -> "DeliveryPlatform":
        return cls(slug.replace("-", "_"))


class OrderStatus(str, Enum):
    """Internal order lifecycle used by the kitchen-facing order record."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PlatformIntegration(Base):
    """Per-organization connection to one delivery platform."""
    __tablename__ = "platform_integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "platform", name="uq_platform_integrations_org_platform"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(64), nullable=False, index=True)
    platform = Column(SQLEnum(DeliveryPlatform), nullable=False)

    # Platform's store / restaurant identifier
    platform_restaurant_id = Column(String(200), nullable=False)

    # Shape varies by platform: OAuth client id/secret or a static API token
    credentials = Column(JSON, nullable=False, default=dict)
    settings = Column(JSON, nullable=False, default=dict)

    webhook_url = Column(String(500), nullable=True)

    # New integrations stay inactive until a connectivity test succeeds
    is_active = Column(Boolean, default=False, nullable=False)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    orders = relationship("Order", back_populates="platform_integration")


class Order(Base):
    """Internal order record; the durable copy of a delivery order."""
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint(
            "platform_integration_id", "platform_order_id",
            name="uq_orders_integration_platform_order",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(64), nullable=False, index=True)

    # Delivery platform linkage (null for dine-in / counter orders)
    platform_integration_id = Column(
        String(36), ForeignKey("platform_integrations.id", ondelete="SET NULL"), nullable=True
    )
    delivery_platform = Column(SQLEnum(DeliveryPlatform), nullable=True)
    platform_order_id = Column(String(200), nullable=True)

    order_number = Column(String(50), nullable=True)
    order_type = Column(String(30), nullable=False, default="delivery")
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING)

    # Set while an accept/reject call is in flight for this order
    platform_action = Column(String(20), nullable=True)

    # Customer info (from platform)
    customer_name = Column(String(200), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_email = Column(String(200), nullable=True)
    delivery_address = Column(Text, nullable=True)

    subtotal = Column(Numeric(10, 2), default=0)
    tax_amount = Column(Numeric(10, 2), default=0)
    delivery_fee = Column(Numeric(10, 2), default=0)
    service_fee = Column(Numeric(10, 2), default=0)
    tip_amount = Column(Numeric(10, 2), default=0)
    total_amount = Column(Numeric(10, 2), default=0)
    currency = Column(String(3), nullable=True)

    special_instructions = Column(Text, nullable=True)
    placed_at = Column(DateTime, nullable=True)
    scheduled_for = Column(DateTime, nullable=True)

    # Raw payload (for debugging)
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    platform_integration = relationship("PlatformIntegration", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    @property
    def is_delivery_order(self) -> bool:
        return bool(self.platform_order_id and self.delivery_platform)


class OrderItem(Base):
    """Individual items in an order."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)

    platform_item_id = Column(String(200), nullable=True)
    item_name = Column(String(300), nullable=False)
    quantity = Column(Integer, default=1)
    unit_price = Column(Numeric(10, 2), default=0)
    line_total = Column(Numeric(10, 2), default=0)

    # [{"id": "m1", "name": "Extra cheese", "price": "1.50", "quantity": 1}]
    modifiers = Column(JSON, nullable=True)
    special_instructions = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")


class WebhookQueueEntry(Base):
    """Inbound webhook persisted before parsing, processed with retries."""
    __tablename__ = "webhook_processing_queue"

    id = Column(Integer, primary_key=True, index=True)
    platform = Column(SQLEnum(DeliveryPlatform), nullable=False)
    organization_id = Column(String(64), nullable=True)

    headers = Column(JSON, nullable=False, default=dict)
    raw_payload = Column(Text, nullable=False)

    processed = Column(Boolean, default=False, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=5, nullable=False)
    next_attempt_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def is_exhausted(self) -> bool:
        return not self.processed and self.retry_count >= self.max_retries
