"""Delivery platform schemas - Uber Eats / Deliveroo / Just Eat."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from deliverysync.models.delivery import DeliveryPlatform, OrderStatus
from deliverysync.services.delivery.types import (
    PlatformCategory,
    PlatformMenu,
    PlatformMenuItem,
    PlatformModifierGroup,
    PlatformModifierOption,
)


# Platform integrations

class PlatformIntegrationUpsert(BaseModel):
    """Create or replace an organization's integration with one platform."""
    organization_id: str
    platform: DeliveryPlatform
    platform_restaurant_id: str
    credentials: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)


class PlatformIntegrationToggle(BaseModel):
    is_active: bool


class PlatformIntegrationResponse(BaseModel):
    """Integration record; credentials are never returned."""
    id: str
    organization_id: str
    platform: DeliveryPlatform
    platform_restaurant_id: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    webhook_url: Optional[str] = None
    is_active: bool
    last_sync_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ConnectionTestResponse(BaseModel):
    connected: bool
    message: str
    details: Optional[Any] = None


# Menu

class MenuModifierOptionIn(BaseModel):
    id: str
    name: str
    price: Decimal = Decimal("0")
    is_available: bool = True


class MenuModifierGroupIn(BaseModel):
    id: str
    name: str
    min_selections: int = 0
    max_selections: int = 1
    options: List[MenuModifierOptionIn] = Field(default_factory=list)


class MenuItemIn(BaseModel):
    id: str
    name: str
    price: Decimal
    description: str = ""
    category_id: Optional[str] = None
    image_url: Optional[str] = None
    is_available: bool = True
    modifier_group_ids: List[str] = Field(default_factory=list)


class MenuCategoryIn(BaseModel):
    id: str
    name: str
    description: str = ""
    sort_order: int = 0


class MenuPushRequest(BaseModel):
    """Full menu to replace on the platform."""
    categories: List[MenuCategoryIn] = Field(default_factory=list)
    items: List[MenuItemIn] = Field(default_factory=list)
    modifier_groups: List[MenuModifierGroupIn] = Field(default_factory=list)

    def to_platform_menu(self) -> PlatformMenu:
        return PlatformMenu(
            categories=[PlatformCategory(**c.model_dump()) for c in self.categories],
            items=[PlatformMenuItem(**i.model_dump()) for i in self.items],
            modifier_groups=[
                PlatformModifierGroup(
                    id=g.id,
                    name=g.name,
                    min_selections=g.min_selections,
                    max_selections=g.max_selections,
                    options=[PlatformModifierOption(**o.model_dump()) for o in g.options],
                )
                for g in self.modifier_groups
            ],
        )


class MenuSyncResultResponse(BaseModel):
    success: bool
    platform: str
    message: str = ""
    item_mappings: Dict[str, str] = Field(default_factory=dict)


class MenuSyncRequest(BaseModel):
    """Sync through the batch job; all active integrations when integration_id is omitted."""
    organization_id: str
    integration_id: Optional[str] = None
    platform: Optional[DeliveryPlatform] = None


class StoreAvailabilityUpdate(BaseModel):
    is_open: bool


# Orders

class OrderAccept(BaseModel):
    """Accept a pending order. Just Eat uses the prep time estimate."""
    estimated_prep_time: Optional[int] = Field(None, ge=1, le=240)


class OrderReject(BaseModel):
    reason: str
    explanation: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderItemResponse(BaseModel):
    id: int
    platform_item_id: Optional[str] = None
    item_name: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    line_total: Decimal = Decimal("0")
    modifiers: Optional[List[Dict[str, Any]]] = None
    special_instructions: Optional[str] = None

    model_config = {"from_attributes": True}


class DeliveryOrderResponse(BaseModel):
    id: str
    organization_id: str
    platform_integration_id: Optional[str] = None
    delivery_platform: Optional[DeliveryPlatform] = None
    platform_order_id: Optional[str] = None
    order_number: Optional[str] = None
    order_type: str
    status: OrderStatus
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    delivery_address: Optional[str] = None
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    service_fee: Decimal = Decimal("0")
    tip_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    special_instructions: Optional[str] = None
    placed_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# Webhook queue

class WebhookAccepted(BaseModel):
    queued: bool = True
    id: int


class WebhookQueueEntryResponse(BaseModel):
    id: int
    platform: DeliveryPlatform
    organization_id: Optional[str] = None
    processed: bool
    processed_at: Optional[datetime] = None
    retry_count: int
    max_retries: int
    next_attempt_at: datetime
    error_message: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class QueueRunResponse(BaseModel):
    processed: int
    failed: int
    exhausted: int
    total: int
