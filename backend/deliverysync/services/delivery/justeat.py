"""Just Eat API integration."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.services.delivery.base import Clock, DeliveryProvider
from deliverysync.services.delivery.exceptions import PlatformOrderNotFound, PlatformRequestError
from deliverysync.services.delivery.status import (
    PlatformOrderStatus,
    map_internal_status_to_platform,
    map_platform_status_to_internal,
)
from deliverysync.services.delivery.types import (
    CENT,
    AcceptanceTimeout,
    MenuSyncOutcome,
    PlatformAddress,
    PlatformConfig,
    PlatformCustomer,
    PlatformDeliveryInfo,
    PlatformMenu,
    PlatformOrder,
    PlatformOrderItem,
    PlatformOrderTotals,
    WebhookEvent,
    WebhookEventType,
    parse_timestamp,
    to_decimal,
)

logger = logging.getLogger(__name__)

JUSTEAT_API_BASE = "https://partner-api.just-eat.co.uk/v1"

DEFAULT_PREP_TIME_MINUTES = 30

WEBHOOK_EVENTS = {
    "OrderPlaced": WebhookEventType.ORDER_CREATED,
    "OrderAccepted": WebhookEventType.ORDER_UPDATED,
    "OrderCancelled": WebhookEventType.ORDER_CANCELLED,
}


def calculate_acceptance_timeout(
    placed_at: datetime, delivery_at: Optional[datetime] = None
) -> AcceptanceTimeout:
    """How long Just Eat waits for a decision, based on how far ahead the order is.

    Same-day orders get 15 minutes, orders due within 48 hours get 2 hours,
    anything further out gets 24 hours.
    """
    if delivery_at is None:
        return AcceptanceTimeout(timeout=15, unit="minutes")
    lead = delivery_at - placed_at
    if lead < timedelta(hours=24):
        return AcceptanceTimeout(timeout=15, unit="minutes")
    if lead < timedelta(hours=48):
        return AcceptanceTimeout(timeout=2, unit="hours")
    return AcceptanceTimeout(timeout=24, unit="hours")


class JustEatProvider(DeliveryProvider):
    """Just Eat API client. Authenticates with a static partner API token."""

    platform = DeliveryPlatform.JUST_EAT
    display_name = "Just Eat"

    ACCEPTANCE_DEADLINE = timedelta(minutes=15)
    SIGNATURE_HEADER = "X-JustEat-Signature"
    DENY_REASON_CODES = frozenset({"OUT_OF_STOCK", "TOO_BUSY", "CLOSING", "TECHNICAL_ISSUE"})
    ERROR_CODE_FIELD = "errorCode"
    ERROR_MESSAGE_FIELD = "errorMessage"
    REQUEST_ID_HEADER = "x-je-request-id"

    def __init__(
        self,
        api_token: str,
        restaurant_id: str,
        webhook_secret: Optional[str] = None,
        config: Optional[PlatformConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(
            config or PlatformConfig(api_url=JUSTEAT_API_BASE),
            transport=transport,
            clock=clock,
        )
        self._api_token = api_token
        self._restaurant_id = restaurant_id
        self._webhook_secret = webhook_secret

    @property
    def is_configured(self) -> bool:
        return bool(self._api_token and self._restaurant_id)

    @property
    def store_id(self) -> str:
        return self._restaurant_id

    @property
    def webhook_secret(self) -> str:
        return self._webhook_secret or self._api_token

    def _restaurant_path(self) -> str:
        return f"/restaurants/{self._restaurant_id}"

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_token}"}

    async def authenticate(self) -> bool:
        """Validate the API token against the restaurant endpoint."""
        if not self.is_configured:
            logger.error("Just Eat credentials are not configured")
            self._auth_failed = True
            self._fail("AUTH_FAILED", "Just Eat credentials are not configured")
            return False

        try:
            async with self._http_client() as client:
                resp = await client.get(
                    f"{self.config.api_url}{self._restaurant_path()}",
                    headers={"Accept": "application/json", **self._auth_headers()},
                )
        except httpx.HTTPError as e:
            logger.error(f"Just Eat authentication error: {e!r}")
            self._auth_failed = True
            self._fail("AUTH_FAILED", f"Just Eat authentication error: {e}")
            return False

        if not resp.is_success:
            logger.error(f"Just Eat token validation failed: {resp.status_code}")
            self._auth_failed = True
            self._fail("AUTH_FAILED", "Just Eat token validation failed", status_code=resp.status_code)
            return False

        self._auth_failed = False
        logger.info("Just Eat token validated")
        return True

    async def _ensure_authenticated(self) -> bool:
        if not self.is_configured:
            self._auth_failed = True
            return False
        return True

    def _on_unauthorized(self) -> None:
        self._auth_failed = True

    def acceptance_window(self, placed_at: datetime, requested_for: Optional[datetime] = None) -> timedelta:
        return calculate_acceptance_timeout(placed_at, requested_for).as_timedelta()

    # ---- orders ----

    async def get_orders(
        self, status: Optional[PlatformOrderStatus] = None, since: Optional[datetime] = None
    ) -> List[PlatformOrder]:
        params: Dict[str, Any] = {}
        if status:
            params["status"] = map_internal_status_to_platform(status.value, self.platform)
        if since:
            params["from"] = since.isoformat()

        resp = await self._request("GET", f"{self._restaurant_path()}/orders", params=params or None)
        if not resp.success or not isinstance(resp.data, dict):
            logger.error(f"Failed to fetch Just Eat orders: {self.last_error}")
            return []

        orders = []
        for raw in resp.data.get("orders", []):
            try:
                orders.append(self.transform_order(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed Just Eat order: {e}")
        return orders

    async def get_order(self, order_id: str) -> PlatformOrder:
        resp = await self._request("GET", f"{self._restaurant_path()}/orders/{order_id}")
        if not resp.success:
            if resp.error.status_code == 404:
                raise PlatformOrderNotFound(order_id, resp.error.details)
            raise PlatformRequestError(resp.error.code, resp.error.message, resp.error.details)
        return self.transform_order(resp.data)

    async def update_order_status(self, order_id: str, status: PlatformOrderStatus) -> bool:
        if status == PlatformOrderStatus.PENDING:
            logger.warning(f"Just Eat order {order_id} cannot be moved back to pending")
            return False

        resp = await self._request(
            "PUT",
            f"{self._restaurant_path()}/orders/{order_id}/status",
            json_body={
                "status": map_internal_status_to_platform(status.value, self.platform),
                "updatedAt": self._clock().isoformat(),
            },
        )
        if not resp.success:
            logger.error(f"Failed to update Just Eat order {order_id} to {status.value}: {self.last_error}")
            return False
        return True

    async def accept_order(self, order_id: str, **kwargs: Any) -> bool:
        prep_time = kwargs.get("estimated_prep_time") or DEFAULT_PREP_TIME_MINUTES
        resp = await self._request(
            "POST",
            f"{self._restaurant_path()}/orders/{order_id}/accept",
            json_body={"acceptedAt": self._clock().isoformat(), "estimatedPrepTime": prep_time},
        )
        if not resp.success:
            logger.error(f"Failed to accept Just Eat order {order_id}: {self.last_error}")
            return False
        logger.info(f"Accepted Just Eat order {order_id}")
        return True

    async def deny_order(self, order_id: str, reason_code: str, explanation: Optional[str] = None) -> bool:
        if not self._validate_reason(reason_code):
            return False
        resp = await self._request(
            "POST",
            f"{self._restaurant_path()}/orders/{order_id}/reject",
            json_body={
                "rejectedAt": self._clock().isoformat(),
                "reason": reason_code,
                "notes": explanation or "Unable to fulfill order",
            },
        )
        if not resp.success:
            logger.error(f"Failed to reject Just Eat order {order_id}: {self.last_error}")
            return False
        logger.info(f"Rejected Just Eat order {order_id} ({reason_code})")
        return True

    # ---- menu / store ----

    async def sync_menu(self, menu: PlatformMenu) -> MenuSyncOutcome:
        category_items: Dict[str, List[str]] = {}
        for item in menu.items:
            if item.category_id:
                category_items.setdefault(item.category_id, []).append(item.id)

        # Just Eat takes decimal prices
        body = {
            "categories": [
                {
                    "id": category.id,
                    "name": category.name,
                    "description": category.description,
                    "displayOrder": category.sort_order,
                    "products": category_items.get(category.id, []),
                }
                for category in menu.categories
            ],
            "products": [
                {
                    "id": item.id,
                    "name": item.name,
                    "description": item.description,
                    "price": float(item.price),
                    "available": item.is_available,
                    "imageUrl": item.image_url,
                    "modifierGroups": list(item.modifier_group_ids),
                }
                for item in menu.items
            ],
            "modifierGroups": [
                {
                    "id": group.id,
                    "name": group.name,
                    "minSelections": group.min_selections,
                    "maxSelections": group.max_selections,
                    "required": group.min_selections > 0,
                    "modifiers": [
                        {
                            "id": option.id,
                            "name": option.name,
                            "price": float(option.price),
                            "available": option.is_available,
                        }
                        for option in group.options
                    ],
                }
                for group in menu.modifier_groups
            ],
        }

        resp = await self._request("PUT", f"{self._restaurant_path()}/menu", json_body=body)
        if not resp.success:
            logger.error(f"Failed to sync Just Eat menu: {self.last_error}")
            return MenuSyncOutcome(success=False)
        mappings = resp.data.get("productMappings", {}) if isinstance(resp.data, dict) else {}
        return MenuSyncOutcome(success=True, item_mappings=mappings or {})

    async def set_store_availability(self, is_open: bool) -> bool:
        resp = await self._request(
            "PUT",
            f"{self._restaurant_path()}/availability",
            json_body={"isOpen": is_open, "updatedAt": self._clock().isoformat()},
        )
        if not resp.success:
            logger.error(f"Failed to set Just Eat availability: {self.last_error}")
            return False
        return True

    # ---- inbound ----

    def transform_order(self, data: Dict[str, Any]) -> PlatformOrder:
        order_id = data["orderId"]
        customer = data.get("customer") or {}
        basket = data.get("basket") or {}

        items = []
        for item in basket.get("items") or []:
            quantity = int(item.get("quantity") or 1)
            line_total = to_decimal(item.get("price"))
            items.append(PlatformOrderItem(
                id=str(item.get("productId", "")),
                name=item.get("name", ""),
                quantity=quantity,
                unit_price=(line_total / quantity).quantize(CENT),
                total_price=line_total,
                special_instructions=item.get("instructions"),
            ))

        address = None
        if customer.get("address"):
            addr = customer["address"]
            address = PlatformAddress(
                street=addr.get("street", ""),
                city=addr.get("city", ""),
                postal_code=addr.get("postcode", ""),
                country="GB",
            )

        return PlatformOrder(
            id=order_id,
            display_id=data.get("friendlyOrderReference") or order_id[-8:],
            status=map_platform_status_to_internal(data.get("status"), self.platform),
            created_at=parse_timestamp(data.get("placedDate")) or self._clock(),
            customer=PlatformCustomer(name=customer.get("name", ""), phone=customer.get("phoneNumber")),
            items=items,
            # Prices include tax
            totals=PlatformOrderTotals(
                subtotal=to_decimal(basket.get("subTotal")),
                delivery_fee=to_decimal(basket.get("deliveryCharge")),
                total=to_decimal(basket.get("total")),
                currency="GBP",
            ),
            delivery_info=PlatformDeliveryInfo(
                address=address,
                requested_delivery_time=parse_timestamp(data.get("requestedDeliveryDate")),
            ),
            special_instructions=data.get("deliveryInstructions"),
            raw_data=data,
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        event_type = WEBHOOK_EVENTS.get(payload.get("eventType"), WebhookEventType.UNKNOWN)
        data = payload.get("order") if isinstance(payload.get("order"), dict) else None
        if not data or not data.get("orderId"):
            raise ValueError("Just Eat webhook has no order")

        order = self.transform_order(data)
        if event_type == WebhookEventType.ORDER_CANCELLED:
            status = PlatformOrderStatus.CANCELLED
        elif payload.get("eventType") == "OrderAccepted":
            status = PlatformOrderStatus.ACCEPTED
        else:
            status = order.status

        return WebhookEvent(
            event_type=event_type,
            platform_order_id=order.id,
            order=order,
            status=status,
            store_id=(data.get("restaurant") or {}).get("id"),
            raw=payload,
        )
