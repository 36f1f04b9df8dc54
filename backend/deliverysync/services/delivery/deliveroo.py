"""Deliveroo API integration."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.services.delivery.base import Clock, OAuthClientCredentialsProvider
from deliverysync.services.delivery.exceptions import PlatformOrderNotFound, PlatformRequestError
from deliverysync.services.delivery.status import (
    PlatformOrderStatus,
    map_internal_status_to_platform,
    map_platform_status_to_internal,
)
from deliverysync.services.delivery.types import (
    CENT,
    MenuSyncOutcome,
    PlatformAddress,
    PlatformConfig,
    PlatformCustomer,
    PlatformDeliveryInfo,
    PlatformMenu,
    PlatformModifier,
    PlatformOrder,
    PlatformOrderItem,
    PlatformOrderTotals,
    WebhookEvent,
    WebhookEventType,
    parse_timestamp,
    to_decimal,
    to_minor_units,
)

logger = logging.getLogger(__name__)

DELIVEROO_AUTH_URL = "https://api.deliveroo.com/oauth"
DELIVEROO_API_BASE = "https://api.deliveroo.com/v1"

# Platform status token -> value for the actions endpoint
STATUS_ACTIONS = {
    "ACCEPT_ORDER": "accept",
    "PREPARATION_STARTED": "start_preparation",
    "READY_FOR_COLLECTION": "mark_ready",
    "REJECT_ORDER": "reject",
}

WEBHOOK_EVENTS = {
    "order.created": WebhookEventType.ORDER_CREATED,
    "order.updated": WebhookEventType.ORDER_UPDATED,
    "order.cancelled": WebhookEventType.ORDER_CANCELLED,
}


class DeliverooProvider(OAuthClientCredentialsProvider):
    """Deliveroo API client.

    Accepting or rejecting is two calls: the order action, then a
    ``sync_status`` confirmation. Both must complete within 3 minutes or the
    order escalates to the restaurant tablet.
    """

    platform = DeliveryPlatform.DELIVEROO
    display_name = "Deliveroo"

    ACCEPTANCE_DEADLINE = timedelta(minutes=3)
    SIGNATURE_HEADER = "X-Deliveroo-Signature"
    DENY_REASON_CODES = frozenset({"OUT_OF_STOCK", "TOO_BUSY", "CLOSING_SOON", "OTHER"})
    SCOPE = "orders:read orders:write menu:write restaurant:write"
    ERROR_CODE_FIELD = "error_code"
    ERROR_MESSAGE_FIELD = "error_message"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        restaurant_id: str,
        webhook_secret: Optional[str] = None,
        config: Optional[PlatformConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(
            config or PlatformConfig(api_url=DELIVEROO_API_BASE, auth_url=DELIVEROO_AUTH_URL),
            client_id,
            client_secret,
            transport=transport,
            clock=clock,
        )
        self._restaurant_id = restaurant_id
        self._webhook_secret = webhook_secret

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._restaurant_id)

    @property
    def store_id(self) -> str:
        return self._restaurant_id

    @property
    def webhook_secret(self) -> str:
        return self._webhook_secret or self._client_secret

    @property
    def currency(self) -> str:
        return self.config.currency or "GBP"

    def _orders_path(self) -> str:
        return f"/restaurants/{self._restaurant_id}/orders"

    async def _post_action(self, order_id: str, action: str, reason: Optional[str] = None) -> bool:
        body: Dict[str, Any] = {"action": action}
        if reason:
            body["reason"] = reason
        resp = await self._request("POST", f"{self._orders_path()}/{order_id}/actions", json_body=body)
        return resp.success

    async def _sync_status(self, order_id: str, succeeded: bool, failure_reason: Optional[str] = None) -> bool:
        body: Dict[str, Any] = {"status": "Succeeded" if succeeded else "Failed"}
        if failure_reason:
            body["failure_reason"] = failure_reason
        resp = await self._request("POST", f"/orders/{order_id}/sync_status", json_body=body)
        return resp.success

    # ---- orders ----

    async def get_orders(
        self, status: Optional[PlatformOrderStatus] = None, since: Optional[datetime] = None
    ) -> List[PlatformOrder]:
        params: Dict[str, Any] = {}
        if status:
            params["status"] = map_internal_status_to_platform(status.value, self.platform)
        if since:
            params["created_after"] = since.isoformat()

        resp = await self._request("GET", self._orders_path(), params=params or None)
        if not resp.success or not isinstance(resp.data, dict):
            logger.error(f"Failed to fetch Deliveroo orders: {self.last_error}")
            return []

        orders = []
        for raw in resp.data.get("orders", []):
            try:
                orders.append(self.transform_order(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed Deliveroo order: {e}")
        return orders

    async def get_order(self, order_id: str) -> PlatformOrder:
        resp = await self._request("GET", f"{self._orders_path()}/{order_id}")
        if not resp.success:
            if resp.error.status_code == 404:
                raise PlatformOrderNotFound(order_id, resp.error.details)
            raise PlatformRequestError(resp.error.code, resp.error.message, resp.error.details)
        return self.transform_order(resp.data)

    async def update_order_status(self, order_id: str, status: PlatformOrderStatus) -> bool:
        token = map_internal_status_to_platform(status.value, self.platform)
        action = STATUS_ACTIONS.get(token)
        if action is None:
            logger.warning(f"Deliveroo has no action for status {status.value}")
            return False

        reason = "Item unavailable" if action == "reject" else None
        if not await self._post_action(order_id, action, reason):
            logger.error(f"Failed to update Deliveroo order {order_id} to {status.value}: {self.last_error}")
            return False
        return True

    async def accept_order(self, order_id: str, **kwargs: Any) -> bool:
        if not await self._post_action(order_id, "ACCEPT_ORDER"):
            logger.error(f"Failed to accept Deliveroo order {order_id}: {self.last_error}")
            return False

        if not await self._sync_status(order_id, succeeded=True):
            # The action went through; Deliveroo has not been told it succeeded
            logger.error(
                f"Deliveroo order {order_id} accepted but sync_status failed; "
                f"needs manual reconciliation: {self.last_error}"
            )
            return False

        logger.info(f"Accepted Deliveroo order {order_id}")
        return True

    async def deny_order(self, order_id: str, reason_code: str, explanation: Optional[str] = None) -> bool:
        if not self._validate_reason(reason_code):
            return False

        if not await self._post_action(order_id, "REJECT_ORDER", reason_code):
            logger.error(f"Failed to reject Deliveroo order {order_id}: {self.last_error}")
            return False

        if not await self._sync_status(order_id, succeeded=False, failure_reason=reason_code):
            logger.error(
                f"Deliveroo order {order_id} rejected but sync_status failed; "
                f"needs manual reconciliation: {self.last_error}"
            )
            return False

        logger.info(f"Rejected Deliveroo order {order_id} ({reason_code})")
        return True

    # ---- menu / store ----

    def _price(self, amount) -> Dict[str, Any]:
        return {"amount": to_minor_units(amount), "currency": self.currency}

    async def sync_menu(self, menu: PlatformMenu) -> MenuSyncOutcome:
        category_items: Dict[str, List[str]] = {}
        for item in menu.items:
            if item.category_id:
                category_items.setdefault(item.category_id, []).append(item.id)

        body = {
            "categories": [
                {
                    "id": category.id,
                    "name": category.name,
                    "description": category.description,
                    "sort_position": category.sort_order,
                    "items": category_items.get(category.id, []),
                }
                for category in menu.categories
            ],
            "items": [
                {
                    "id": item.id,
                    "name": item.name,
                    "description": item.description,
                    "price": self._price(item.price),
                    "available": item.is_available,
                    "image_url": item.image_url,
                    "modifier_groups": [{"id": gid, "reference": gid} for gid in item.modifier_group_ids],
                }
                for item in menu.items
            ],
            "modifier_groups": [
                {
                    "id": group.id,
                    "name": group.name,
                    "min_selections": group.min_selections,
                    "max_selections": group.max_selections,
                    "required": group.min_selections > 0,
                    "modifiers": [
                        {
                            "id": option.id,
                            "name": option.name,
                            "price": self._price(option.price),
                            "available": option.is_available,
                        }
                        for option in group.options
                    ],
                }
                for group in menu.modifier_groups
            ],
        }

        resp = await self._request("PUT", f"/restaurants/{self._restaurant_id}/menu", json_body=body)
        if not resp.success:
            logger.error(f"Failed to sync Deliveroo menu: {self.last_error}")
            return MenuSyncOutcome(success=False)
        mappings = resp.data.get("item_mappings", {}) if isinstance(resp.data, dict) else {}
        return MenuSyncOutcome(success=True, item_mappings=mappings or {})

    async def set_store_availability(self, is_open: bool) -> bool:
        resp = await self._request(
            "PUT",
            f"/restaurants/{self._restaurant_id}/availability",
            json_body={"available": is_open},
        )
        if not resp.success:
            logger.error(f"Failed to set Deliveroo availability: {self.last_error}")
            return False
        return True

    # ---- inbound ----

    def transform_order(self, data: Dict[str, Any]) -> PlatformOrder:
        """Deliveroo order to a PlatformOrder. Amounts are already in currency units."""
        order_id = data["order_id"]
        customer = data.get("customer") or {}
        pricing = data.get("pricing") or {}

        items = []
        for item in data.get("items") or []:
            quantity = int(item.get("quantity") or 1)
            line_total = to_decimal(item.get("price"))
            items.append(PlatformOrderItem(
                id=str(item.get("id", "")),
                name=item.get("name", ""),
                quantity=quantity,
                unit_price=(line_total / quantity).quantize(CENT),
                total_price=line_total,
                modifiers=[
                    PlatformModifier(id=str(mod.get("id", "")), name=mod.get("name", ""),
                                     price=to_decimal(mod.get("price")))
                    for mod in item.get("modifiers") or []
                ],
                special_instructions=item.get("special_instructions"),
            ))

        address = None
        if data.get("delivery_address"):
            addr = data["delivery_address"]
            address = PlatformAddress(
                street=addr.get("street", ""),
                city=addr.get("city", ""),
                postal_code=addr.get("postcode", ""),
                country="GB",
            )

        name = " ".join(part for part in (customer.get("first_name"), customer.get("last_name")) if part)
        return PlatformOrder(
            id=order_id,
            display_id=order_id[-8:],
            status=map_platform_status_to_internal(data.get("status"), self.platform),
            created_at=parse_timestamp(data.get("placed_at")) or self._clock(),
            customer=PlatformCustomer(name=name, phone=customer.get("phone_number")),
            items=items,
            # Deliveroo includes tax in item prices and has no tips
            totals=PlatformOrderTotals(
                subtotal=to_decimal(pricing.get("subtotal")),
                delivery_fee=to_decimal(pricing.get("delivery_fee")),
                service_fee=to_decimal(pricing.get("service_fee")),
                total=to_decimal(pricing.get("total")),
                currency=pricing.get("currency") or self.currency,
            ),
            delivery_info=PlatformDeliveryInfo(address=address),
            special_instructions=data.get("special_instructions"),
            raw_data=data,
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        event_type = WEBHOOK_EVENTS.get(payload.get("event_type"), WebhookEventType.UNKNOWN)
        data = payload.get("order") if isinstance(payload.get("order"), dict) else None
        order_id = payload.get("order_id") or (data or {}).get("order_id")
        if not order_id:
            raise ValueError("Deliveroo webhook has no order id")

        order = self.transform_order(data) if data else None
        if event_type == WebhookEventType.ORDER_CANCELLED:
            status = PlatformOrderStatus.CANCELLED
        else:
            status = order.status if order else None

        return WebhookEvent(
            event_type=event_type,
            platform_order_id=order_id,
            order=order,
            status=status,
            store_id=(data or {}).get("restaurant_id"),
            raw=payload,
        )
