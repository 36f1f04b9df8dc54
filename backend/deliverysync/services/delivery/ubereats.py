"""Uber Eats API integration."""

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
    from_minor_units,
    parse_timestamp,
    to_minor_units,
)

logger = logging.getLogger(__name__)

UBEREATS_AUTH_URL = "https://login.uber.com/oauth/v2"
UBEREATS_API_BASE = "https://api.uber.com/v1/eats"

# Suspension timestamp far enough in the future to hide an item indefinitely
SUSPENDED_FOREVER = 9999999999


def _translated(text: str) -> Dict[str, Any]:
    return {"translations": {"en-US": text}}


def _charge(charges: Dict[str, Any], key: str) -> Any:
    """Charges arrive either as ``{"amount": 1250}`` or as a bare number."""
    value = charges.get(key)
    if isinstance(value, dict):
        return value.get("amount")
    return value


class UberEatsProvider(OAuthClientCredentialsProvider):
    """Uber Eats API client.

    Orders must be accepted or denied within 11.5 minutes of being placed,
    after which Uber cancels them.
    """

    platform = DeliveryPlatform.UBER_EATS
    display_name = "Uber Eats"

    ACCEPTANCE_DEADLINE = timedelta(minutes=11, seconds=30)
    SIGNATURE_HEADER = "X-Uber-Signature"
    DENY_REASON_CODES = frozenset({"STORE_CLOSED", "OUT_OF_STOCK", "TOO_BUSY", "OTHER"})
    SCOPE = "eats.store eats.orders eats.menu"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        store_id: str,
        webhook_secret: Optional[str] = None,
        config: Optional[PlatformConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(
            config or PlatformConfig(api_url=UBEREATS_API_BASE, auth_url=UBEREATS_AUTH_URL),
            client_id,
            client_secret,
            transport=transport,
            clock=clock,
        )
        self._store_id = store_id
        self._webhook_secret = webhook_secret

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._store_id)

    @property
    def store_id(self) -> str:
        return self._store_id

    @property
    def webhook_secret(self) -> str:
        return self._webhook_secret or self._client_secret

    def _order_path(self, order_id: str) -> str:
        return f"/stores/{self._store_id}/orders/{order_id}"

    # ---- orders ----

    async def get_orders(
        self, status: Optional[PlatformOrderStatus] = None, since: Optional[datetime] = None
    ) -> List[PlatformOrder]:
        params: Dict[str, Any] = {"store_id": self._store_id}
        if status:
            params["status"] = map_internal_status_to_platform(status.value, self.platform)
        if since:
            params["since"] = since.isoformat()

        resp = await self._request("GET", f"/stores/{self._store_id}/orders", params=params)
        if not resp.success or not isinstance(resp.data, dict):
            logger.error(f"Failed to fetch Uber Eats orders: {self.last_error}")
            return []

        orders = []
        for raw in resp.data.get("orders", []):
            try:
                orders.append(self.transform_order(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed Uber Eats order {raw.get('id') if isinstance(raw, dict) else raw!r}: {e}")
        return orders

    async def get_order(self, order_id: str) -> PlatformOrder:
        resp = await self._request("GET", self._order_path(order_id))
        if not resp.success:
            if resp.error.status_code == 404:
                raise PlatformOrderNotFound(order_id, resp.error.details)
            raise PlatformRequestError(resp.error.code, resp.error.message, resp.error.details)
        return self.transform_order(resp.data)

    async def update_order_status(self, order_id: str, status: PlatformOrderStatus) -> bool:
        # Uber only exposes explicit endpoints for these two transitions
        endpoints = {
            PlatformOrderStatus.PREPARING: "preparing",
            PlatformOrderStatus.READY: "ready_for_pickup",
        }
        endpoint = endpoints.get(status)
        if endpoint is None:
            logger.warning(f"Uber Eats has no endpoint for status {status.value}")
            return False

        resp = await self._request(
            "POST",
            f"{self._order_path(order_id)}/{endpoint}",
            json_body={"reason": "Updated from POS system"},
        )
        if not resp.success:
            logger.error(f"Failed to update Uber Eats order {order_id} to {status.value}: {self.last_error}")
            return False
        return True

    async def accept_order(self, order_id: str, **kwargs: Any) -> bool:
        resp = await self._request(
            "POST",
            f"{self._order_path(order_id)}/accept_pos_order",
            json_body={"reason": kwargs.get("reason") or "Order accepted and preparing"},
        )
        if not resp.success:
            logger.error(f"Failed to accept Uber Eats order {order_id}: {self.last_error}")
            return False
        logger.info(f"Accepted Uber Eats order {order_id}")
        return True

    async def deny_order(self, order_id: str, reason_code: str, explanation: Optional[str] = None) -> bool:
        if not self._validate_reason(reason_code):
            return False
        resp = await self._request(
            "POST",
            f"{self._order_path(order_id)}/deny_pos_order",
            json_body={
                "reason": {
                    "code": reason_code,
                    "explanation": explanation or "Unable to fulfill order",
                }
            },
        )
        if not resp.success:
            logger.error(f"Failed to deny Uber Eats order {order_id}: {self.last_error}")
            return False
        logger.info(f"Denied Uber Eats order {order_id} ({reason_code})")
        return True

    # ---- menu / store ----

    async def sync_menu(self, menu: PlatformMenu) -> MenuSyncOutcome:
        category_items: Dict[str, List[str]] = {}
        for item in menu.items:
            if item.category_id:
                category_items.setdefault(item.category_id, []).append(item.id)

        body = {
            "store_id": self._store_id,
            "categories": [
                {
                    "id": category.id,
                    "title": _translated(category.name),
                    "entities": category_items.get(category.id, []),
                }
                for category in menu.categories
            ],
            "items": [
                {
                    "id": item.id,
                    "title": _translated(item.name),
                    "description": _translated(item.description) if item.description else None,
                    "price_info": {
                        "price": to_minor_units(item.price),
                        "core_price": to_minor_units(item.price),
                    },
                    "quantity_info": {"quantity": {"max_permitted": 999}},
                    "suspension_info": {
                        "suspension": {"suspended_until": 0 if item.is_available else SUSPENDED_FOREVER}
                    },
                    "image_url": item.image_url,
                    "modifier_group_ids": item.modifier_group_ids,
                }
                for item in menu.items
            ],
            "modifier_groups": [
                {
                    "id": group.id,
                    "title": _translated(group.name),
                    "modifiers": [
                        {
                            "id": option.id,
                            "title": _translated(option.name),
                            "price_info": {"price": to_minor_units(option.price)},
                            "quantity_info": {"quantity": {"max_permitted": group.max_selections}},
                        }
                        for option in group.options
                    ],
                    "quantity_info": {
                        "quantity": {
                            "min_permitted": group.min_selections,
                            "max_permitted": group.max_selections,
                        }
                    },
                }
                for group in menu.modifier_groups
            ],
        }

        resp = await self._request("PUT", f"/stores/{self._store_id}/menus", json_body=body)
        if not resp.success:
            logger.error(f"Failed to sync Uber Eats menu: {self.last_error}")
            return MenuSyncOutcome(success=False)
        mappings = resp.data.get("item_ids", {}) if isinstance(resp.data, dict) else {}
        return MenuSyncOutcome(success=True, item_mappings=mappings or {})

    async def set_store_availability(self, is_open: bool) -> bool:
        resp = await self._request(
            "POST",
            f"/stores/{self._store_id}/status",
            json_body={"status": "ONLINE" if is_open else "OFFLINE"},
        )
        if not resp.success:
            logger.error(f"Failed to set Uber Eats store availability: {self.last_error}")
            return False
        return True

    # ---- inbound ----

    def transform_order(self, data: Dict[str, Any]) -> PlatformOrder:
        """Uber Eats order (API or webhook shape) to a PlatformOrder."""
        order_id = data["id"]
        eater = data.get("eater") or {}
        cart = data.get("cart") or {}
        charges = (data.get("payment") or {}).get("charges") or {}
        total_charge = charges.get("total")
        currency = total_charge.get("currency_code") if isinstance(total_charge, dict) else None

        items = []
        for item in cart.get("items") or []:
            modifiers = []
            for group in item.get("selected_modifier_groups") or []:
                for mod in group.get("selected_items") or group.get("modifiers") or []:
                    modifiers.append(PlatformModifier(
                        id=str(mod.get("id", "")),
                        name=mod.get("title", ""),
                        price=from_minor_units(mod.get("price")),
                        quantity=mod.get("quantity") or 1,
                    ))
            price = item.get("price") or {}
            items.append(PlatformOrderItem(
                id=str(item.get("id", "")),
                name=item.get("title", ""),
                quantity=int(item.get("quantity") or 1),
                unit_price=from_minor_units(price.get("unit_price")),
                total_price=from_minor_units(price.get("total")),
                modifiers=modifiers,
                special_instructions=item.get("special_instructions"),
            ))

        total = _charge(charges, "total")
        totals = PlatformOrderTotals(
            subtotal=from_minor_units(_charge(charges, "sub_total") or total),
            tax=from_minor_units(_charge(charges, "tax")),
            delivery_fee=from_minor_units(_charge(charges, "delivery_fee")),
            service_fee=from_minor_units(_charge(charges, "small_order_fee")),
            tip=from_minor_units(_charge(charges, "tip")),
            total=from_minor_units(total),
            currency=currency or "USD",
        )

        dropoff = (cart.get("fulfillment") or {}).get("dropoff") or {}
        address = None
        if dropoff.get("address"):
            addr = dropoff["address"]
            address = PlatformAddress(
                street=addr.get("street_address", ""),
                city=addr.get("city", ""),
                postal_code=addr.get("zip_code", ""),
                country=addr.get("country", ""),
            )

        name = " ".join(part for part in (eater.get("first_name"), eater.get("last_name")) if part)
        return PlatformOrder(
            id=order_id,
            display_id=data.get("display_id") or order_id[-8:],
            status=map_platform_status_to_internal(
                data.get("current_state") or data.get("status"), self.platform
            ),
            created_at=parse_timestamp(data.get("placed_at")) or self._clock(),
            customer=PlatformCustomer(name=name, phone=eater.get("phone")),
            items=items,
            totals=totals,
            delivery_info=PlatformDeliveryInfo(
                address=address,
                estimated_pickup_time=parse_timestamp(data.get("estimated_ready_for_pickup_at")),
                estimated_delivery_time=parse_timestamp(data.get("estimated_delivery_time")),
            ),
            special_instructions=data.get("special_instructions") or cart.get("special_instructions"),
            raw_data=data,
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Uber Eats posts the order itself, optionally wrapped in ``{"order": ...}``."""
        event_name = payload.get("event_type")
        data = payload.get("order") if isinstance(payload.get("order"), dict) else payload
        if not data.get("id"):
            raise ValueError("Uber Eats webhook has no order id")

        order = self.transform_order(data)
        status = order.status
        if event_name == "orders.cancel" or status == PlatformOrderStatus.CANCELLED:
            event_type = WebhookEventType.ORDER_CANCELLED
            # current_state on a cancel event can still be the pre-cancel state
            status = PlatformOrderStatus.CANCELLED
        elif order.status == PlatformOrderStatus.PENDING:
            event_type = WebhookEventType.ORDER_CREATED
        else:
            event_type = WebhookEventType.ORDER_UPDATED

        return WebhookEvent(
            event_type=event_type,
            platform_order_id=order.id,
            order=order,
            status=status,
            store_id=(data.get("store") or {}).get("id"),
            raw=payload,
        )
