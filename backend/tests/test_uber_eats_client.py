"""Tests for the Uber Eats client: OAuth token lifecycle, order actions and payload decoding."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from conftest import TEST_CONFIGS, sign
from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.services.delivery.exceptions import PlatformOrderNotFound, PlatformRequestError
from deliverysync.services.delivery.status import PlatformOrderStatus
from deliverysync.services.delivery.types import (
    PlatformCategory,
    PlatformMenu,
    PlatformMenuItem,
    WebhookEventType,
)
from deliverysync.services.delivery.ubereats import SUSPENDED_FOREVER, UberEatsProvider

TOKEN_PATH = "/oauth/token"
ORDERS_PATH = "/api/stores/store-1/orders"
ORDER_PATH = "/api/stores/store-1/orders/uber-order-123456789"

UBER_ORDER = {
    "id": "uber-order-123456789",
    "display_id": "ABC12",
    "current_state": "created",
    "placed_at": "2026-03-02T11:55:00Z",
    "store": {"id": "store-1"},
    "eater": {"first_name": "Sam", "last_name": "Lee", "phone": "+447700900123"},
    "cart": {
        "items": [
            {
                "id": "burger",
                "title": "Burger",
                "quantity": 2,
                "price": {"unit_price": 650, "total": 1300},
                "selected_modifier_groups": [
                    {"selected_items": [{"id": "cheese", "title": "Cheese", "price": 100, "quantity": 1}]}
                ],
            }
        ],
        "fulfillment": {
            "dropoff": {
                "address": {"street_address": "1 High St", "city": "London", "zip_code": "N1 1AA", "country": "GB"}
            }
        },
    },
    "payment": {
        "charges": {
            "total": {"amount": 1550, "currency_code": "GBP"},
            "sub_total": {"amount": 1300},
            "tax": {"amount": 0},
            "delivery_fee": {"amount": 250},
        }
    },
}


@pytest.fixture
def uber(mock_api, clock):
    return UberEatsProvider(
        client_id="uber-id",
        client_secret="uber-secret",
        store_id="store-1",
        config=TEST_CONFIGS[DeliveryPlatform.UBER_EATS],
        transport=mock_api.transport,
        clock=clock,
    )


class TestUberEatsAuthentication:
    """Client-credentials token handling."""

    @pytest.mark.asyncio
    async def test_token_requested_with_client_credentials(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)

        assert await uber.authenticate() is True

        form = dict(httpx.QueryParams(mock_api.requests[0].content.decode()))
        assert form["grant_type"] == "client_credentials"
        assert form["client_id"] == "uber-id"
        assert form["scope"] == "eats.store eats.orders eats.menu"
        assert uber.token.access_token == "uber_eats-token"

    @pytest.mark.asyncio
    async def test_token_reused_until_expiry(self, uber, mock_api, clock):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS, expires_in=3600)
        mock_api.add("GET", ORDERS_PATH, 200, {"orders": []})

        await uber.get_orders()
        clock.advance(3599)
        await uber.get_orders()
        assert mock_api.token_requests() == 1

        # At the expiry instant the token is no longer usable
        clock.advance(1)
        await uber.get_orders()
        assert mock_api.token_requests() == 2
        assert len(mock_api.calls()) == 3

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_token_request(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("GET", ORDERS_PATH, 200, {"orders": []})

        await asyncio.gather(uber.get_orders(), uber.get_orders(), uber.get_orders())

        assert mock_api.token_requests() == 1
        assert len(mock_api.calls()) == 3

    @pytest.mark.asyncio
    async def test_bearer_header_sent(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("GET", ORDERS_PATH, 200, {"orders": []})

        await uber.get_orders()

        assert mock_api.requests[-1].headers["Authorization"] == "Bearer uber_eats-token"

    @pytest.mark.asyncio
    async def test_unconfigured_client_never_calls_out(self, mock_api, clock):
        client = UberEatsProvider(
            client_id="", client_secret="", store_id="store-1",
            config=TEST_CONFIGS[DeliveryPlatform.UBER_EATS], transport=mock_api.transport, clock=clock,
        )

        assert client.is_configured is False
        assert await client.authenticate() is False
        assert await client.get_orders() == []
        assert client.last_error.code == "AUTH_FAILED"
        assert mock_api.requests == []

    @pytest.mark.asyncio
    async def test_failed_authentication_short_circuits_until_reauthenticated(self, uber, mock_api):
        mock_api.add("POST", TOKEN_PATH, 401, {"error": "invalid_client"})
        mock_api.add("POST", f"{ORDER_PATH}/accept_pos_order", 200, {})

        assert await uber.accept_order("uber-order-123456789") is False
        assert len(mock_api.requests) == 1

        assert await uber.accept_order("uber-order-123456789") is False
        assert uber.last_error.code == "AUTH_FAILED"
        assert len(mock_api.requests) == 1

        mock_api.reset("POST", TOKEN_PATH)
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        assert await uber.authenticate() is True
        assert await uber.accept_order("uber-order-123456789") is True

    @pytest.mark.asyncio
    async def test_unauthorized_response_drops_token(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("POST", f"{ORDER_PATH}/accept_pos_order", 401, {"message": "token expired"})
        mock_api.add("POST", f"{ORDER_PATH}/accept_pos_order", 200, {})

        assert await uber.accept_order("uber-order-123456789") is False
        assert uber.token is None

        assert await uber.accept_order("uber-order-123456789") is True
        assert mock_api.token_requests() == 2


class TestUberEatsOrderActions:
    @pytest.mark.asyncio
    async def test_accept_posts_reason(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("POST", f"{ORDER_PATH}/accept_pos_order", 204)

        assert await uber.accept_order("uber-order-123456789") is True
        assert mock_api.calls() == [("POST", f"{ORDER_PATH}/accept_pos_order")]
        assert mock_api.body() == {"reason": "Order accepted and preparing"}
        assert uber.last_error is None

    @pytest.mark.asyncio
    async def test_platform_error_message_is_kept(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("POST", f"{ORDER_PATH}/accept_pos_order", 409,
                     {"code": "ORDER_ALREADY_CANCELLED", "message": "The eater cancelled this order"})

        assert await uber.accept_order("uber-order-123456789") is False
        assert uber.last_error.code == "ORDER_ALREADY_CANCELLED"
        assert uber.last_error.message == "The eater cancelled this order"
        assert uber.last_error.status_code == 409

    @pytest.mark.asyncio
    async def test_error_without_body_uses_http_status(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("POST", f"{ORDER_PATH}/accept_pos_order", 503)

        assert await uber.accept_order("uber-order-123456789") is False
        assert uber.last_error.code == "HTTP_503"

    @pytest.mark.asyncio
    async def test_network_error(self, uber, mock_api):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add_handler("POST", f"{ORDER_PATH}/accept_pos_order", refuse)

        assert await uber.accept_order("uber-order-123456789") is False
        assert uber.last_error.code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_deny_sends_code_and_explanation(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("POST", f"{ORDER_PATH}/deny_pos_order", 200, {})

        assert await uber.deny_order("uber-order-123456789", "OUT_OF_STOCK", "No buns left") is True
        assert mock_api.body() == {"reason": {"code": "OUT_OF_STOCK", "explanation": "No buns left"}}

    @pytest.mark.asyncio
    async def test_deny_with_unknown_reason_makes_no_call(self, uber, mock_api):
        assert await uber.deny_order("uber-order-123456789", "CLOSING_SOON") is False
        assert uber.last_error.code == "INVALID_REASON"
        assert mock_api.requests == []

    @pytest.mark.asyncio
    async def test_status_update_endpoints(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("POST", f"{ORDER_PATH}/preparing", 200, {})
        mock_api.add("POST", f"{ORDER_PATH}/ready_for_pickup", 200, {})

        assert await uber.update_order_status("uber-order-123456789", PlatformOrderStatus.PREPARING) is True
        assert await uber.update_order_status("uber-order-123456789", PlatformOrderStatus.READY) is True
        assert mock_api.calls() == [
            ("POST", f"{ORDER_PATH}/preparing"),
            ("POST", f"{ORDER_PATH}/ready_for_pickup"),
        ]

    @pytest.mark.asyncio
    async def test_unsupported_status_update(self, uber, mock_api):
        assert await uber.update_order_status("uber-order-123456789", PlatformOrderStatus.COMPLETED) is False
        assert mock_api.requests == []


class TestUberEatsOrders:
    @pytest.mark.asyncio
    async def test_get_orders_filters_and_skips_malformed(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("GET", ORDERS_PATH, 200, {"orders": [UBER_ORDER, {"display_id": "NOID"}]})

        orders = await uber.get_orders(status=PlatformOrderStatus.PREPARING)

        assert [o.id for o in orders] == ["uber-order-123456789"]
        params = mock_api.requests[-1].url.params
        assert params["status"] == "in_progress"
        assert params["store_id"] == "store-1"

    @pytest.mark.asyncio
    async def test_get_orders_failure_returns_empty(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("GET", ORDERS_PATH, 500, {"message": "boom"})

        assert await uber.get_orders() == []
        assert uber.last_error.message == "boom"

    @pytest.mark.asyncio
    async def test_get_order_not_found(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("GET", ORDER_PATH, 404, {"message": "not found"})

        with pytest.raises(PlatformOrderNotFound):
            await uber.get_order("uber-order-123456789")

    @pytest.mark.asyncio
    async def test_get_order_error(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("GET", ORDER_PATH, 500, {"code": "INTERNAL", "message": "try later"})

        with pytest.raises(PlatformRequestError) as exc_info:
            await uber.get_order("uber-order-123456789")
        assert exc_info.value.code == "INTERNAL"

    def test_transform_order_converts_cents(self, uber):
        order = uber.transform_order(UBER_ORDER)

        assert order.display_id == "ABC12"
        assert order.status == PlatformOrderStatus.PENDING
        assert order.customer.name == "Sam Lee"
        assert order.totals.total == Decimal("15.50")
        assert order.totals.subtotal == Decimal("13.00")
        assert order.totals.delivery_fee == Decimal("2.50")
        assert order.totals.currency == "GBP"

        item = order.items[0]
        assert item.unit_price == Decimal("6.50")
        assert item.total_price == Decimal("13.00")
        assert item.modifiers[0].name == "Cheese"
        assert item.modifiers[0].price == Decimal("1.00")
        assert order.delivery_info.address.postal_code == "N1 1AA"
        assert order.raw_data is UBER_ORDER

    def test_transform_order_bare_number_charges(self, uber):
        data = {"id": "o-2", "status": "accepted", "payment": {"charges": {"total": 999}}}

        order = uber.transform_order(data)

        assert order.status == PlatformOrderStatus.ACCEPTED
        assert order.totals.total == Decimal("9.99")
        assert order.totals.currency == "USD"
        assert order.display_id == "o-2"


class TestUberEatsMenuAndStore:
    @pytest.mark.asyncio
    async def test_sync_menu_prices_in_cents(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("PUT", "/api/stores/store-1/menus", 200, {"item_ids": {"burger": "ue-burger"}})
        menu = PlatformMenu(
            categories=[PlatformCategory(id="mains", name="Mains")],
            items=[
                PlatformMenuItem(id="burger", name="Burger", price=Decimal("12.99"), category_id="mains"),
                PlatformMenuItem(id="fries", name="Fries", price=Decimal("3.50"), is_available=False),
            ],
        )

        outcome = await uber.sync_menu(menu)

        assert outcome.success is True
        assert outcome.item_mappings == {"burger": "ue-burger"}
        body = mock_api.body()
        assert body["items"][0]["price_info"]["price"] == 1299
        assert body["items"][1]["suspension_info"]["suspension"]["suspended_until"] == SUSPENDED_FOREVER
        assert body["categories"][0]["entities"] == ["burger"]

    @pytest.mark.asyncio
    async def test_sync_menu_failure(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("PUT", "/api/stores/store-1/menus", 400, {"message": "bad menu"})

        outcome = await uber.sync_menu(PlatformMenu())

        assert outcome.success is False
        assert uber.last_error.message == "bad menu"

    @pytest.mark.asyncio
    async def test_store_availability(self, uber, mock_api):
        mock_api.allow_oauth(DeliveryPlatform.UBER_EATS)
        mock_api.add("POST", "/api/stores/store-1/status", 200, {})

        assert await uber.set_store_availability(False) is True
        assert mock_api.body() == {"status": "OFFLINE"}


class TestUberEatsWebhooks:
    def test_signature(self, uber):
        body = json.dumps(UBER_ORDER)

        assert uber.verify_webhook(body.encode(), sign("uber-secret", body)) is True
        assert uber.verify_webhook(body.encode(), sign("other-secret", body)) is False
        assert uber.verify_webhook(body.encode(), None) is False

    def test_dedicated_webhook_secret(self, mock_api):
        client = UberEatsProvider("uber-id", "uber-secret", "store-1", webhook_secret="hook-secret",
                                  config=TEST_CONFIGS[DeliveryPlatform.UBER_EATS], transport=mock_api.transport)
        body = "{}"

        assert client.verify_webhook(body.encode(), sign("hook-secret", body)) is True
        assert client.verify_webhook(body.encode(), sign("uber-secret", body)) is False

    def test_new_order_event(self, uber):
        event = uber.parse_webhook(UBER_ORDER)

        assert event.event_type == WebhookEventType.ORDER_CREATED
        assert event.platform_order_id == "uber-order-123456789"
        assert event.store_id == "store-1"
        assert event.order.items[0].name == "Burger"

    def test_wrapped_cancel_event(self, uber):
        payload = {"event_type": "orders.cancel", "order": {**UBER_ORDER, "current_state": "accepted"}}

        event = uber.parse_webhook(payload)

        assert event.event_type == WebhookEventType.ORDER_CANCELLED
        assert event.status == PlatformOrderStatus.CANCELLED
        assert event.raw is payload

    def test_status_update_event(self, uber):
        event = uber.parse_webhook({**UBER_ORDER, "current_state": "ready_for_pickup"})

        assert event.event_type == WebhookEventType.ORDER_UPDATED
        assert event.status == PlatformOrderStatus.READY

    def test_payload_without_order_id(self, uber):
        with pytest.raises(ValueError):
            uber.parse_webhook({"event_type": "orders.notification"})
