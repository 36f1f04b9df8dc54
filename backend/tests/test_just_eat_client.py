"""Tests for the Just Eat client and its acceptance timeout rules."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import TEST_CONFIGS
from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.services.delivery.justeat import JustEatProvider, calculate_acceptance_timeout
from deliverysync.services.delivery.status import PlatformOrderStatus
from deliverysync.services.delivery.types import PlatformMenu, PlatformMenuItem, WebhookEventType

RESTAURANT_PATH = "/api/restaurants/je-rest-1"
ORDER_PATH = "/api/restaurants/je-rest-1/orders/je-555"

PLACED = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

JUST_EAT_ORDER = {
    "orderId": "je-555",
    "friendlyOrderReference": "JE-555",
    "status": "new",
    "placedDate": "2026-03-02T12:00:00Z",
    "restaurant": {"id": "je-rest-1"},
    "customer": {
        "name": "Robin Fox",
        "phoneNumber": "+447700900789",
        "address": {"street": "3 Mill Ln", "city": "Bristol", "postcode": "BS1 1AA"},
    },
    "basket": {
        "items": [{"productId": "pizza", "name": "Margherita", "quantity": 2, "price": "18.00"}],
        "subTotal": "18.00",
        "deliveryCharge": "1.50",
        "total": "19.50",
    },
    "deliveryInstructions": "Ring twice",
}


@pytest.fixture
def just_eat(mock_api, clock):
    return JustEatProvider(
        api_token="je-token",
        restaurant_id="je-rest-1",
        config=TEST_CONFIGS[DeliveryPlatform.JUST_EAT],
        transport=mock_api.transport,
        clock=clock,
    )


class TestAcceptanceTimeout:
    @pytest.mark.parametrize("lead,expected", [
        (None, (15, "minutes")),
        (timedelta(hours=2), (15, "minutes")),
        (timedelta(hours=23, minutes=59), (15, "minutes")),
        (timedelta(hours=24), (2, "hours")),
        (timedelta(hours=47), (2, "hours")),
        (timedelta(hours=48), (24, "hours")),
        (timedelta(days=5), (24, "hours")),
    ])
    def test_timeout_by_lead_time(self, lead, expected):
        delivery_at = PLACED + lead if lead is not None else None

        timeout = calculate_acceptance_timeout(PLACED, delivery_at)

        assert (timeout.timeout, timeout.unit) == expected

    def test_acceptance_deadline_uses_lead_time(self, just_eat):
        deadline = just_eat.acceptance_deadline(PLACED, PLACED + timedelta(hours=30))

        assert deadline == PLACED + timedelta(hours=2)


class TestJustEatAuthentication:
    @pytest.mark.asyncio
    async def test_token_validated_against_restaurant(self, just_eat, mock_api):
        mock_api.add("GET", RESTAURANT_PATH, 200, {"id": "je-rest-1"})

        assert await just_eat.authenticate() is True
        assert mock_api.requests[0].headers["Authorization"] == "Bearer je-token"

    @pytest.mark.asyncio
    async def test_rejected_token_short_circuits(self, just_eat, mock_api):
        mock_api.add("GET", RESTAURANT_PATH, 401, {"errorCode": "UNAUTHORIZED"})

        assert await just_eat.authenticate() is False
        assert await just_eat.accept_order("je-555") is False
        assert just_eat.last_error.code == "AUTH_FAILED"
        assert len(mock_api.requests) == 1

    @pytest.mark.asyncio
    async def test_unauthorized_api_response_blocks_further_calls(self, just_eat, mock_api):
        mock_api.add("POST", f"{ORDER_PATH}/accept", 401, {"errorCode": "TOKEN_REVOKED", "errorMessage": "Revoked"})

        assert await just_eat.accept_order("je-555") is False
        assert just_eat.last_error.code == "TOKEN_REVOKED"

        assert await just_eat.accept_order("je-555") is False
        assert just_eat.last_error.code == "AUTH_FAILED"
        assert len(mock_api.requests) == 1

    @pytest.mark.asyncio
    async def test_unconfigured(self, mock_api):
        client = JustEatProvider(api_token="", restaurant_id="je-rest-1",
                                 config=TEST_CONFIGS[DeliveryPlatform.JUST_EAT], transport=mock_api.transport)

        assert await client.authenticate() is False
        assert await client.set_store_availability(True) is False
        assert mock_api.requests == []


class TestJustEatOrderActions:
    @pytest.mark.asyncio
    async def test_accept_default_prep_time(self, just_eat, mock_api, clock):
        mock_api.add("POST", f"{ORDER_PATH}/accept", 200, {})

        assert await just_eat.accept_order("je-555") is True
        assert mock_api.body() == {"acceptedAt": clock().isoformat(), "estimatedPrepTime": 30}

    @pytest.mark.asyncio
    async def test_accept_custom_prep_time(self, just_eat, mock_api):
        mock_api.add("POST", f"{ORDER_PATH}/accept", 200, {})

        assert await just_eat.accept_order("je-555", estimated_prep_time=45) is True
        assert mock_api.body()["estimatedPrepTime"] == 45

    @pytest.mark.asyncio
    async def test_reject(self, just_eat, mock_api):
        mock_api.add("POST", f"{ORDER_PATH}/reject", 200, {})

        assert await just_eat.deny_order("je-555", "CLOSING", "Kitchen closing") is True
        body = mock_api.body()
        assert body["reason"] == "CLOSING"
        assert body["notes"] == "Kitchen closing"

    @pytest.mark.asyncio
    async def test_reject_with_other_platform_reason(self, just_eat, mock_api):
        assert await just_eat.deny_order("je-555", "STORE_CLOSED") is False
        assert just_eat.last_error.code == "INVALID_REASON"
        assert mock_api.requests == []

    @pytest.mark.asyncio
    async def test_status_update_uses_platform_token(self, just_eat, mock_api):
        mock_api.add("PUT", f"{ORDER_PATH}/status", 200, {})

        assert await just_eat.update_order_status("je-555", PlatformOrderStatus.PREPARING) is True
        assert mock_api.body()["status"] == "cooking"

    @pytest.mark.asyncio
    async def test_cannot_move_back_to_pending(self, just_eat, mock_api):
        assert await just_eat.update_order_status("je-555", PlatformOrderStatus.PENDING) is False
        assert mock_api.requests == []

    @pytest.mark.asyncio
    async def test_error_fields(self, just_eat, mock_api):
        mock_api.add("PUT", f"{ORDER_PATH}/status", 409,
                     {"errorCode": "INVALID_TRANSITION", "errorMessage": "Order already delivered"})

        assert await just_eat.update_order_status("je-555", PlatformOrderStatus.READY) is False
        assert just_eat.last_error.code == "INVALID_TRANSITION"
        assert just_eat.last_error.message == "Order already delivered"


class TestJustEatOrders:
    def test_transform_order(self, just_eat):
        order = just_eat.transform_order(JUST_EAT_ORDER)

        assert order.display_id == "JE-555"
        assert order.status == PlatformOrderStatus.PENDING
        assert order.items[0].unit_price == Decimal("9.00")
        assert order.totals.total == Decimal("19.50")
        assert order.special_instructions == "Ring twice"
        assert order.delivery_info.requested_delivery_time is None

    def test_requested_delivery_date(self, just_eat):
        order = just_eat.transform_order({**JUST_EAT_ORDER, "requestedDeliveryDate": "2026-03-04T19:00:00Z"})

        assert order.delivery_info.requested_delivery_time == datetime(2026, 3, 4, 19, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_sync_menu_decimal_prices(self, just_eat, mock_api):
        mock_api.add("PUT", "/api/restaurants/je-rest-1/menu", 200, {"productMappings": {"pizza": "je-pizza"}})

        outcome = await just_eat.sync_menu(PlatformMenu(items=[
            PlatformMenuItem(id="pizza", name="Margherita", price=Decimal("9.00")),
        ]))

        assert outcome.item_mappings == {"pizza": "je-pizza"}
        assert mock_api.body()["products"][0]["price"] == 9.0

    @pytest.mark.asyncio
    async def test_availability(self, just_eat, mock_api, clock):
        mock_api.add("PUT", "/api/restaurants/je-rest-1/availability", 200, {})

        assert await just_eat.set_store_availability(False) is True
        assert mock_api.body() == {"isOpen": False, "updatedAt": clock().isoformat()}


class TestJustEatWebhooks:
    def test_order_placed(self, just_eat):
        event = just_eat.parse_webhook({"eventType": "OrderPlaced", "order": JUST_EAT_ORDER})

        assert event.event_type == WebhookEventType.ORDER_CREATED
        assert event.store_id == "je-rest-1"
        assert event.status == PlatformOrderStatus.PENDING

    def test_order_accepted(self, just_eat):
        event = just_eat.parse_webhook({"eventType": "OrderAccepted", "order": JUST_EAT_ORDER})

        assert event.event_type == WebhookEventType.ORDER_UPDATED
        assert event.status == PlatformOrderStatus.ACCEPTED

    def test_order_cancelled(self, just_eat):
        event = just_eat.parse_webhook({"eventType": "OrderCancelled", "order": JUST_EAT_ORDER})

        assert event.status == PlatformOrderStatus.CANCELLED

    def test_order_body_required(self, just_eat):
        with pytest.raises(ValueError):
            just_eat.parse_webhook({"eventType": "OrderCancelled", "orderId": "je-555"})
