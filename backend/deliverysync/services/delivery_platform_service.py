"""Delivery platform integration service - Uber Eats / Deliveroo / Just Eat.

Owns the per-organization integration records and every flow that touches
both the internal order record and a marketplace: accepting and rejecting
orders, status sync, menu and availability pushes, and webhook ingestion.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deliverysync.db.base import to_naive_utc, utcnow
from deliverysync.models.delivery import (
    DeliveryPlatform,
    Order,
    OrderItem,
    OrderStatus,
    PlatformIntegration,
    WebhookQueueEntry,
)
from deliverysync.services.delivery.base import DeliveryProvider
from deliverysync.services.delivery.exceptions import (
    DeliveryIntegrationError,
    IntegrationNotFound,
    PlatformOrderNotFound,
    PlatformRequestError,
    UnsupportedPlatformError,
    WebhookRejected,
)
from deliverysync.services.delivery.factory import create_platform_client
from deliverysync.services.delivery.status import (
    is_forward_transition,
    to_order_status,
    to_platform_status,
)
from deliverysync.services.delivery.types import (
    MenuSyncResult,
    PlatformMenu,
    PlatformOrder,
    WebhookEvent,
    WebhookEventType,
)
from deliverysync.services.platform_jobs import (
    SYNC_MENU,
    TEST_PLATFORM_CONNECTION,
    PlatformJobClient,
    PlatformJobError,
)
from deliverysync.services.webhook_queue_service import WebhookQueueService

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[DeliveryPlatform, Mapping[str, Any]], DeliveryProvider]

# Machine-readable failure codes carried in ServiceResponse.details["code"]
ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
NOT_A_DELIVERY_ORDER = "NOT_A_DELIVERY_ORDER"
INTEGRATION_NOT_FOUND = "INTEGRATION_NOT_FOUND"
INVALID_STATE = "INVALID_STATE"
INVALID_STATUS = "INVALID_STATUS"
ORDER_BUSY = "ORDER_BUSY"
CONFLICT = "CONFLICT"
UNSUPPORTED_PLATFORM = "UNSUPPORTED_PLATFORM"
PLATFORM_ERROR = "PLATFORM_ERROR"
PLATFORM_ORDER_NOT_FOUND = "PLATFORM_ORDER_NOT_FOUND"
JOB_FAILED = "JOB_FAILED"


@dataclass
class ServiceResponse(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "ServiceResponse[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str, **details: Any) -> "ServiceResponse[T]":
        return cls(success=False, error=error, details={"code": code, **details})

    @property
    def code(self) -> Optional[str]:
        return self.details.get("code")


def _money(value: Optional[Decimal]) -> float:
    return float(value or 0)


class DeliveryPlatformService:
    """Integration registry and order orchestration for one database session."""

    def __init__(
        self,
        db: Session,
        *,
        client_factory: ClientFactory = create_platform_client,
        jobs: Optional[PlatformJobClient] = None,
        webhook_base_url: str = "",
        queue: Optional[WebhookQueueService] = None,
    ):
        self.db = db
        self.client_factory = client_factory
        self.jobs = jobs
        self.webhook_base_url = webhook_base_url.rstrip("/")
        self.queue = queue or WebhookQueueService(db)

    def _client_for(self, integration: PlatformIntegration) -> DeliveryProvider:
        return self.client_factory(integration.platform, integration.credentials or {})

    # ==================== INTEGRATIONS ====================

    def get_active_platforms(self, organization_id: str) -> ServiceResponse[List[PlatformIntegration]]:
        integrations = (
            self.db.query(PlatformIntegration)
            .filter(
                PlatformIntegration.organization_id == organization_id,
                PlatformIntegration.is_active == True,  # noqa: E712
            )
            .order_by(PlatformIntegration.created_at.desc())
            .all()
        )
        return ServiceResponse.ok(integrations)

    def get_all_platforms(self, organization_id: str) -> ServiceResponse[List[PlatformIntegration]]:
        integrations = (
            self.db.query(PlatformIntegration)
            .filter(PlatformIntegration.organization_id == organization_id)
            .order_by(PlatformIntegration.created_at.desc())
            .all()
        )
        return ServiceResponse.ok(integrations)

    def get_platform_by_id(self, integration_id: str) -> ServiceResponse[PlatformIntegration]:
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)
        return ServiceResponse.ok(integration)

    def generate_webhook_url(self, platform: DeliveryPlatform, organization_id: str) -> str:
        """URL the marketplace is configured to call for this organization."""
        platform = DeliveryPlatform(platform)
        return f"{self.webhook_base_url}/{platform.slug}-webhook?{urlencode({'org': organization_id})}"

    def upsert_platform_integration(
        self,
        organization_id: str,
        platform: Any,
        platform_restaurant_id: str,
        credentials: Mapping[str, Any],
        settings: Optional[Mapping[str, Any]] = None,
    ) -> ServiceResponse[PlatformIntegration]:
        """Create or replace the organization's integration for ``platform``.

        The record is always saved inactive; a successful connection test
        activates it.
        """
        try:
            platform = DeliveryPlatform(platform)
        except ValueError:
            return ServiceResponse.fail(f"Unsupported platform: {platform}", UNSUPPORTED_PLATFORM)

        integration = (
            self.db.query(PlatformIntegration)
            .filter(
                PlatformIntegration.organization_id == organization_id,
                PlatformIntegration.platform == platform,
            )
            .first()
        )
        if integration is None:
            integration = PlatformIntegration(organization_id=organization_id, platform=platform)
            self.db.add(integration)

        integration.platform_restaurant_id = platform_restaurant_id
        integration.credentials = dict(credentials)
        integration.settings = dict(settings or {})
        integration.webhook_url = self.generate_webhook_url(platform, organization_id)
        integration.is_active = False

        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.error(f"Failed to save {platform.value} integration for org {organization_id}: {e}")
            return ServiceResponse.fail("Integration was modified concurrently", CONFLICT)

        self.db.refresh(integration)
        logger.info(f"Saved {platform.value} integration {integration.id} for org {organization_id}")
        return ServiceResponse.ok(integration)

    def toggle_platform_active(self, integration_id: str, is_active: bool) -> ServiceResponse[PlatformIntegration]:
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)
        integration.is_active = is_active
        self.db.commit()
        self.db.refresh(integration)
        return ServiceResponse.ok(integration)

    def delete_platform_integration(self, integration_id: str) -> ServiceResponse[None]:
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)
        try:
            self.db.delete(integration)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Deleted integration {integration_id}")
        return ServiceResponse.ok()

    def update_sync_time(self, integration_id: str) -> ServiceResponse[None]:
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)
        integration.last_sync_at = utcnow()
        self.db.commit()
        return ServiceResponse.ok()

    async def test_platform_connection(
        self, integration_id: str, activate_on_success: bool = True
    ) -> ServiceResponse[Dict[str, Any]]:
        """Check the integration's credentials against the platform.

        Runs the ``test-platform-connection`` job when a job runner is
        configured, otherwise authenticates in-process.
        """
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)

        if self.jobs is not None and self.jobs.is_configured:
            try:
                result = await self.jobs.invoke(TEST_PLATFORM_CONNECTION, {"integrationId": integration_id})
            except PlatformJobError as e:
                return ServiceResponse.fail(e.message, JOB_FAILED)
            connected = bool(result.get("connected"))
            data: Dict[str, Any] = {
                "connected": connected,
                "message": result.get("message") or ("Connected" if connected else "Unknown error"),
            }
            if result.get("details") is not None:
                data["details"] = result["details"]
        else:
            client = self._client_for(integration)
            connected = await client.authenticate()
            data = {
                "connected": connected,
                "message": "Connected" if connected else (
                    client.last_error.message if client.last_error else "Authentication failed"
                ),
            }

        if connected and activate_on_success:
            integration.is_active = True
            self.db.commit()
            logger.info(f"Activated integration {integration_id} after successful connection test")

        if not connected:
            return ServiceResponse(success=False, data=data, error=data["message"], details={"code": PLATFORM_ERROR})
        return ServiceResponse.ok(data)

    # ==================== MENU / STORE ====================

    def _stamp_synced(self, integrations: List[PlatformIntegration]) -> None:
        now = utcnow()
        for integration in integrations:
            integration.last_sync_at = now
        self.db.commit()

    async def sync_menu_to_all_platforms(self, organization_id: str) -> ServiceResponse[Dict[str, Any]]:
        """Batch menu sync for every active integration via the ``sync-menu`` job."""
        if self.jobs is None:
            return ServiceResponse.fail("Menu sync job runner is not configured", JOB_FAILED)
        try:
            result = await self.jobs.invoke(SYNC_MENU, {"organizationId": organization_id, "syncAll": True})
        except PlatformJobError as e:
            return ServiceResponse.fail(e.message, JOB_FAILED)

        results: Dict[str, MenuSyncResult] = {}
        for platform, raw in (result.get("results") or {}).items():
            results[platform] = MenuSyncResult(
                success=bool(raw.get("success")),
                platform=platform,
                message=raw.get("message", ""),
                item_mappings=raw.get("item_mappings") or raw.get("itemMappings") or {},
            )

        synced = []
        for platform, sync_result in results.items():
            if not sync_result.success:
                continue
            try:
                synced.append(DeliveryPlatform(platform))
            except ValueError:
                logger.warning(f"Menu sync job reported unknown platform {platform}")
        if synced:
            integrations = (
                self.db.query(PlatformIntegration)
                .filter(
                    PlatformIntegration.organization_id == organization_id,
                    PlatformIntegration.platform.in_(synced),
                )
                .all()
            )
            self._stamp_synced(integrations)

        overall = bool(result.get("overallSuccess", bool(results) and all(r.success for r in results.values())))
        data = {"results": {p: r.to_dict() for p, r in results.items()}, "overall_success": overall}
        if not overall:
            return ServiceResponse(success=False, data=data, error="Menu sync failed on one or more platforms",
                                   details={"code": PLATFORM_ERROR})
        return ServiceResponse.ok(data)

    async def sync_menu_to_platform(self, integration_id: str, platform: Any) -> ServiceResponse[MenuSyncResult]:
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)
        if self.jobs is None:
            return ServiceResponse.fail("Menu sync job runner is not configured", JOB_FAILED)

        platform = DeliveryPlatform(platform)
        try:
            raw = await self.jobs.invoke(SYNC_MENU, {"integrationId": integration_id, "platform": platform.value})
        except PlatformJobError as e:
            return ServiceResponse.fail(e.message, JOB_FAILED)

        result = MenuSyncResult(
            success=bool(raw.get("success")),
            platform=platform.value,
            message=raw.get("message", ""),
            item_mappings=raw.get("item_mappings") or raw.get("itemMappings") or {},
        )
        if not result.success:
            return ServiceResponse(success=False, data=result, error=result.message or "Menu sync failed",
                                   details={"code": PLATFORM_ERROR})
        self._stamp_synced([integration])
        return ServiceResponse.ok(result)

    async def push_menu_to_platform(self, integration_id: str, menu: PlatformMenu) -> ServiceResponse[MenuSyncResult]:
        """Replace the platform menu directly through the platform client."""
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)

        client = self._client_for(integration)
        outcome = await client.sync_menu(menu)
        if not outcome.success:
            message = client.last_error.message if client.last_error else "Menu sync failed"
            result = MenuSyncResult(success=False, platform=integration.platform.value, message=message)
            return ServiceResponse(success=False, data=result, error=message, details={"code": PLATFORM_ERROR})

        self._stamp_synced([integration])
        return ServiceResponse.ok(MenuSyncResult(
            success=True,
            platform=integration.platform.value,
            message=f"Synced {len(menu.items)} items",
            item_mappings=outcome.item_mappings,
        ))

    async def set_store_availability(self, integration_id: str, is_open: bool) -> ServiceResponse[Dict[str, Any]]:
        integration = self.db.get(PlatformIntegration, integration_id)
        if integration is None:
            return ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)

        client = self._client_for(integration)
        if not await client.set_store_availability(is_open):
            message = client.last_error.message if client.last_error else "Failed to update store availability"
            return ServiceResponse.fail(message, PLATFORM_ERROR)
        return ServiceResponse.ok({"integration_id": integration_id, "is_open": is_open})

    # ==================== ORDER DECISIONS ====================

    def _load_delivery_order(self, order_id: str):
        """Returns (order, integration, failure)."""
        order = self.db.get(Order, order_id)
        if order is None:
            return None, None, ServiceResponse.fail("Order not found", ORDER_NOT_FOUND)
        if not order.is_delivery_order:
            return order, None, ServiceResponse.fail("Order is not from a delivery platform", NOT_A_DELIVERY_ORDER)
        integration = order.platform_integration
        if integration is None:
            return order, None, ServiceResponse.fail("Platform integration not found", INTEGRATION_NOT_FOUND)
        return order, integration, None

    def _release_claim(self, order_id: str, action: str) -> None:
        self.db.query(Order).filter(Order.id == order_id, Order.platform_action == action).update(
            {Order.platform_action: None}, synchronize_session=False
        )
        self.db.commit()

    def _warn_if_late(self, client: DeliveryProvider, order: Order) -> None:
        placed_at = order.placed_at or order.created_at
        deadline = client.acceptance_deadline(placed_at, order.scheduled_for)
        if utcnow() > deadline:
            logger.warning(
                f"{client.display_name} order {order.platform_order_id} is past its acceptance "
                f"deadline ({deadline.isoformat()}); the platform may already have cancelled it"
            )

    async def _decide_order(
        self,
        order_id: str,
        action: str,
        target_status: OrderStatus,
        call: Callable[[DeliveryProvider, str], Any],
    ) -> ServiceResponse[Dict[str, Any]]:
        order, integration, failure = self._load_delivery_order(order_id)
        if failure:
            return failure
        if order.status != OrderStatus.PENDING:
            return ServiceResponse.fail(
                f"Order is {order.status.value}, only pending orders can be {action}ed", INVALID_STATE
            )

        try:
            client = self._client_for(integration)
        except UnsupportedPlatformError as e:
            return ServiceResponse.fail(str(e), UNSUPPORTED_PLATFORM)

        claimed = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.status == OrderStatus.PENDING, Order.platform_action.is_(None))
            .update({Order.platform_action: action}, synchronize_session=False)
        )
        self.db.commit()
        if not claimed:
            return ServiceResponse.fail("Order is already being processed", ORDER_BUSY)

        platform_order_id = order.platform_order_id
        self._warn_if_late(client, order)
        try:
            accepted = await call(client, platform_order_id)
        except Exception:
            self.db.rollback()
            self._release_claim(order_id, action)
            raise

        if not accepted:
            self._release_claim(order_id, action)
            error = client.last_error
            message = error.message if error else f"Failed to {action} order on platform"
            details = {"platform_error": {"code": error.code, "message": error.message}} if error else {}
            logger.error(f"Could not {action} {client.display_name} order {platform_order_id}: {message}")
            return ServiceResponse.fail(message, PLATFORM_ERROR, **details)

        self.db.query(Order).filter(Order.id == order_id, Order.status == OrderStatus.PENDING).update(
            {Order.status: target_status, Order.updated_at: utcnow()}, synchronize_session=False
        )
        self._release_claim(order_id, action)
        self.db.refresh(order)
        logger.info(f"{action.capitalize()}ed {client.display_name} order {platform_order_id} (order {order_id})")
        return ServiceResponse.ok({
            "order_id": order_id,
            "platform": integration.platform.value,
            "status": order.status.value,
        })

    async def accept_order(self, order_id: str, **provider_args: Any) -> ServiceResponse[Dict[str, Any]]:
        """Accept a pending delivery order on its platform, then confirm it locally."""
        async def call(client: DeliveryProvider, platform_order_id: str) -> bool:
            return await client.accept_order(platform_order_id, **provider_args)

        return await self._decide_order(order_id, "accept", OrderStatus.CONFIRMED, call)

    async def reject_order(
        self, order_id: str, reason: str, explanation: Optional[str] = None
    ) -> ServiceResponse[Dict[str, Any]]:
        """Reject a pending delivery order on its platform, then cancel it locally."""
        async def call(client: DeliveryProvider, platform_order_id: str) -> bool:
            return await client.deny_order(platform_order_id, reason, explanation)

        return await self._decide_order(order_id, "reject", OrderStatus.CANCELLED, call)

    async def update_order_status(self, order_id: str, new_status: Any) -> ServiceResponse[Dict[str, Any]]:
        """Change the local status, then tell the platform on a best-effort basis."""
        try:
            new_status = OrderStatus(new_status)
        except ValueError:
            return ServiceResponse.fail(f"Unknown order status: {new_status}", INVALID_STATUS)

        order = self.db.get(Order, order_id)
        if order is None:
            return ServiceResponse.fail("Order not found", ORDER_NOT_FOUND)

        current = order.status
        if current == new_status:
            return ServiceResponse.ok({"order_id": order_id, "status": current.value, "changed": False,
                                       "platform_synced": False})

        updated = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.status == current, Order.platform_action.is_(None))
            .update({Order.status: new_status, Order.updated_at: utcnow()}, synchronize_session=False)
        )
        self.db.commit()
        if not updated:
            return ServiceResponse.fail("Order was modified concurrently", CONFLICT)

        data: Dict[str, Any] = {"order_id": order_id, "status": new_status.value, "changed": True,
                                "platform_synced": False}
        self.db.refresh(order)
        integration = order.platform_integration
        platform_status = to_platform_status(new_status)
        if not order.is_delivery_order or integration is None or platform_status is None:
            return ServiceResponse.ok(data)

        client = self._client_for(integration)
        if await client.update_order_status(order.platform_order_id, platform_status):
            data["platform_synced"] = True
        else:
            error = client.last_error
            if error:
                data["platform_error"] = {"code": error.code, "message": error.message}
            logger.warning(
                f"Order {order_id} updated locally to {new_status.value} but "
                f"{client.display_name} was not notified"
            )
        return ServiceResponse.ok(data)

    async def reconcile_order_status(self, order_id: str) -> ServiceResponse[Dict[str, Any]]:
        """Compare the local status with what the platform reports. Does not change anything."""
        order, integration, failure = self._load_delivery_order(order_id)
        if failure:
            return failure

        client = self._client_for(integration)
        try:
            remote = await client.get_order(order.platform_order_id)
        except PlatformOrderNotFound as e:
            return ServiceResponse.fail(e.message, PLATFORM_ORDER_NOT_FOUND)
        except PlatformRequestError as e:
            return ServiceResponse.fail(e.message, PLATFORM_ERROR, platform_error={"code": e.code})

        expected = to_order_status(remote.status)
        return ServiceResponse.ok({
            "order_id": order_id,
            "platform": integration.platform.value,
            "local_status": order.status.value,
            "platform_status": remote.status.value,
            "expected_local_status": expected.value,
            "in_sync": order.status == expected,
        })

    # ==================== WEBHOOKS ====================

    async def process_queue_entry(self, entry: WebhookQueueEntry) -> Optional[Order]:
        return await self.ingest_webhook(entry.platform, entry.organization_id, entry.raw_payload, entry.headers)

    async def ingest_webhook(
        self,
        platform: Any,
        organization_id: Optional[str],
        raw_payload: str,
        headers: Mapping[str, str],
    ) -> Optional[Order]:
        """Verify, decode and apply one webhook delivery.

        Raises ``WebhookRejected`` for deliveries that can never succeed and
        any other exception for ones worth retrying.
        """
        try:
            platform = DeliveryPlatform(platform)
        except ValueError:
            raise WebhookRejected(f"Unsupported platform: {platform}") from None
        if not organization_id:
            raise WebhookRejected("Webhook has no organization id")

        integration = (
            self.db.query(PlatformIntegration)
            .filter(
                PlatformIntegration.organization_id == organization_id,
                PlatformIntegration.platform == platform,
                PlatformIntegration.is_active == True,  # noqa: E712
            )
            .first()
        )
        if integration is None:
            raise IntegrationNotFound(f"No active {platform.value} integration for org {organization_id}")

        client = self._client_for(integration)
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        signature = lowered.get(client.SIGNATURE_HEADER.lower())
        if not client.verify_webhook(raw_payload.encode("utf-8"), signature):
            raise WebhookRejected(f"Invalid {client.display_name} webhook signature for org {organization_id}")

        try:
            payload = client.decode_payload(raw_payload)
            event = client.parse_webhook(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise WebhookRejected(f"Malformed {client.display_name} webhook: {e}") from e

        if event.store_id is not None and str(event.store_id) != str(integration.platform_restaurant_id):
            raise WebhookRejected(
                f"Store mismatch: expected {integration.platform_restaurant_id}, got {event.store_id}"
            )

        if event.event_type == WebhookEventType.UNKNOWN and event.order is None:
            logger.info(f"Ignoring {platform.value} webhook event for order {event.platform_order_id}")
            return None

        try:
            order = self._apply_webhook_event(integration, event)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return order

    def _apply_webhook_event(self, integration: PlatformIntegration, event: WebhookEvent) -> Order:
        order = (
            self.db.query(Order)
            .filter(
                Order.platform_integration_id == integration.id,
                Order.platform_order_id == event.platform_order_id,
            )
            .first()
        )
        new_status = to_order_status(event.status) if event.status else None

        if order is None:
            if event.order is None:
                # Update arrived before the order itself; retry later
                raise DeliveryIntegrationError(
                    f"{integration.platform.value} order {event.platform_order_id} not found for update"
                )
            order = self._create_order(integration, event.order, new_status)
            logger.info(
                f"Created {integration.platform.value} order {event.platform_order_id} "
                f"for org {integration.organization_id}"
            )
            return order

        if new_status and is_forward_transition(order.status, new_status):
            logger.info(
                f"{integration.platform.value} order {event.platform_order_id}: "
                f"{order.status.value} -> {new_status.value}"
            )
            order.status = new_status
            order.updated_at = utcnow()
            if event.order is not None:
                order.raw_payload = event.order.raw_data
        return order

    def _create_order(
        self, integration: PlatformIntegration, data: PlatformOrder, status: Optional[OrderStatus]
    ) -> Order:
        info = data.delivery_info
        totals = data.totals
        order = Order(
            organization_id=integration.organization_id,
            platform_integration_id=integration.id,
            delivery_platform=integration.platform,
            platform_order_id=data.id,
            order_number=data.display_id,
            order_type="pre_order" if info.requested_delivery_time else "delivery",
            status=status or to_order_status(data.status),
            customer_name=data.customer.name or None,
            customer_phone=data.customer.phone,
            customer_email=data.customer.email,
            delivery_address=info.address.one_line() if info.address else None,
            subtotal=totals.subtotal,
            tax_amount=totals.tax,
            delivery_fee=totals.delivery_fee,
            service_fee=totals.service_fee,
            tip_amount=totals.tip,
            total_amount=totals.total,
            currency=totals.currency,
            special_instructions=data.special_instructions,
            placed_at=to_naive_utc(data.created_at),
            scheduled_for=to_naive_utc(info.requested_delivery_time),
            raw_payload=data.raw_data,
        )
        for item in data.items:
            order.items.append(OrderItem(
                platform_item_id=item.id,
                item_name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.total_price,
                modifiers=[
                    {"id": m.id, "name": m.name, "price": str(m.price), "quantity": m.quantity}
                    for m in item.modifiers
                ] or None,
                special_instructions=item.special_instructions,
            ))
        self.db.add(order)
        self.db.flush()
        return order

    def cleanup_webhooks(self, days_to_keep: int = 7) -> ServiceResponse[Dict[str, int]]:
        deleted = self.queue.purge_processed(days_to_keep)
        return ServiceResponse.ok({"deleted_count": deleted})

    # ==================== REPORTING ====================

    def get_delivery_orders(
        self,
        organization_id: str,
        platform: Optional[DeliveryPlatform] = None,
        status: Optional[OrderStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> ServiceResponse[List[Order]]:
        query = self.db.query(Order).filter(
            Order.organization_id == organization_id,
            Order.delivery_platform.isnot(None),
        )
        if platform:
            query = query.filter(Order.delivery_platform == platform)
        if status:
            query = query.filter(Order.status == status)
        if start_date:
            query = query.filter(Order.created_at >= to_naive_utc(start_date))
        if end_date:
            query = query.filter(Order.created_at <= to_naive_utc(end_date))
        return ServiceResponse.ok(query.order_by(Order.created_at.desc()).limit(limit).all())

    def get_platform_stats(self, organization_id: str) -> ServiceResponse[Dict[str, Any]]:
        integrations = self.get_all_platforms(organization_id).data
        breakdown = {}
        for integration in integrations:
            order_count = (
                self.db.query(Order)
                .filter(
                    Order.organization_id == organization_id,
                    Order.delivery_platform == integration.platform,
                )
                .count()
            )
            breakdown[integration.platform.value] = {
                "active": integration.is_active,
                "order_count": order_count,
            }
        return ServiceResponse.ok({
            "total_integrations": len(integrations),
            "active_integrations": sum(1 for i in integrations if i.is_active),
            "platform_breakdown": breakdown,
        })

    def get_delivery_analytics(self, organization_id: str, days_back: int = 30) -> ServiceResponse[List[Dict[str, Any]]]:
        """Per-platform order volume and revenue over the last ``days_back`` days."""
        since = utcnow() - timedelta(days=days_back)
        orders = (
            self.db.query(Order)
            .filter(
                Order.organization_id == organization_id,
                Order.delivery_platform.isnot(None),
                Order.created_at >= since,
            )
            .all()
        )

        grouped: Dict[DeliveryPlatform, List[Order]] = {}
        for order in orders:
            grouped.setdefault(order.delivery_platform, []).append(order)

        analytics = []
        for platform, platform_orders in sorted(grouped.items(), key=lambda kv: kv[0].value):
            billable = [o for o in platform_orders if o.status != OrderStatus.CANCELLED]
            completed = [o for o in platform_orders if o.status == OrderStatus.COMPLETED]
            revenue = sum((_money(o.total_amount) for o in billable), 0.0)
            durations = [
                (o.updated_at - (o.placed_at or o.created_at)).total_seconds() / 60
                for o in completed
                if o.updated_at
            ]
            analytics.append({
                "platform": platform.value,
                "total_orders": len(platform_orders),
                "total_revenue": round(revenue, 2),
                "average_order_value": round(revenue / len(billable), 2) if billable else 0.0,
                "completed_orders": len(completed),
                "cancelled_orders": len(platform_orders) - len(billable),
                "average_prep_time_minutes": round(sum(durations) / len(durations), 1) if durations else None,
            })
        return ServiceResponse.ok(analytics)
