"""Delivery platform routes - Uber Eats / Deliveroo / Just Eat."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from deliverysync.api.deps import PlatformService
from deliverysync.core.rate_limit import limiter
from deliverysync.models.delivery import DeliveryPlatform, OrderStatus
from deliverysync.schemas.delivery import (
    ConnectionTestResponse,
    DeliveryOrderResponse,
    MenuPushRequest,
    MenuSyncRequest,
    MenuSyncResultResponse,
    OrderAccept,
    OrderReject,
    OrderStatusUpdate,
    PlatformIntegrationResponse,
    PlatformIntegrationToggle,
    PlatformIntegrationUpsert,
    StoreAvailabilityUpdate,
)
from deliverysync.services.delivery_platform_service import (
    CONFLICT,
    INTEGRATION_NOT_FOUND,
    INVALID_STATE,
    INVALID_STATUS,
    JOB_FAILED,
    NOT_A_DELIVERY_ORDER,
    ORDER_BUSY,
    ORDER_NOT_FOUND,
    PLATFORM_ERROR,
    PLATFORM_ORDER_NOT_FOUND,
    UNSUPPORTED_PLATFORM,
    ServiceResponse,
)

router = APIRouter()

_HTTP_STATUS_BY_CODE = {
    ORDER_NOT_FOUND: 404,
    INTEGRATION_NOT_FOUND: 404,
    PLATFORM_ORDER_NOT_FOUND: 404,
    NOT_A_DELIVERY_ORDER: 400,
    INVALID_STATUS: 400,
    UNSUPPORTED_PLATFORM: 400,
    INVALID_STATE: 409,
    ORDER_BUSY: 409,
    CONFLICT: 409,
    PLATFORM_ERROR: 502,
    JOB_FAILED: 502,
}


def _unwrap(result: ServiceResponse):
    if result.success:
        return result.data
    status_code = _HTTP_STATUS_BY_CODE.get(result.code, 400)
    raise HTTPException(status_code=status_code, detail={"message": result.error, **result.details})


# Integrations

@router.get("/integrations", response_model=List[PlatformIntegrationResponse])
@limiter.limit("60/minute")
def list_integrations(
    request: Request,
    service: PlatformService,
    organization_id: str = Query(...),
    active_only: bool = False,
):
    """List an organization's platform integrations."""
    if active_only:
        return _unwrap(service.get_active_platforms(organization_id))
    return _unwrap(service.get_all_platforms(organization_id))


@router.post("/integrations", response_model=PlatformIntegrationResponse)
@limiter.limit("30/minute")
def upsert_integration(request: Request, service: PlatformService, data: PlatformIntegrationUpsert):
    """Create or replace an integration. It stays inactive until a connection test passes."""
    return _unwrap(service.upsert_platform_integration(
        data.organization_id,
        data.platform,
        data.platform_restaurant_id,
        data.credentials,
        data.settings,
    ))


@router.get("/integrations/{integration_id}", response_model=PlatformIntegrationResponse)
@limiter.limit("60/minute")
def get_integration(request: Request, integration_id: str, service: PlatformService):
    return _unwrap(service.get_platform_by_id(integration_id))


@router.patch("/integrations/{integration_id}/active", response_model=PlatformIntegrationResponse)
@limiter.limit("30/minute")
def toggle_integration(
    request: Request, integration_id: str, data: PlatformIntegrationToggle, service: PlatformService
):
    return _unwrap(service.toggle_platform_active(integration_id, data.is_active))


@router.delete("/integrations/{integration_id}")
@limiter.limit("30/minute")
def delete_integration(request: Request, integration_id: str, service: PlatformService):
    _unwrap(service.delete_platform_integration(integration_id))
    return {"deleted": True}


@router.post("/integrations/{integration_id}/test", response_model=ConnectionTestResponse)
@limiter.limit("10/minute")
async def test_integration(request: Request, integration_id: str, service: PlatformService):
    """Test credentials against the platform; activates the integration on success."""
    result = await service.test_platform_connection(integration_id)
    if result.data is not None:
        return result.data
    return _unwrap(result)


@router.post("/integrations/{integration_id}/menu", response_model=MenuSyncResultResponse)
@limiter.limit("10/minute")
async def push_menu(request: Request, integration_id: str, menu: MenuPushRequest, service: PlatformService):
    """Replace the platform's menu with the given one."""
    result = await service.push_menu_to_platform(integration_id, menu.to_platform_menu())
    return _unwrap(result).to_dict()


@router.put("/integrations/{integration_id}/availability")
@limiter.limit("30/minute")
async def set_availability(
    request: Request, integration_id: str, data: StoreAvailabilityUpdate, service: PlatformService
):
    """Open or close the store on the platform."""
    return _unwrap(await service.set_store_availability(integration_id, data.is_open))


@router.post("/menu-sync")
@limiter.limit("10/minute")
async def sync_menu(request: Request, data: MenuSyncRequest, service: PlatformService):
    """Run the batch menu sync job for one integration or for all of them."""
    if data.integration_id:
        integration = _unwrap(service.get_platform_by_id(data.integration_id))
        result = await service.sync_menu_to_platform(data.integration_id, data.platform or integration.platform)
        return _unwrap(result).to_dict()
    return _unwrap(await service.sync_menu_to_all_platforms(data.organization_id))


# Orders

@router.get("/orders", response_model=List[DeliveryOrderResponse])
@limiter.limit("60/minute")
def list_delivery_orders(
    request: Request,
    service: PlatformService,
    organization_id: str = Query(...),
    platform: Optional[DeliveryPlatform] = None,
    status: Optional[OrderStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
):
    return _unwrap(service.get_delivery_orders(
        organization_id,
        platform=platform,
        status=status,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    ))


@router.post("/orders/{order_id}/accept")
@limiter.limit("60/minute")
async def accept_order(
    request: Request, order_id: str, service: PlatformService, data: Optional[OrderAccept] = None
):
    """Accept a pending delivery order on its platform."""
    provider_args = {}
    if data and data.estimated_prep_time:
        provider_args["estimated_prep_time"] = data.estimated_prep_time
    return _unwrap(await service.accept_order(order_id, **provider_args))


@router.post("/orders/{order_id}/reject")
@limiter.limit("60/minute")
async def reject_order(request: Request, order_id: str, data: OrderReject, service: PlatformService):
    """Reject a pending delivery order on its platform."""
    return _unwrap(await service.reject_order(order_id, data.reason, data.explanation))


@router.put("/orders/{order_id}/status")
@limiter.limit("60/minute")
async def update_order_status(
    request: Request, order_id: str, data: OrderStatusUpdate, service: PlatformService
):
    """Update the local status and notify the platform where it supports it."""
    return _unwrap(await service.update_order_status(order_id, data.status))


@router.get("/orders/{order_id}/reconcile")
@limiter.limit("30/minute")
async def reconcile_order(request: Request, order_id: str, service: PlatformService):
    """Compare the local order status with the platform's."""
    return _unwrap(await service.reconcile_order_status(order_id))


# Reporting

@router.get("/stats")
@limiter.limit("60/minute")
def get_platform_stats(request: Request, service: PlatformService, organization_id: str = Query(...)):
    return _unwrap(service.get_platform_stats(organization_id))


@router.get("/analytics")
@limiter.limit("30/minute")
def get_delivery_analytics(
    request: Request,
    service: PlatformService,
    organization_id: str = Query(...),
    days_back: int = Query(30, ge=1, le=365),
):
    return _unwrap(service.get_delivery_analytics(organization_id, days_back))
