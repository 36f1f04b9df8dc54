"""Webhook queue worker trigger and maintenance endpoints."""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from deliverysync.api.deps import PlatformService, QueueService
from deliverysync.core.config import settings
from deliverysync.core.rate_limit import limiter
from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.schemas.delivery import QueueRunResponse, WebhookQueueEntryResponse

router = APIRouter()


@router.post("/process", response_model=QueueRunResponse)
@limiter.limit("30/minute")
async def process_webhook_queue(
    request: Request,
    queue: QueueService,
    service: PlatformService,
    limit: Optional[int] = Query(None, ge=1, le=500),
):
    """Process due webhooks. Called by the scheduler."""
    return await queue.process_due(service.process_queue_entry, limit=limit or settings.webhook_batch_size)


@router.get("/stats")
@limiter.limit("60/minute")
def get_queue_stats(request: Request, queue: QueueService):
    return queue.get_stats()


@router.get("/exhausted", response_model=List[WebhookQueueEntryResponse])
@limiter.limit("60/minute")
def list_exhausted_webhooks(
    request: Request,
    queue: QueueService,
    platform: Optional[DeliveryPlatform] = None,
):
    """Webhooks that ran out of retries and need an operator."""
    return queue.list_exhausted(platform)


@router.post("/{entry_id}/requeue", response_model=WebhookQueueEntryResponse)
@limiter.limit("30/minute")
def requeue_webhook(request: Request, entry_id: int, queue: QueueService):
    entry = queue.requeue(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Webhook not found or already processed")
    return entry


@router.post("/cleanup")
@limiter.limit("10/minute")
def cleanup_webhooks(
    request: Request,
    service: PlatformService,
    days_to_keep: Optional[int] = Query(None, ge=1, le=365),
):
    """Delete processed webhooks past the retention window."""
    result = service.cleanup_webhooks(days_to_keep or settings.webhook_retention_days)
    return result.data
