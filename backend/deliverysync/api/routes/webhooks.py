"""Inbound marketplace webhooks.

Deliveries are stored as-is and acknowledged straight away; parsing and
order updates happen in the queue worker.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from deliverysync.api.deps import QueueService
from deliverysync.core.config import settings
from deliverysync.core.rate_limit import limiter
from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.schemas.delivery import WebhookAccepted

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{platform_slug}-webhook", status_code=202, response_model=WebhookAccepted)
@limiter.limit(settings.webhook_rate_limit)
async def receive_webhook(
    request: Request,
    platform_slug: str,
    queue: QueueService,
    org: Optional[str] = Query(None, description="Organization the webhook URL was issued for"),
):
    """Queue a webhook from Uber Eats, Deliveroo or Just Eat."""
    try:
        platform = DeliveryPlatform.from_slug(platform_slug)
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown delivery platform")
    if platform.slug != platform_slug:
        raise HTTPException(status_code=404, detail="Unknown delivery platform")

    if not org:
        logger.warning(f"{platform.value} webhook received without organization id")
        raise HTTPException(status_code=400, detail="Missing organization ID")

    body = await request.body()
    try:
        raw_payload = body.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning(f"{platform.value} webhook for org {org} is not valid UTF-8")
        raise HTTPException(status_code=400, detail="Webhook body must be UTF-8 encoded")

    entry = queue.enqueue(platform, org, dict(request.headers), raw_payload)
    return WebhookAccepted(id=entry.id)
