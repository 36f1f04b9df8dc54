"""API routes."""

from fastapi import APIRouter

from deliverysync.api.routes import delivery_platforms, webhook_queue

api_router = APIRouter()

api_router.include_router(
    delivery_platforms.router, prefix="/delivery-platforms", tags=["delivery-platforms"]
)
api_router.include_router(webhook_queue.router, prefix="/webhook-queue", tags=["webhook-queue"])
