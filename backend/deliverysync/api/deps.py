"""Service wiring for API routes."""

from typing import Annotated, Optional

from fastapi import Depends

from deliverysync.core.config import settings
from deliverysync.db.session import DbSession
from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.services.delivery.factory import (
    PlatformClientCache,
    create_platform_client,
    platform_configs_from_settings,
)
from deliverysync.services.delivery_platform_service import ClientFactory, DeliveryPlatformService
from deliverysync.services.platform_jobs import PlatformJobClient
from deliverysync.services.webhook_queue_service import WebhookQueueService

_configs = platform_configs_from_settings(settings)
_client_cache = PlatformClientCache(_configs)


def get_platform_client_factory() -> ClientFactory:
    if settings.delivery_client_cache_enabled:
        return _client_cache

    def factory(platform, credentials):
        return create_platform_client(platform, credentials, config=_configs.get(DeliveryPlatform(platform)))

    return factory


def get_job_client() -> Optional[PlatformJobClient]:
    if not settings.jobs_base_url:
        return None
    return PlatformJobClient(
        settings.jobs_base_url,
        service_key=settings.jobs_service_key,
        timeout=settings.jobs_timeout_seconds,
    )


def get_webhook_queue_service(db: DbSession) -> WebhookQueueService:
    return WebhookQueueService(
        db,
        max_retries=settings.webhook_max_retries,
        retry_base_seconds=settings.webhook_retry_base_seconds,
        retry_max_seconds=settings.webhook_retry_max_seconds,
        lease_seconds=settings.webhook_claim_lease_seconds,
    )


QueueService = Annotated[WebhookQueueService, Depends(get_webhook_queue_service)]


def get_delivery_platform_service(
    db: DbSession,
    queue: QueueService,
    client_factory: Annotated[ClientFactory, Depends(get_platform_client_factory)],
    jobs: Annotated[Optional[PlatformJobClient], Depends(get_job_client)],
) -> DeliveryPlatformService:
    return DeliveryPlatformService(
        db,
        client_factory=client_factory,
        jobs=jobs,
        webhook_base_url=settings.webhook_base_url,
        queue=queue,
    )


PlatformService = Annotated[DeliveryPlatformService, Depends(get_delivery_platform_service)]
