"""Delivery platform client construction."""

import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from deliverysync.core.config import Settings
from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.services.delivery.base import Clock, DeliveryProvider
from deliverysync.services.delivery.deliveroo import DeliverooProvider
from deliverysync.services.delivery.exceptions import UnsupportedPlatformError
from deliverysync.services.delivery.justeat import JustEatProvider
from deliverysync.services.delivery.types import PlatformConfig
from deliverysync.services.delivery.ubereats import UberEatsProvider

logger = logging.getLogger(__name__)


def _coerce_platform(platform: Any) -> DeliveryPlatform:
    if isinstance(platform, DeliveryPlatform):
        return platform
    try:
        return DeliveryPlatform(str(platform).replace("-", "_"))
    except ValueError:
        raise UnsupportedPlatformError(platform) from None


def create_platform_client(
    platform: Any,
    credentials: Optional[Mapping[str, Any]],
    config: Optional[PlatformConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Optional[Clock] = None,
) -> DeliveryProvider:
    """Build the client for ``platform`` from an integration's credentials blob.

    Missing credential fields become empty strings; the client then reports
    itself unconfigured and fails authentication without calling out.
    """
    platform = _coerce_platform(platform)
    creds = dict(credentials or {})

    def field(name: str) -> str:
        return str(creds.get(name) or "")

    if platform == DeliveryPlatform.UBER_EATS:
        return UberEatsProvider(
            client_id=field("client_id"),
            client_secret=field("client_secret"),
            store_id=field("store_id") or field("restaurant_id"),
            webhook_secret=field("webhook_secret") or None,
            config=config,
            transport=transport,
            clock=clock,
        )
    if platform == DeliveryPlatform.DELIVEROO:
        return DeliverooProvider(
            client_id=field("client_id"),
            client_secret=field("client_secret"),
            restaurant_id=field("restaurant_id"),
            webhook_secret=field("webhook_secret") or None,
            config=config,
            transport=transport,
            clock=clock,
        )
    if platform == DeliveryPlatform.JUST_EAT:
        return JustEatProvider(
            api_token=field("api_token"),
            restaurant_id=field("restaurant_id"),
            webhook_secret=field("webhook_secret") or None,
            config=config,
            transport=transport,
            clock=clock,
        )
    raise UnsupportedPlatformError(platform)


def platform_configs_from_settings(settings: Settings) -> Dict[DeliveryPlatform, PlatformConfig]:
    timeout = settings.platform_request_timeout_seconds
    return {
        DeliveryPlatform.UBER_EATS: PlatformConfig(
            api_url=settings.uber_eats_api_url,
            auth_url=settings.uber_eats_auth_url,
            timeout=timeout,
        ),
        DeliveryPlatform.DELIVEROO: PlatformConfig(
            api_url=settings.deliveroo_api_url,
            auth_url=settings.deliveroo_auth_url,
            timeout=timeout,
            currency=settings.deliveroo_currency,
        ),
        DeliveryPlatform.JUST_EAT: PlatformConfig(
            api_url=settings.just_eat_api_url,
            timeout=timeout,
        ),
    }


def credentials_fingerprint(credentials: Optional[Mapping[str, Any]]) -> str:
    payload = json.dumps(dict(credentials or {}), sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


class PlatformClientCache:
    """Reuses clients per (platform, credentials) so OAuth tokens outlive a request.

    Changing an integration's credentials changes the fingerprint, so a stale
    client is never handed out for new credentials.
    """

    def __init__(
        self,
        configs: Optional[Dict[DeliveryPlatform, PlatformConfig]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        self._configs = configs or {}
        self._transport = transport
        self._clock = clock
        self._clients: Dict[Tuple[DeliveryPlatform, str], DeliveryProvider] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def get_client(
        self,
        platform: Any,
        credentials: Optional[Mapping[str, Any]],
        config: Optional[PlatformConfig] = None,
    ) -> DeliveryProvider:
        platform = _coerce_platform(platform)
        key = (platform, credentials_fingerprint(credentials))
        client = self._clients.get(key)
        if client is not None and client.auth_failed:
            # Fresh client so a failed token fetch is retried on the next request
            logger.warning(f"Dropping cached {platform.value} client after authentication failure")
            client = None
        if client is None:
            client = create_platform_client(
                platform,
                credentials,
                config=config or self._configs.get(platform),
                transport=self._transport,
                clock=self._clock,
            )
            self._clients[key] = client
            logger.debug(f"Cached new {platform.value} client")
        return client

    def __call__(self, platform: Any, credentials: Optional[Mapping[str, Any]], **kwargs: Any) -> DeliveryProvider:
        return self.get_client(platform, credentials, config=kwargs.get("config"))

    def clear(self) -> None:
        self._clients.clear()
