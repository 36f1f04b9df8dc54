"""Abstract base class for delivery platform providers."""

import asyncio
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import httpx

from deliverysync.models.delivery import DeliveryPlatform
from deliverysync.services.delivery.status import PlatformOrderStatus
from deliverysync.services.delivery.types import (
    AuthToken,
    MenuSyncOutcome,
    PlatformApiError,
    PlatformApiResponse,
    PlatformConfig,
    PlatformMenu,
    PlatformOrder,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryProvider(ABC):
    """Base interface for delivery platform integrations.

    Every client keeps the most recent platform error in ``last_error`` so the
    caller can show the platform's own message to staff. Outbound calls go
    through ``_request`` which never raises: failures come back as an
    unsuccessful ``PlatformApiResponse``.
    """

    platform: DeliveryPlatform
    display_name: str = ""

    ACCEPTANCE_DEADLINE: timedelta = timedelta(minutes=10)
    SIGNATURE_HEADER: str = ""
    DENY_REASON_CODES: FrozenSet[str] = frozenset()

    # Field names of the error body the platform returns on non-2xx responses
    ERROR_CODE_FIELD: str = "code"
    ERROR_MESSAGE_FIELD: str = "message"
    REQUEST_ID_HEADER: str = "x-request-id"

    def __init__(
        self,
        config: PlatformConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self._transport = transport
        self._clock = clock or utc_clock
        self._auth_failed = False
        self.last_error: Optional[PlatformApiError] = None

    # ---- credentials ----

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """All credential fields needed to talk to the platform are present."""

    @property
    def auth_failed(self) -> bool:
        """Calls short-circuit with AUTH_FAILED until ``authenticate()`` succeeds."""
        return self._auth_failed

    @property
    @abstractmethod
    def webhook_secret(self) -> str:
        """Secret the platform signs webhook bodies with."""

    @abstractmethod
    async def authenticate(self) -> bool:
        """Establish or refresh credentials. Safe to call repeatedly."""

    @abstractmethod
    async def _ensure_authenticated(self) -> bool:
        """Make sure credentials are usable before an API call."""

    @abstractmethod
    def _auth_headers(self) -> Dict[str, str]:
        ...

    def _on_unauthorized(self) -> None:
        """Hook for a 401 from the API."""

    # ---- orders ----

    @abstractmethod
    async def get_orders(
        self, status: Optional[PlatformOrderStatus] = None, since: Optional[datetime] = None
    ) -> List[PlatformOrder]:
        """Fetch orders from the platform. Returns [] when the fetch fails."""

    @abstractmethod
    async def get_order(self, order_id: str) -> PlatformOrder:
        """Fetch one order; raises PlatformOrderNotFound / PlatformRequestError."""

    @abstractmethod
    async def update_order_status(self, order_id: str, status: PlatformOrderStatus) -> bool:
        """Push a status change. False when the platform has no endpoint for it."""

    @abstractmethod
    async def accept_order(self, order_id: str, **kwargs: Any) -> bool:
        """Accept an incoming delivery order."""

    @abstractmethod
    async def deny_order(self, order_id: str, reason_code: str, explanation: Optional[str] = None) -> bool:
        """Reject an incoming delivery order."""

    # ---- menu / store ----

    @abstractmethod
    async def sync_menu(self, menu: PlatformMenu) -> MenuSyncOutcome:
        """Replace the platform menu with ``menu``."""

    @abstractmethod
    async def set_store_availability(self, is_open: bool) -> bool:
        """Open or close the store on the platform."""

    # ---- webhooks ----

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Decode a webhook body. Raises ValueError on an unusable payload."""

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        """Verify the hex HMAC-SHA256 signature of the raw webhook body."""
        secret = self.webhook_secret
        if not secret or not signature:
            return False
        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    # ---- deadlines ----

    def acceptance_window(self, placed_at: datetime, requested_for: Optional[datetime] = None) -> timedelta:
        return self.ACCEPTANCE_DEADLINE

    def acceptance_deadline(self, placed_at: datetime, requested_for: Optional[datetime] = None) -> datetime:
        return placed_at + self.acceptance_window(placed_at, requested_for)

    # ---- transport ----

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    def _fail(self, code: str, message: str, details: Any = None, status_code: Optional[int] = None,
              request_id: Optional[str] = None) -> PlatformApiResponse:
        self.last_error = PlatformApiError(code=code, message=message, details=details, status_code=status_code)
        return PlatformApiResponse(success=False, error=self.last_error, request_id=request_id)

    def _validate_reason(self, reason_code: str) -> bool:
        if reason_code in self.DENY_REASON_CODES:
            return True
        allowed = ", ".join(sorted(self.DENY_REASON_CODES))
        self._fail("INVALID_REASON", f"Unknown reason code '{reason_code}' (expected one of {allowed})")
        return False

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> PlatformApiResponse:
        if self._auth_failed or not await self._ensure_authenticated():
            return self._fail("AUTH_FAILED", f"{self.display_name} authentication failed")

        headers = {"Content-Type": "application/json", "Accept": "application/json", **self._auth_headers()}
        url = f"{self.config.api_url}{path}"
        try:
            async with self._http_client() as client:
                resp = await client.request(method, url, headers=headers, json=json_body, params=params)
        except httpx.HTTPError as e:
            logger.error(f"{self.display_name} {method} {path} failed: {e!r}")
            return self._fail("NETWORK_ERROR", str(e) or type(e).__name__)

        request_id = resp.headers.get(self.REQUEST_ID_HEADER)
        body = self._decode_body(resp)

        if resp.status_code == 401:
            self._on_unauthorized()

        if not resp.is_success:
            code = f"HTTP_{resp.status_code}"
            message = resp.reason_phrase
            if isinstance(body, dict):
                code = body.get(self.ERROR_CODE_FIELD) or code
                message = body.get(self.ERROR_MESSAGE_FIELD) or message
            logger.warning(f"{self.display_name} {method} {path} returned {resp.status_code}: {code} {message}")
            return self._fail(code, message, details=body, status_code=resp.status_code, request_id=request_id)

        self.last_error = None
        return PlatformApiResponse(success=True, data=body, request_id=request_id)

    @staticmethod
    def decode_payload(raw_payload: str) -> Dict[str, Any]:
        """Parse a raw webhook body into a JSON object."""
        data = json.loads(raw_payload)
        if not isinstance(data, dict):
            raise ValueError("Webhook body is not a JSON object")
        return data


class OAuthClientCredentialsProvider(DeliveryProvider):
    """Provider authenticating with the OAuth2 client-credentials grant.

    The token lives in memory only. Refreshes are single-flight: concurrent
    callers wait on one token request instead of each firing their own.
    """

    SCOPE: str = ""

    def __init__(
        self,
        config: PlatformConfig,
        client_id: str,
        client_secret: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(config, transport=transport, clock=clock)
        self._client_id = client_id
        self._client_secret = client_secret
        self._token: Optional[AuthToken] = None
        self._token_lock = asyncio.Lock()

    @property
    def token(self) -> Optional[AuthToken]:
        return self._token

    def _token_valid(self) -> bool:
        return self._token is not None and not self._token.is_expired(self._clock())

    async def authenticate(self) -> bool:
        async with self._token_lock:
            return await self._fetch_token()

    async def _ensure_authenticated(self) -> bool:
        if self._token_valid():
            return True
        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if self._token_valid():
                return True
            return await self._fetch_token()

    async def _fetch_token(self) -> bool:
        if not self.is_configured:
            logger.error(f"{self.display_name} credentials are not configured")
            self._token = None
            self._auth_failed = True
            self._fail("AUTH_FAILED", f"{self.display_name} credentials are not configured")
            return False

        try:
            async with self._http_client() as client:
                resp = await client.post(
                    f"{self.config.auth_url}/token",
                    data={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "grant_type": "client_credentials",
                        "scope": self.SCOPE,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"{self.display_name} authentication error: {e!r}")
            self._token = None
            self._auth_failed = True
            self._fail("AUTH_FAILED", f"{self.display_name} authentication error: {e}")
            return False

        body = self._decode_body(resp)
        if not resp.is_success or not isinstance(body, dict) or not body.get("access_token"):
            logger.error(f"{self.display_name} authentication failed ({resp.status_code}): {body}")
            self._token = None
            self._auth_failed = True
            self._fail("AUTH_FAILED", f"{self.display_name} authentication failed", details=body,
                       status_code=resp.status_code)
            return False

        expires_in = int(body.get("expires_in") or 3600)
        self._token = AuthToken(
            access_token=body["access_token"],
            token_type=body.get("token_type") or "Bearer",
            expires_at=self._clock() + timedelta(seconds=expires_in),
            refresh_token=body.get("refresh_token"),
        )
        self._auth_failed = False
        logger.info(f"{self.display_name} authenticated, token valid for {expires_in}s")
        return True

    def _auth_headers(self) -> Dict[str, str]:
        if self._token is None:
            return {}
        return {"Authorization": f"{self._token.token_type} {self._token.access_token}"}

    def _on_unauthorized(self) -> None:
        self._token = None
