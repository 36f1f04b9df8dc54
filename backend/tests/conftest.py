"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from deliverysync.api.deps import get_job_client, get_platform_client_factory
from deliverysync.db.base import Base, utcnow
from deliverysync.db.session import get_db
from deliverysync.main import app
# Import all models to ensure they're registered with Base.metadata
from deliverysync.models import *  # noqa: F401,F403
from deliverysync.models.delivery import (
    DeliveryPlatform,
    Order,
    OrderItem,
    OrderStatus,
    PlatformIntegration,
)
from deliverysync.services.delivery.factory import create_platform_client
from deliverysync.services.delivery.types import PlatformConfig
from deliverysync.services.delivery_platform_service import DeliveryPlatformService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

WEBHOOK_BASE_URL = "https://pos.example.com"

TEST_CONFIGS = {
    DeliveryPlatform.UBER_EATS: PlatformConfig(
        api_url="https://ubereats.test/api", auth_url="https://ubereats.test/oauth"
    ),
    DeliveryPlatform.DELIVEROO: PlatformConfig(
        api_url="https://deliveroo.test/api", auth_url="https://deliveroo.test/oauth", currency="GBP"
    ),
    DeliveryPlatform.JUST_EAT: PlatformConfig(api_url="https://justeat.test/api"),
}

UBER_CREDENTIALS = {"client_id": "uber-id", "client_secret": "uber-secret", "store_id": "store-1"}
DELIVEROO_CREDENTIALS = {"client_id": "roo-id", "client_secret": "roo-secret", "restaurant_id": "rest-1"}
JUST_EAT_CREDENTIALS = {"api_token": "je-token", "restaurant_id": "je-rest-1"}

CREDENTIALS = {
    DeliveryPlatform.UBER_EATS: UBER_CREDENTIALS,
    DeliveryPlatform.DELIVEROO: DELIVEROO_CREDENTIALS,
    DeliveryPlatform.JUST_EAT: JUST_EAT_CREDENTIALS,
}

RESTAURANT_IDS = {
    DeliveryPlatform.UBER_EATS: "store-1",
    DeliveryPlatform.DELIVEROO: "rest-1",
    DeliveryPlatform.JUST_EAT: "je-rest-1",
}


def sign(secret: str, body: str) -> str:
    """Hex HMAC-SHA256 of a webhook body, as the platforms send it."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class FakeClock:
    """Controllable UTC clock for token expiry and timestamps."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class MockPlatformApi:
    """Canned responses for platform APIs, recording every request.

    Routes are keyed by (method, path). Each route holds a queue of
    responses; the last one keeps being served once the others are used.
    A response is a (status, json) tuple or a callable taking the request.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], List[Any]] = {}
        self.transport = httpx.MockTransport(self._handle)

    def add(self, method: str, path: str, status: int = 200, json_body: Any = None) -> "MockPlatformApi":
        self.routes.setdefault((method, path), []).append((status, json_body))
        return self

    def add_handler(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]):
        self.routes.setdefault((method, path), []).append(handler)
        return self

    def reset(self, method: str, path: str) -> None:
        self.routes.pop((method, path), None)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": f"No route for {request.method} {request.url.path}"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder):
            return responder(request)
        status, body = responder
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def calls(self, exclude_auth: bool = True) -> List[Tuple[str, str]]:
        return [
            (r.method, r.url.path)
            for r in self.requests
            if not (exclude_auth and r.url.path.endswith("/oauth/token"))
        ]

    def token_requests(self) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith("/oauth/token"))

    def body(self, index: int = -1, exclude_auth: bool = True) -> Any:
        requests = [r for r in self.requests if not (exclude_auth and r.url.path.endswith("/oauth/token"))]
        return json.loads(requests[index].content)

    def allow_oauth(self, platform: DeliveryPlatform, expires_in: int = 3600) -> "MockPlatformApi":
        auth_url = TEST_CONFIGS[platform].auth_url
        path = httpx.URL(f"{auth_url}/token").path
        return self.add("POST", path, 200, {"access_token": f"{platform.value}-token", "expires_in": expires_in})


@pytest.fixture
def mock_api() -> MockPlatformApi:
    return MockPlatformApi()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client_factory(mock_api: MockPlatformApi, clock: FakeClock):
    """Client factory wired to the mock platform APIs."""
    def factory(platform, credentials):
        platform = DeliveryPlatform(platform)
        return create_platform_client(
            platform, credentials, config=TEST_CONFIGS[platform], transport=mock_api.transport, clock=clock
        )
    return factory


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def platform_service(db_session: Session, client_factory) -> DeliveryPlatformService:
    return DeliveryPlatformService(db_session, client_factory=client_factory, webhook_base_url=WEBHOOK_BASE_URL)


@pytest.fixture(scope="function")
def client(db_session: Session, client_factory) -> Generator[TestClient, None, None]:
    """Create a test client with database and platform client overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_platform_client_factory] = lambda: client_factory
    app.dependency_overrides[get_job_client] = lambda: None
    # Disable rate limiters during tests to avoid flaky failures
    from deliverysync.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def make_integration(db_session: Session):
    """Create a platform integration for an organization."""
    def _make(
        platform: DeliveryPlatform = DeliveryPlatform.UBER_EATS,
        organization_id: str = "org1",
        is_active: bool = True,
        credentials: Optional[Dict[str, Any]] = None,
    ) -> PlatformIntegration:
        integration = PlatformIntegration(
            organization_id=organization_id,
            platform=platform,
            platform_restaurant_id=RESTAURANT_IDS[platform],
            credentials=dict(credentials if credentials is not None else CREDENTIALS[platform]),
            settings={},
            is_active=is_active,
        )
        db_session.add(integration)
        db_session.commit()
        db_session.refresh(integration)
        return integration
    return _make


@pytest.fixture
def make_order(db_session: Session):
    """Create an internal order linked to an integration."""
    def _make(
        integration: Optional[PlatformIntegration],
        order_id: Optional[str] = None,
        platform_order_id: Optional[str] = "po-1",
        status: OrderStatus = OrderStatus.PENDING,
        placed_at: Optional[datetime] = None,
    ) -> Order:
        order = Order(
            organization_id=integration.organization_id if integration else "org1",
            platform_integration_id=integration.id if integration else None,
            delivery_platform=integration.platform if integration else None,
            platform_order_id=platform_order_id if integration else None,
            order_number="A-100",
            order_type="delivery" if integration else "dine_in",
            status=status,
            customer_name="Jane Doe",
            subtotal=Decimal("20.00"),
            total_amount=Decimal("24.50"),
            currency="GBP",
            placed_at=placed_at or utcnow(),
        )
        if order_id:
            order.id = order_id
        order.items.append(OrderItem(item_name="Burger", quantity=2, unit_price=Decimal("10.00"),
                                     line_total=Decimal("20.00")))
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order
    return _make
