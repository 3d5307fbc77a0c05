"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import fakeredis.aioredis
import pytest
import pytest_asyncio

from storefront.config import Settings
from storefront.core.cache import CacheStore
from storefront.core.notifications import DeadLetterSink
from storefront.core.payment_service import PaymentService
from storefront.database.connection import Database
from storefront.database.models import Order, Product, User
from storefront.database.repositories import (
    DeadLetterRepository,
    OrderRepository,
    ProductRepository,
    UserRepository,
)
from storefront.integrations.stripe_client import StripeGateway

WEBHOOK_SECRET = "whsec_test_fake_secret"
ADMIN_API_KEY = "admin-test-key"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests with mocked Stripe")
    config.addinivalue_line("markers", "integration: tests through the HTTP app")


def sign_payload(
    payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: str = "evt_test_1",
    created: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a Stripe event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }


def signed_event(event: Dict[str, Any]) -> tuple:
    """Serialize an event and sign it; returns (signature, body bytes)."""
    payload = json.dumps(event)
    return sign_payload(payload), payload.encode("utf-8")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_publishable_key="pk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        redis_url=None,
        admin_api_key=ADMIN_API_KEY,
        app_name="storefront-payments-test",
        app_env="test",
        log_level="DEBUG",
        frontend_url="https://shop.test",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create a fresh SQLite database."""
    db = Database(test_settings.database_url)
    await db.create_all()
    yield db
    await db.drop_all()
    await db.close()


@pytest.fixture
def seed(database: Database) -> Callable[..., Any]:
    """Insert rows in one transaction."""

    async def _seed(*objects: Any) -> None:
        async with database.session_factory.begin() as session:
            session.add_all(objects)

    return _seed


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, Any]:
    """In-process Redis."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(redis_client: fakeredis.aioredis.FakeRedis) -> CacheStore:
    """Cache store over fake Redis."""
    return CacheStore(redis_client, default_ttl=3600, key_prefix="test:", write_timeout=1.0)


@pytest.fixture
def stripe_client() -> MagicMock:
    """Mocked stripe.StripeClient exposing the v1 async services."""
    client = MagicMock()
    client.v1.payment_intents.create_async = AsyncMock()
    client.v1.payment_intents.retrieve_async = AsyncMock()
    client.v1.checkout.sessions.create_async = AsyncMock()
    client.v1.refunds.create_async = AsyncMock()
    client.v1.customers.create_async = AsyncMock()
    return client


@pytest.fixture
def gateway(stripe_client: MagicMock) -> StripeGateway:
    """Gateway over the mocked Stripe client with real signature verification."""
    return StripeGateway(
        api_key="sk_test_fake_key_for_testing",
        webhook_secret=WEBHOOK_SECRET,
        client=stripe_client,
    )


@pytest.fixture
def notifier() -> AsyncMock:
    """Notifier recording transitions."""
    return AsyncMock()


@pytest.fixture
def dead_letter_repository(database: Database) -> DeadLetterRepository:
    return DeadLetterRepository(database.session_factory)


@pytest.fixture
def order_repository(database: Database) -> OrderRepository:
    return OrderRepository(database.session_factory)


@pytest.fixture
def build_service(
    database: Database,
    cache: CacheStore,
    gateway: StripeGateway,
    notifier: AsyncMock,
    dead_letter_repository: DeadLetterRepository,
) -> Callable[..., PaymentService]:
    """Factory for payment services sharing the test database."""

    def _build(**overrides: Any) -> PaymentService:
        kwargs: Dict[str, Any] = {
            "gateway": gateway,
            "orders": OrderRepository(database.session_factory),
            "products": ProductRepository(database.session_factory),
            "users": UserRepository(database.session_factory),
            "cache": cache,
            "dead_letters": DeadLetterSink(dead_letter_repository),
            "notifier": notifier,
            "frontend_url": "https://shop.test",
            "publishable_key": "pk_test_fake_key_for_testing",
        }
        kwargs.update(overrides)
        return PaymentService(**kwargs)

    return _build


@pytest.fixture
def payment_service(build_service: Callable[..., PaymentService]) -> PaymentService:
    return build_service()


@pytest_asyncio.fixture
async def order(seed: Callable[..., Any]) -> Order:
    """A freshly placed, unpaid order."""
    row = Order(
        id="ORD-42",
        user_id="user_7",
        total_amount=Decimal("49.99"),
        status="PENDING",
        payment_status="PENDING",
        version=0,
    )
    await seed(row)
    return row


@pytest_asyncio.fixture
async def paid_order(seed: Callable[..., Any]) -> Order:
    """An order whose payment already completed."""
    row = Order(
        id="ORD-43",
        user_id="user_7",
        total_amount=Decimal("49.99"),
        status="PROCESSING",
        payment_status="COMPLETED",
        payment_intent_id="pi_paid_43",
        version=3,
        last_event_at=1_700_000_000,
    )
    await seed(row)
    return row


@pytest_asyncio.fixture
async def product(seed: Callable[..., Any]) -> Product:
    row = Product(
        id="prod_mug",
        name="Coffee Mug",
        description="Stoneware, 350ml",
        images=["https://cdn.test/mug.png"],
        price=Decimal("25.00"),
    )
    await seed(row)
    return row


@pytest_asyncio.fixture
async def user(seed: Callable[..., Any]) -> User:
    row = User(id="user_7", email="buyer@example.com", name="Sam Buyer")
    await seed(row)
    return row
