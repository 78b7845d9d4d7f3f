"""
Pytest configuration and fixtures for the payment core tests.
"""

import os

# Must be set before anything imports app.core.config / app.database
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENV_MODE"] = "development"
os.environ.setdefault("TELEBIRR_APP_ID", "test-app")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import NamedTuple

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.database import Base
from app.models import GatewayFlow, Order, OrderStatus
from app.services.notifications import MockNotificationService
from app.services.orders import SQLOrderService
from app.services.payment import (
    CallbackProcessor,
    GatewayLedger,
    MockGatewayClient,
    RequestSigner,
    RetryQueue,
)


TEST_DATABASE_URL = "sqlite+aiosqlite://"


class KeyPair(NamedTuple):
    private_key: rsa.RSAPrivateKey
    private_pem: str
    public_pem: str


def _generate_key_pair() -> KeyPair:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return KeyPair(key, private_pem, public_pem)


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# =============================================================================
# KEYS & SIGNERS
# =============================================================================

@pytest.fixture(scope="session")
def merchant_keys() -> KeyPair:
    return _generate_key_pair()


@pytest.fixture(scope="session")
def gateway_keys() -> KeyPair:
    return _generate_key_pair()


@pytest.fixture
def merchant_signer(merchant_keys, gateway_keys) -> RequestSigner:
    """What the application holds: our private key, Telebirr's public key."""
    return RequestSigner(
        private_key_pem=merchant_keys.private_pem,
        public_key_pem=gateway_keys.public_pem,
    )


@pytest.fixture
def gateway_signer(merchant_keys, gateway_keys) -> RequestSigner:
    """The gateway side: signs callbacks, verifies our requests."""
    return RequestSigner(
        private_key_pem=gateway_keys.private_pem,
        public_key_pem=merchant_keys.public_pem,
    )


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def order(session_factory) -> Order:
    """A business order waiting for payment."""
    order = Order(
        customer_name="Abebe Kebede",
        customer_phone="+251911000000",
        total_amount=Decimal("100.50"),
        status=OrderStatus.PENDING,
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(order)
        await session.refresh(order)
    return order


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        telebirr_app_id="test-app",
        telebirr_app_secret="test-secret",
        operator_alert_email="ops@example.com",
        retry_max_attempts=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def alerts(settings) -> MockNotificationService:
    return MockNotificationService(settings=settings)


@pytest.fixture
def order_service() -> SQLOrderService:
    return SQLOrderService()


@pytest.fixture
def ledger(session_factory, order_service) -> GatewayLedger:
    return GatewayLedger(session_factory, order_service)


@pytest.fixture
def retry_queue(session_factory, settings, alerts, clock) -> RetryQueue:
    # No jitter so due times are exact
    return RetryQueue(session_factory, settings, alerts, clock=clock, rng=lambda: 0.0)


@pytest.fixture
def processor(merchant_signer, ledger, retry_queue, alerts) -> CallbackProcessor:
    return CallbackProcessor(merchant_signer, ledger, retry_queue, alerts=alerts)


@pytest.fixture
def mock_clients(merchant_signer, ledger, settings) -> dict[GatewayFlow, MockGatewayClient]:
    return {
        flow: MockGatewayClient(flow, merchant_signer, ledger, settings=settings)
        for flow in GatewayFlow
    }


@pytest.fixture
def make_callback(gateway_signer):
    """Build a callback exactly as Telebirr would sign it."""

    def _make(gateway_order, trade_status: str = "TRADE_SUCCESS", **overrides) -> dict:
        params = {
            "trade_no": "TB2026000001",
            "trade_status": trade_status,
            "total_amount": str(gateway_order.amount),
            "currency": "ETB",
            "gmt_payment": "2026-01-01 12:05:00",
        }
        if gateway_order.flow == GatewayFlow.B2B:
            params["prepay_id"] = gateway_order.correlation_id
            params["merch_order_id"] = gateway_order.merchant_order_id
        else:
            params["out_trade_no"] = gateway_order.correlation_id
            params["passback_params"] = f"order_id={gateway_order.order_id}"
        params.update(overrides)
        return gateway_signer.sign_params(params)

    return _make


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
async def api(session_factory, ledger, processor, retry_queue, mock_clients, order_service):
    """
    HTTP client against the FastAPI app with every payment dependency
    wired to the test database.
    """
    from app.database import get_db
    from app.main import (
        app,
        provide_c2b_client,
        provide_callback_processor,
        provide_gateway_client,
        provide_ledger,
        provide_order_service,
        provide_retry_queue,
    )

    async def override_get_db():
        async with session_factory() as session:
            yield session

    def override_gateway_client(flow: GatewayFlow):
        return mock_clients[flow]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[provide_gateway_client] = override_gateway_client
    app.dependency_overrides[provide_c2b_client] = lambda: mock_clients[GatewayFlow.C2B]
    app.dependency_overrides[provide_callback_processor] = lambda: processor
    app.dependency_overrides[provide_ledger] = lambda: ledger
    app.dependency_overrides[provide_retry_queue] = lambda: retry_queue
    app.dependency_overrides[provide_order_service] = lambda: order_service

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
