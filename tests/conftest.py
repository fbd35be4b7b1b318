"""
Pytest configuration and fixtures.

Repository and orchestrator tests run against a temporary SQLite file through
aiosqlite, so separate sessions see each other's commits the way separate
service instances would. Gateways are replaced by ``FakeGateway``.
"""
import uuid
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fakes import DbReader, FakeGateway, RecordingReconciler
from payment_orchestrator.config import Settings
from payment_orchestrator.core.orchestrator import PaymentOrchestrator
from payment_orchestrator.core.orders import SqlOrderStore
from payment_orchestrator.database.connection import (
    create_engine_for_url,
    create_session_factory,
    init_db,
)
from payment_orchestrator.database.models import Order
from payment_orchestrator.gateways.registry import GatewayRegistry


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "race: concurrency tests")
    config.addinivalue_line("markers", "integration: HTTP level tests")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_name="payment-orchestrator-test",
        app_env="test",
        log_level="DEBUG",
        database_url="sqlite+aiosqlite:///:memory:",
        frontend_url="https://shop.test",
        callback_base_url="https://api.shop.test",
        default_locale="en",
        default_gateway="zarinpal",
        enabled_gateways="zarinpal,idpay",
        zarinpal_merchant_id="00000000-0000-0000-0000-000000000000",
        idpay_api_key="test-api-key",
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Temporary SQLite database with the schema created."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def order_store(session_factory: async_sessionmaker[AsyncSession]) -> SqlOrderStore:
    return SqlOrderStore(session_factory)


@pytest.fixture
def reconciler(order_store: SqlOrderStore) -> RecordingReconciler:
    return RecordingReconciler(order_store)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway("zarinpal")


@pytest.fixture
def second_gateway() -> FakeGateway:
    return FakeGateway("idpay")


@pytest.fixture
def registry(gateway: FakeGateway, second_gateway: FakeGateway) -> GatewayRegistry:
    registry = GatewayRegistry(default_gateway="zarinpal")
    registry.register(gateway)
    registry.register(second_gateway)
    return registry


@pytest.fixture
def orchestrator(
    registry: GatewayRegistry,
    order_store: SqlOrderStore,
    reconciler: RecordingReconciler,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        registry=registry,
        order_lookup=order_store,
        order_reconciler=reconciler,
        session_factory=session_factory,
        settings=test_settings,
    )


@pytest.fixture
def db_reader(session_factory: async_sessionmaker[AsyncSession]) -> DbReader:
    return DbReader(session_factory)


@pytest.fixture
def create_order(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Factory inserting an order row and returning its id."""

    async def _create(
        total: int = 1_500_000,
        user_id: str = "user-1",
        payment_method: str = "online",
        payment_status: str = "pending",
    ) -> uuid.UUID:
        order_id = uuid.uuid4()
        async with session_factory() as db:
            db.add(
                Order(
                    id=order_id,
                    order_number=f"ORD-{order_id.hex[:8].upper()}",
                    user_id=user_id,
                    total=total,
                    payment_method=payment_method,
                    payment_status=payment_status,
                    customer_name="Sara Ahmadi",
                    customer_phone="09120000000",
                    customer_email="sara@example.com",
                )
            )
            await db.commit()
        return order_id

    return _create


@pytest_asyncio.fixture
async def order_id(create_order: Any) -> uuid.UUID:
    """A payable online order of ``user-1``."""
    return await create_order()
