"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")

from src.core.order_locks import OrderLockRegistry  # noqa: E402
from src.models.catalog import Catalog, CatalogProduct, CatalogServiceEntry  # noqa: E402
from src.models.order import ServiceTier, ServiceType  # noqa: E402
from src.services.breakdown_builder import PricingPolicy  # noqa: E402
from src.services.order_lifecycle_service import OrderLifecycleService  # noqa: E402
from order_fixtures import (  # noqa: E402
    BAG_ID,
    CASHIER_ID,
    DETERGENT_ID,
    OTHER_CASHIER_ID,
    SOFTENER_ID,
    FakeInventory,
    FrozenClock,
    InMemoryOrderRepository,
)


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def policy() -> PricingPolicy:
    """Default pricing constants."""
    return PricingPolicy()


@pytest.fixture
def catalog() -> Catalog:
    """Catalog with every service priced and three products."""
    return Catalog(
        services=(
            CatalogServiceEntry(id="svc-wash-b", service_type=ServiceType.WASH, tier=ServiceTier.BASIC,
                                name="Basic Wash", base_price=Decimal("65"), base_duration_minutes=39),
            CatalogServiceEntry(id="svc-wash-p", service_type=ServiceType.WASH, tier=ServiceTier.PREMIUM,
                                name="Premium Wash", base_price=Decimal("80"), base_duration_minutes=39),
            CatalogServiceEntry(id="svc-spin", service_type=ServiceType.SPIN, name="Spin",
                                base_price=Decimal("20"), base_duration_minutes=9),
            CatalogServiceEntry(id="svc-dry-b", service_type=ServiceType.DRY, tier=ServiceTier.BASIC,
                                name="Basic Dry", base_price=Decimal("65"), base_duration_minutes=32),
            CatalogServiceEntry(id="svc-dry-p", service_type=ServiceType.DRY, tier=ServiceTier.PREMIUM,
                                name="Premium Dry", base_price=Decimal("80"), base_duration_minutes=40),
            CatalogServiceEntry(id="svc-iron", service_type=ServiceType.IRON, name="Iron (per kg)",
                                base_price=Decimal("30"), base_duration_minutes=20),
            CatalogServiceEntry(id="svc-fold", service_type=ServiceType.FOLD, name="Fold",
                                base_price=Decimal("25"), base_duration_minutes=15),
        ),
        products=(
            CatalogProduct(id=DETERGENT_ID, item_name="Detergent Sachet", unit_price=Decimal("15"),
                           quantity=Decimal("100")),
            CatalogProduct(id=SOFTENER_ID, item_name="Fabric Softener", unit_price=Decimal("12.50"),
                           quantity=Decimal("50")),
            CatalogProduct(id=BAG_ID, item_name="Plastic Bag", unit_price=Decimal("3"), quantity=Decimal("500")),
        ),
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory({DETERGENT_ID: 10, SOFTENER_ID: 5, BAG_ID: 100})


@pytest.fixture
def staff_service() -> MagicMock:
    """Staff directory that knows two cashiers."""
    known = {
        CASHIER_ID: {"id": CASHIER_ID, "first_name": "Ana", "last_name": "Reyes",
                     "email_address": "ana@example.com", "is_active": True},
        OTHER_CASHIER_ID: {"id": OTHER_CASHIER_ID, "first_name": "Ben", "last_name": "Cruz",
                           "email_address": "ben@example.com", "is_active": True},
    }
    service = MagicMock()
    service.get_staff = AsyncMock(side_effect=lambda staff_id: known.get(staff_id))
    return service


@pytest.fixture
def notifications() -> MagicMock:
    return MagicMock()


@pytest.fixture
def customer_service() -> MagicMock:
    """Loyalty point store holding 25 points for every known customer."""
    service = MagicMock()
    service.get_loyalty_points = AsyncMock(return_value=25)
    service.adjust_loyalty_points = AsyncMock(side_effect=lambda customer_id, delta: max(0, 25 + delta))
    return service


@pytest.fixture
def lifecycle(
    repository: InMemoryOrderRepository,
    catalog: Catalog,
    inventory: FakeInventory,
    staff_service: MagicMock,
    customer_service: MagicMock,
    notifications: MagicMock,
    clock: FrozenClock,
    policy: PricingPolicy,
) -> OrderLifecycleService:
    """Lifecycle service wired to in-memory collaborators."""
    catalog_service = MagicMock()
    catalog_service.get_catalog = AsyncMock(return_value=catalog)
    return OrderLifecycleService(
        repository=repository,
        catalog_service=catalog_service,
        inventory_service=inventory,
        staff_service=staff_service,
        customer_service=customer_service,
        notification_service=notifications,
        clock=clock,
        locks=OrderLockRegistry(),
        policy=policy,
    )


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    # Configure default mock responses
    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = (
        mock_response
    )

    with patch("src.core.supabase.get_supabase_client", return_value=mock_client):
        yield mock_client


@pytest.fixture
def client(mock_supabase_client: MagicMock) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application.

    Args:
        mock_supabase_client: Mocked Supabase client fixture.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client
