"""
Subscription Service Component Test Fixtures

Wires the real services on top of the in-memory mocks:
- MockSubscriptionRepository / MockInvoiceRepository: version-checked stores
- MockClock: controllable time source
- MockEntitlementService, MockNotificationDispatcher, MockPaymentGateway
- MockEventBus: captures published events
"""

import pytest
import pytest_asyncio

from core.config import DunningConfig, SubscriptionConfig
from microservices.subscription_service.dunning_service import DunningService
from microservices.subscription_service.plan_change import PlanChangeScheduler
from microservices.subscription_service.subscription_service import SubscriptionLifecycleService
from microservices.subscription_service.sweeps import BillingSweepRunner

from .mocks import (
    MockClock,
    MockEntitlementService,
    MockEventBus,
    MockInvoiceRepository,
    MockNotificationDispatcher,
    MockPackageCatalog,
    MockPaymentGateway,
    MockSubscriptionRepository,
    SubscriptionTestDataFactory,
)


@pytest.fixture
def data_factory():
    return SubscriptionTestDataFactory


@pytest.fixture
def clock(reference_time):
    return MockClock(reference_time)


@pytest.fixture
def subscription_config():
    return SubscriptionConfig()


@pytest.fixture
def dunning_config():
    return DunningConfig()


@pytest.fixture
def mock_repository():
    return MockSubscriptionRepository()


@pytest.fixture
def mock_invoices():
    return MockInvoiceRepository()


@pytest.fixture
def mock_catalog():
    return MockPackageCatalog([
        SubscriptionTestDataFactory.make_package("starter", "19.00", "190.00"),
        SubscriptionTestDataFactory.make_package("pro", "49.00", "490.00"),
    ])


@pytest.fixture
def mock_entitlements():
    return MockEntitlementService()


@pytest.fixture
def mock_notifications():
    return MockNotificationDispatcher()


@pytest.fixture
def mock_gateway():
    return MockPaymentGateway()


@pytest.fixture
def mock_event_bus():
    return MockEventBus()


@pytest_asyncio.fixture
async def lifecycle(mock_repository, mock_entitlements, clock, subscription_config, mock_event_bus):
    """Lifecycle service with mocked dependencies"""
    service = SubscriptionLifecycleService(
        repository=mock_repository,
        entitlements=mock_entitlements,
        clock=clock,
        config=subscription_config,
        event_bus=mock_event_bus,
    )
    await service.initialize()
    return service


@pytest.fixture
def plan_changes(lifecycle, mock_catalog, mock_entitlements):
    return PlanChangeScheduler(lifecycle, mock_catalog, mock_entitlements)


@pytest.fixture
def dunning(lifecycle, mock_invoices, mock_entitlements, mock_notifications, mock_gateway, dunning_config):
    return DunningService(
        lifecycle,
        mock_invoices,
        entitlements=mock_entitlements,
        notifications=mock_notifications,
        payment_gateway=mock_gateway,
        config=dunning_config,
    )


@pytest.fixture
def sweeps(lifecycle, dunning, plan_changes, dunning_config):
    return BillingSweepRunner(lifecycle, dunning, plan_changes, dunning_config)


@pytest.fixture
def seed(mock_repository, mock_entitlements, clock):
    """Store a subscription with a matching active assignment"""

    def _seed(**kwargs):
        subscription = SubscriptionTestDataFactory.make_subscription(clock.now(), **kwargs)
        mock_repository.add_subscription(subscription)
        mock_entitlements.add_assignment(
            SubscriptionTestDataFactory.make_assignment(subscription.workspace_id, subscription.package_code or "starter")
            .model_copy(update={"assignment_id": subscription.package_assignment_id})
        )
        return subscription

    return _seed
