"""
Subscription API - Component Tests

FastAPI routes against wired services on in-memory mocks. The app
lifespan is not entered, so no database or NATS connection is made.
"""

import pytest
from fastapi.testclient import TestClient

from core.config import SubscriptionConfig
from microservices.subscription_service import main
from microservices.subscription_service.factory import BillingComponents
from microservices.subscription_service.models import SubscriptionStatus
from microservices.subscription_service.routes_registry import ROUTES
from microservices.subscription_service.subscription_service import SubscriptionLifecycleService


@pytest.fixture
def subscription_config():
    return SubscriptionConfig(max_pause_cycles=1)


@pytest.fixture
def lifecycle(mock_repository, mock_entitlements, clock, subscription_config, mock_event_bus):
    """Synchronous wiring; the in-memory repository needs no initialize"""
    return SubscriptionLifecycleService(
        repository=mock_repository,
        entitlements=mock_entitlements,
        clock=clock,
        config=subscription_config,
        event_bus=mock_event_bus,
    )


@pytest.fixture
def client(monkeypatch, lifecycle, plan_changes, dunning, sweeps):
    components = BillingComponents(
        lifecycle=lifecycle,
        plan_changes=plan_changes,
        dunning=dunning,
        sweeps=sweeps,
        closeables=[],
    )
    monkeypatch.setattr(main.subscription_microservice, "components", components)
    return TestClient(main.app)


@pytest.mark.component
class TestRouteTable:

    def test_every_registered_route_is_served(self):
        served = {}
        for route in main.app.routes:
            served.setdefault(route.path, set()).update(getattr(route, "methods", None) or ())

        for entry in ROUTES:
            assert entry["path"] in served, entry["path"]
            assert set(entry["methods"]) <= served[entry["path"]], entry["path"]

    def test_uninitialized_service_returns_503(self, monkeypatch):
        monkeypatch.setattr(main.subscription_microservice, "components", None)

        response = TestClient(main.app).get("/api/v1/subscriptions/sub_any")

        assert response.status_code == 503


@pytest.mark.component
class TestSubscriptionRoutes:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_create_and_get(self, client, data_factory):
        workspace_id = data_factory.make_workspace_id()

        created = client.post("/api/v1/subscriptions", json={
            "workspace_id": workspace_id,
            "package_assignment_id": data_factory.make_assignment_id(),
            "package_code": "starter",
        })

        assert created.status_code == 201
        subscription_id = created.json()["subscription"]["subscription_id"]
        fetched = client.get(f"/api/v1/subscriptions/{subscription_id}")
        assert fetched.status_code == 200
        assert fetched.json()["subscription"]["workspace_id"] == workspace_id

    def test_unknown_subscription_is_404(self, client):
        assert client.get("/api/v1/subscriptions/sub_missing").status_code == 404

    def test_list_filters_by_status(self, client, seed):
        paused = seed(status=SubscriptionStatus.PAUSED)
        seed()

        response = client.get("/api/v1/subscriptions", params={"status": "paused"})

        assert response.status_code == 200
        ids = [s["subscription_id"] for s in response.json()["subscriptions"]]
        assert ids == [paused.subscription_id]

    def test_cancel_at_period_end(self, client, seed):
        subscription = seed()

        response = client.post(f"/api/v1/subscriptions/{subscription.subscription_id}/cancel", json={"reason": "moving"})

        assert response.status_code == 200
        body = response.json()["subscription"]
        assert body["status"] == "active"
        assert body["cancelled_at"] is not None

    def test_terminal_subscription_conflicts(self, client, seed):
        subscription = seed()
        client.post(f"/api/v1/subscriptions/{subscription.subscription_id}/cancel", json={"immediate": True})

        response = client.post(f"/api/v1/subscriptions/{subscription.subscription_id}/pause")

        assert response.status_code == 409

    def test_pause_limit_is_422(self, client, seed):
        subscription = seed()
        base = f"/api/v1/subscriptions/{subscription.subscription_id}"
        assert client.post(f"{base}/pause").status_code == 200
        assert client.post(f"{base}/unpause").status_code == 200

        response = client.post(f"{base}/pause")

        assert response.status_code == 422
        assert client.get(f"{base}/pause-status").json()["can_pause"] is False

    def test_same_package_change_is_400(self, client, seed):
        subscription = seed(package_code="starter")

        response = client.post(
            f"/api/v1/subscriptions/{subscription.subscription_id}/plan-change",
            json={"new_package_code": "starter"},
        )

        assert response.status_code == 400

    def test_plan_change_preview(self, client, seed):
        subscription = seed(days_into_period=15)

        response = client.post(
            f"/api/v1/subscriptions/{subscription.subscription_id}/plan-change/preview",
            json={"new_package_code": "pro"},
        )

        assert response.status_code == 200
        assert response.json()["proration"]["net_amount"] == "15.00"


@pytest.mark.component
class TestDunningRoutes:

    def test_payment_failed_then_status(self, client, seed, mock_invoices, data_factory, clock):
        subscription = seed()
        invoice = mock_invoices.add_invoice(data_factory.make_invoice(
            subscription.workspace_id, clock.now(), subscription_id=subscription.subscription_id
        ))

        response = client.post("/api/v1/dunning/payment-failed", json={"invoice_id": invoice.invoice_id})

        assert response.status_code == 200
        assert response.json()["invoice"]["charge_attempts"] == 1
        status = client.get(f"/api/v1/subscriptions/{subscription.subscription_id}/dunning-status")
        assert status.json()["stage"] == "retry"

    def test_unknown_invoice_is_404(self, client):
        response = client.post("/api/v1/dunning/payment-recovered", json={"invoice_id": "inv_missing"})

        assert response.status_code == 404

    def test_run_dry(self, client):
        response = client.post("/api/v1/dunning/run", json={"dry_run": True})

        assert response.status_code == 200
        assert response.json()["dry_run"] is True

    def test_run_unknown_stage_is_400(self, client):
        response = client.post("/api/v1/dunning/run", json={"stage": "refund"})

        assert response.status_code == 400
