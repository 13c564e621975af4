import sys
from pathlib import Path
sys.path.append(str(Path(__file__).parent.parent.parent))

import httpx
import pytest
import pytest_asyncio
from src.main import app, get_grouping_plugin, get_invoice_api
from src.services.grouping import SubscriptionGroupingPlugin
from src.services.invoice_api import InvoiceUserApi
from tests.unit.test_config import TestAsyncSession, create_account


@pytest.fixture
def plugin():
    return SubscriptionGroupingPlugin()


@pytest_asyncio.fixture
async def client(setup_database, notifier, account_locks, plugin):
    app.dependency_overrides[get_invoice_api] = lambda: InvoiceUserApi(
        TestAsyncSession, notifier=notifier, locks=account_locks
    )
    app.dependency_overrides[get_grouping_plugin] = lambda: plugin
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestInvoiceEndpoints:
    """Test suite for the invoice HTTP endpoints"""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "db": "connected"}

    @pytest.mark.asyncio
    async def test_insert_credit_and_list(self, client, publisher):
        await create_account("ACC1")

        response = await client.post("/accounts/ACC1/credits", json={
            "amount": "10.00",
            "currency": "USD",
            "effective_date": "2012-04-01",
            "description": "Goodwill",
        })

        assert response.status_code == 200
        credit_invoice = response.json()
        assert credit_invoice["status"] == "COMMITTED"
        assert credit_invoice["invoice_number"] == 1
        assert [item["item_type"] for item in credit_invoice["items"]] == ["CREDIT_ADJ", "CBA_ADJ"]
        assert publisher.event_types == ["INVOICE"]

        response = await client.get("/accounts/ACC1/invoices")
        assert response.status_code == 200
        assert [invoice["id"] for invoice in response.json()] == [credit_invoice["id"]]

    @pytest.mark.asyncio
    async def test_credit_validation(self, client):
        await create_account("ACC1")

        response = await client.post("/accounts/ACC1/credits", json={
            "amount": "10.00",
            "currency": "EUR",
            "effective_date": "2012-04-01",
        })
        assert response.status_code == 400

        response = await client.post("/accounts/ACC1/credits", json={
            "amount": "0",
            "currency": "USD",
            "effective_date": "2012-04-01",
        })
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_account(self, client):
        response = await client.get("/accounts/MISSING/invoices")
        assert response.status_code == 404

        response = await client.post("/accounts/MISSING/credits", json={
            "amount": "1",
            "currency": "USD",
            "effective_date": "2012-04-01",
        })
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_void_invoice(self, client):
        await create_account("ACC1")
        response = await client.post("/accounts/ACC1/credits", json={
            "amount": "5",
            "currency": "USD",
            "effective_date": "2012-04-01",
        })
        invoice_id = response.json()["id"]

        response = await client.post(f"/accounts/ACC1/invoices/{invoice_id}/void")
        assert response.status_code == 200
        assert response.json()["status"] == "VOID"

        response = await client.post(f"/accounts/ACC1/invoices/{invoice_id}/void")
        assert response.status_code == 400

        response = await client.post("/accounts/ACC1/invoices/unknown/void")
        assert response.status_code == 404


class TestInvoiceGroupEndpoints:
    """Test suite for managing subscription groups over HTTP"""

    @pytest.mark.asyncio
    async def test_set_get_and_clear_groups(self, client, plugin):
        response = await client.put("/accounts/ACC1/invoice_groups", json={
            "subscription_to_group": {"SUB1": 0, "SUB2": 1},
        })
        assert response.status_code == 200
        assert plugin.assignment_for("ACC1") == {"SUB1": 0, "SUB2": 1}

        response = await client.get("/accounts/ACC1/invoice_groups")
        assert response.json() == {"account_id": "ACC1", "subscription_to_group": {"SUB1": 0, "SUB2": 1}}

        response = await client.delete("/accounts/ACC1/invoice_groups")
        assert response.json() == {"success": True}
        assert plugin.assignment_for("ACC1") == {}

    @pytest.mark.asyncio
    async def test_negative_group_is_rejected(self, client, plugin):
        response = await client.put("/accounts/ACC1/invoice_groups", json={
            "subscription_to_group": {"SUB1": -1},
        })

        assert response.status_code == 400
        assert plugin.assignment_for("ACC1") == {}
