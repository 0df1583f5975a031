"""Finicity HTTP surface: webhook dispatch, Connect URL and manual sync."""
import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.core.config import settings
from app.core.deps import get_finicity_client
from app.core.exceptions import NotFoundError
from app.main import app
from app.models.account import BankAccount, BankTransaction
from app.models.user import User
from fakes import auth_headers, remote_account, remote_txn

WEBHOOK = "/api/v1/finicity/webhook"


async def _account_ids(session_factory) -> set[str]:
    async with session_factory() as fresh:
        return set((await fresh.execute(select(BankAccount.id))).scalars().all())


class TestWebhook:
    async def test_event_without_customer_is_acknowledged(self, api_client, finicity):
        resp = await api_client.post(WEBHOOK, json={"eventType": "ping"})
        assert resp.status_code == 204
        assert finicity.requests == []

    async def test_unparseable_body_is_acknowledged(self, api_client, finicity):
        resp = await api_client.post(
            WEBHOOK, content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 204
        assert finicity.requests == []

    async def test_unknown_customer(self, api_client, connected_user, finicity, session_factory):
        resp = await api_client.post(WEBHOOK, json={"customerId": "999", "eventType": "added"})
        assert resp.status_code == 404
        assert finicity.requests == []
        assert await _account_ids(session_factory) == set()

    async def test_known_customer_is_reconciled(
        self, api_client, connected_user, finicity, session_factory
    ):
        finicity.accounts = [remote_account("A", balance=250)]
        finicity.transactions = {
            "A": [remote_txn("a1", "A", datetime.now(timezone.utc) - timedelta(days=2))]
        }

        resp = await api_client.post(
            WEBHOOK, json={"customerId": "5011", "eventType": "accountsAdded"}
        )

        assert resp.status_code == 204
        assert await _account_ids(session_factory) == {"A"}
        async with session_factory() as fresh:
            txns = (await fresh.execute(select(BankTransaction))).scalars().all()
        assert [(t.id, t.owner_id) for t in txns] == [("a1", connected_user.id)]

    async def test_numeric_customer_id(self, api_client, connected_user, finicity, session_factory):
        finicity.accounts = [remote_account("A")]
        resp = await api_client.post(WEBHOOK, content=json.dumps({"customerId": 5011}))
        assert resp.status_code == 204
        assert await _account_ids(session_factory) == {"A"}

    async def test_listing_outage_is_still_acknowledged(self, api_client, connected_user, finicity):
        finicity.accounts_status = 503
        resp = await api_client.post(WEBHOOK, json={"customerId": "5011"})
        assert resp.status_code == 204

    async def test_owner_removed_before_sync(self, api_client, connected_user, finicity, monkeypatch):
        async def owner_gone(owner_id, db, client, cache):
            raise NotFoundError(f"User {owner_id} not found")

        monkeypatch.setattr("app.routers.finicity.reconcile_all", owner_gone)
        resp = await api_client.post(WEBHOOK, json={"customerId": "5011"})
        assert resp.status_code == 404

    async def test_sync_failure_is_reported(self, api_client, connected_user, finicity):
        app.dependency_overrides[get_finicity_client] = lambda: finicity.client(partner_id="")
        resp = await api_client.post(WEBHOOK, json={"customerId": "5011"})
        assert resp.status_code == 500
        assert finicity.requests == []


class TestConnectUrl:
    async def test_provisions_customer_and_returns_link(self, api_client, user, finicity, session_factory):
        resp = await api_client.post("/api/v1/finicity/connect-url", headers=auth_headers(user))

        assert resp.status_code == 200
        assert resp.json() == {"connect_url": finicity.connect_link}
        body = json.loads(finicity.requests[-1].content)
        assert body["customerId"] == "1005061234"
        assert body["redirectUri"] == "https://app.example.test/banking"
        assert body["webhook"] == settings.finicity_webhook_url
        async with session_factory() as fresh:
            stored = await fresh.get(User, user.id)
        assert stored.finicity_customer_id == "1005061234"

    async def test_requires_authentication(self, api_client, finicity):
        resp = await api_client.post("/api/v1/finicity/connect-url")
        assert resp.status_code == 401
        assert finicity.requests == []

    async def test_missing_webhook_url(self, api_client, user, finicity, monkeypatch):
        monkeypatch.setattr(settings, "finicity_webhook_url", "")
        resp = await api_client.post("/api/v1/finicity/connect-url", headers=auth_headers(user))
        assert resp.status_code == 503
        assert finicity.requests == []

    async def test_provider_failure(self, api_client, user, finicity):
        finicity.connect_link = ""
        resp = await api_client.post("/api/v1/finicity/connect-url", headers=auth_headers(user))
        assert resp.status_code == 502


class TestManualSync:
    async def test_unconnected_user(self, api_client, user, finicity):
        resp = await api_client.post("/api/v1/finicity/sync", headers=auth_headers(user))
        assert resp.status_code == 409
        assert finicity.requests == []

    async def test_reports_counts(self, api_client, connected_user, finicity):
        finicity.accounts = [remote_account("A"), remote_account("B")]
        resp = await api_client.post("/api/v1/finicity/sync", headers=auth_headers(connected_user))
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "accounts": 2,
            "accounts_deleted": 0,
            "transactions": 0,
        }
