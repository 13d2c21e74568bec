from __future__ import annotations

import datetime as dt

from receiptflow.core.config import settings
from receiptflow.models import tables
from receiptflow.models.enums import SubscriptionTier

from .factories import auth_headers


async def _set(session_factory, account_id: str, **values):
    async with session_factory() as db:
        account = await db.get(tables.Account, account_id)
        for name, value in values.items():
            setattr(account, name, value)
        await db.commit()


async def test_catalog_is_public(client):
    resp = await client.get("/entitlements/catalog")
    assert resp.status_code == 200
    body = resp.json()
    assert [t["tier"] for t in body["tiers"]] == ["free", "pro", "max"]
    assert body["tiers"][1]["prices"]["monthly"]["priceId"] == settings.STRIPE_PRICE_PRO_MONTHLY
    assert body["tiers"][0]["prices"]["monthly"]["priceId"] is None


async def test_entitlements_require_auth(client):
    resp = await client.get("/entitlements")
    assert resp.status_code == 401

    resp = await client.get("/entitlements", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


async def test_first_request_provisions_free_account(client):
    resp = await client.get("/entitlements", headers=auth_headers("acct_1"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["account_id"] == "acct_1"
    assert body["tier"] == "free"
    assert body["effective_tier"] == "free"
    assert body["remaining_receipts"] == 50
    assert body["limits"]["monthlyReceiptCap"] == 50


async def test_advisory_checks(client, session_factory):
    headers = auth_headers("acct_1")
    resp = await client.post("/entitlements/check", json={"action": "batch_upload", "count": 6}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["allowed"] is False
    assert body["denial"]["dimension"] == "batch"
    assert body["denial"]["required_tier"] == "pro"

    resp = await client.post("/entitlements/check", json={"action": "upload"}, headers=headers)
    assert resp.json() == {"allowed": True, "denial": None}

    resp = await client.post("/entitlements/check", json={"action": "feature", "feature": "apiAccess"}, headers=headers)
    assert resp.json()["denial"]["required_tier"] == "max"

    await _set(session_factory, "acct_1", tier=SubscriptionTier.MAX)
    resp = await client.post("/entitlements/check", json={"action": "feature", "feature": "apiAccess"}, headers=headers)
    assert resp.json()["allowed"] is True


async def test_check_validation_errors(client):
    headers = auth_headers("acct_1")
    resp = await client.post("/entitlements/check", json={"action": "batch_upload", "count": -2}, headers=headers)
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    resp = await client.post("/entitlements/check", json={"action": "fly"}, headers=headers)
    assert resp.status_code == 422
    assert resp.json()["error"]["details"]["field"] == "action"


async def test_usage_is_enforced_with_payment_required(client, session_factory):
    headers = auth_headers("acct_1")
    await client.get("/entitlements", headers=headers)
    await _set(session_factory, "acct_1", receipts_used_this_period=49, usage_period_start=dt.datetime.now(dt.timezone.utc))

    resp = await client.post("/entitlements/usage", json={"count": 1}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["remaining_receipts"] == 0

    resp = await client.post("/entitlements/usage", json={"count": 1}, headers=headers)
    assert resp.status_code == 402
    error = resp.json()["error"]
    assert error["code"] == "ENTITLEMENT_DENIED"
    assert error["details"]["denial"]["dimension"] == "receipts"
    assert error["details"]["denial"]["required_tier"] == "pro"


async def test_usage_batch_cap(client):
    resp = await client.post("/entitlements/usage", json={"count": 6}, headers=auth_headers("acct_1"))
    assert resp.status_code == 402
    assert resp.json()["error"]["details"]["denial"]["dimension"] == "batch"


async def test_downgrade_schedules_pending_tier(client, session_factory):
    headers = auth_headers("acct_1")
    await client.get("/entitlements", headers=headers)
    period_end = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=10)
    await _set(session_factory, "acct_1", tier=SubscriptionTier.PRO, current_period_end=period_end)

    resp = await client.post("/billing/downgrade", json={"target_tier": "free"}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "pro"
    assert body["pending_tier"] == "free"


async def test_checkout_for_free_tier_is_invalid(client):
    resp = await client.post("/billing/checkout", json={"tier": "free"}, headers=auth_headers("acct_1"))
    assert resp.status_code == 422
    assert resp.json()["error"]["details"]["field"] == "tier"


async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "healthy"}


async def test_db_debug_is_disabled_outside_development(client):
    resp = await client.get("/debug/db")
    assert resp.status_code == 200
    assert resp.json()["ok"] is False
