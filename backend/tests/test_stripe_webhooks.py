from __future__ import annotations

import json
import types

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Import the real router to test wiring and handler behavior
import receiptflow.api.routes.stripe_webhooks as wh
from receiptflow.api.routes.stripe_webhooks import router as stripe_router
from receiptflow.core import config as cfg
from receiptflow.models import tables
from receiptflow.models.enums import SubscriptionStatus


@pytest.fixture
def app_client():
    app = FastAPI()
    app.include_router(stripe_router)
    return TestClient(app)


def _fake_event(event_type: str, data_object: dict, event_id: str = "evt_test_1"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": data_object},
    }


class DummyStripe:
    class SignatureVerificationError(Exception):
        pass

    class Webhook:
        calls = []

        @staticmethod
        def construct_event(payload, sig_header, secret):
            DummyStripe.Webhook.calls.append((payload, sig_header, secret))
            # Accept any payload when secret matches "good"
            if secret != "good":
                raise DummyStripe.SignatureVerificationError("bad secret")
            return json.loads(payload.decode("utf-8"))


@pytest.fixture
def sent(monkeypatch):
    # Patch stripe module used in router
    monkeypatch.setattr(wh, "stripe", DummyStripe)
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRET", None, raising=False)
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", "bad, good", raising=False)

    # In-memory stand-in for the Redis SET NX marker
    markers = set()

    async def fake_mark(event_id):
        if event_id in markers:
            return False
        markers.add(event_id)
        return True

    monkeypatch.setattr(wh, "mark_webhook_delivery", fake_mark)

    async def fake_release(event_id):
        markers.discard(event_id)

    monkeypatch.setattr(wh, "release_webhook_delivery", fake_release)

    # Patch Dramatiq send to record instead of enqueueing
    calls: list[dict] = []
    monkeypatch.setattr(wh, "process_stripe_event", types.SimpleNamespace(send=lambda evt: calls.append(evt)))
    return calls


def _post(client, event):
    return client.post(
        "/webhooks/stripe",
        content=json.dumps(event).encode("utf-8"),
        headers={"stripe-signature": "stub"},
    )


def test_webhook_multi_secret_and_dedup(app_client, sent):
    event = _fake_event("checkout.session.completed", {"id": "cs_test_1"})

    # First call should be processed (not duplicate)
    resp = _post(app_client, event)
    assert resp.status_code == 200
    body = resp.json()
    assert body.get("received") is True
    assert body.get("queued") is True  # async offload path
    assert body.get("type") == "checkout.session.completed"
    assert sent == [event]

    # Second call with same id should be deduped
    resp2 = _post(app_client, event)
    assert resp2.status_code == 200
    assert resp2.json().get("duplicate") is True
    assert len(sent) == 1


def test_webhook_rejects_when_all_secrets_invalid(monkeypatch, app_client, sent):
    """If none of the configured secrets validate, the endpoint should 400."""
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", "bad", raising=False)

    resp = _post(app_client, _fake_event("checkout.session.completed", {"id": "cs_bad"}, event_id="evt_bad"))
    assert resp.status_code == 400
    assert sent == []


def test_webhook_without_secrets_is_misconfigured(monkeypatch, app_client, sent):
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", None, raising=False)
    resp = _post(app_client, _fake_event("invoice.paid", {"id": "in_1"}, event_id="evt_cfg"))
    assert resp.status_code == 500
    assert sent == []


def test_webhook_without_redis_still_queues(monkeypatch, app_client, sent):
    async def no_redis(event_id):
        return None

    monkeypatch.setattr(wh, "mark_webhook_delivery", no_redis)
    event = _fake_event("invoice.payment_failed", {"id": "in_2", "customer": "cus_1"}, event_id="evt_nr")
    assert _post(app_client, event).json().get("queued") is True
    assert _post(app_client, event).json().get("queued") is True
    assert len(sent) == 2


async def test_webhook_applies_inline_when_queue_is_down(monkeypatch, sent, client, session_factory):
    async with session_factory() as db:
        db.add(tables.Account(id="acct_1", stripe_customer_id="cus_123"))
        await db.commit()

    def broken_send(evt):
        raise ConnectionError("broker down")

    monkeypatch.setattr(wh, "process_stripe_event", types.SimpleNamespace(send=broken_send))
    event = _fake_event("invoice.payment_failed", {"id": "in_3", "customer": "cus_123"}, event_id="evt_inline")
    resp = await client.post(
        "/webhooks/stripe",
        content=json.dumps(event).encode("utf-8"),
        headers={"stripe-signature": "stub"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["queued"] is False
    assert body["changed"] is True

    async with session_factory() as db:
        account = await db.get(tables.Account, "acct_1")
        assert account.status is SubscriptionStatus.PAST_DUE


async def test_failed_inline_apply_is_retried_on_redelivery(monkeypatch, sent, client):
    from receiptflow.api.dependencies import get_subscription_service
    from receiptflow.api.main import app
    from receiptflow.core.exceptions import RemoteUnavailableError

    def broken_send(evt):
        raise ConnectionError("broker down")

    applied = []

    class FlakySubscriptions:
        async def apply_processor_event(self, db, event):
            if not applied:
                applied.append(None)
                raise RemoteUnavailableError(details={"operation": "stripe_event"})
            applied.append(event["id"])
            return True

    monkeypatch.setattr(wh, "process_stripe_event", types.SimpleNamespace(send=broken_send))
    app.dependency_overrides[get_subscription_service] = lambda: FlakySubscriptions()
    event = _fake_event("invoice.paid", {"id": "in_9", "customer": "cus_9"}, event_id="evt_retry")
    body = json.dumps(event).encode("utf-8")

    first = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": "stub"})
    assert first.status_code == 503

    retry = await client.post("/webhooks/stripe", content=body, headers={"stripe-signature": "stub"})
    assert retry.status_code == 200
    assert retry.json().get("duplicate") is None
    assert retry.json()["changed"] is True
    assert applied == [None, "evt_retry"]
