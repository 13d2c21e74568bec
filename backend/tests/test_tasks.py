from __future__ import annotations

import datetime as dt

import dramatiq
import pytest
from dramatiq.brokers.stub import StubBroker

from receiptflow.core import tasks


def test_tests_run_on_stub_broker():
    assert isinstance(tasks.broker, StubBroker)
    assert dramatiq.get_broker() is tasks.broker


def test_actors_are_registered():
    assert hasattr(tasks.process_stripe_event, "send")
    assert hasattr(tasks.apply_pending_downgrades, "send")
    assert tasks.process_stripe_event.actor_name == "process_stripe_event"
    assert tasks.process_stripe_event.options["max_retries"] == 5
    assert tasks.apply_pending_downgrades.options["max_retries"] == 3


def test_process_stripe_event_runs_service(monkeypatch):
    seen = []

    async def fake(event):
        seen.append(event)
        return True

    monkeypatch.setattr(tasks, "_process_stripe_event", fake)
    event = {"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}
    tasks.process_stripe_event(event)
    assert seen == [event]


def test_process_stripe_event_failure_propagates_for_retry(monkeypatch):
    async def boom(event):
        raise RuntimeError("store down")

    monkeypatch.setattr(tasks, "_process_stripe_event", boom)
    with pytest.raises(RuntimeError):
        tasks.process_stripe_event({"id": "evt_2", "type": "invoice.paid"})


def test_apply_pending_downgrades_parses_timestamp(monkeypatch):
    seen = []

    async def fake(now=None):
        seen.append(now)
        return 2

    monkeypatch.setattr(tasks, "_apply_pending_downgrades", fake)
    assert tasks.apply_pending_downgrades("2026-06-01T00:00:00Z") == 2
    assert seen == [dt.datetime(2026, 6, 1, tzinfo=dt.timezone.utc)]

    assert tasks.apply_pending_downgrades() == 2
    assert seen[-1] is None
