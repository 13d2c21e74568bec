"""Dramatiq task definitions for background billing work.

Stripe webhook events are verified and de-duplicated by the API and then
processed here, off the request path.  A periodic actor applies
scheduled downgrades once their billing period has ended.

To run these tasks start a Dramatiq worker pointed at the module:

```bash
dramatiq receiptflow.core.tasks --processes 1 --threads 4
```

The broker URL defaults to ``REDIS_URL``; override it with
``DRAMATIQ_BROKER_URL``.  Under ``ENVIRONMENT=test`` (or with
``DRAMATIQ_BROKER_URL=stub://``) an in-memory StubBroker is used.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit

from receiptflow.core.config import settings
from receiptflow.core.database import AsyncSessionLocal
from receiptflow.core.observability import init_sentry, sentry_breadcrumb, sentry_capture
from receiptflow.services.subscription_service import SubscriptionService
from receiptflow.utils.helpers import parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def _build_broker():
    broker_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
    if settings.is_test or not broker_url or broker_url.startswith("stub://"):
        broker = StubBroker()
        broker.emit_after("process_boot")
        return broker
    broker = RedisBroker(url=broker_url)
    if not _has_mw(broker, AgeLimit):
        broker.add_middleware(AgeLimit())
    if not _has_mw(broker, TimeLimit):
        broker.add_middleware(TimeLimit())
    if not _has_mw(broker, ShutdownNotifications):
        broker.add_middleware(ShutdownNotifications())
    if not _has_mw(broker, Retries):
        # Exponential backoff up to ~1m
        broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000, backoff=2.0))
    return broker


broker = _build_broker()
dramatiq.set_broker(broker)
logger.info("Dramatiq broker configured: %s", type(broker).__name__)

# Worker processes report to Sentry under their own service tag
if not settings.is_test:
    init_sentry("worker")


async def _process_stripe_event(event: Dict[str, Any]) -> bool:
    async with AsyncSessionLocal() as session:
        try:
            return await SubscriptionService().apply_processor_event(session, event)
        except BaseException:
            await session.rollback()
            raise


async def _apply_pending_downgrades(now=None) -> int:
    async with AsyncSessionLocal() as session:
        try:
            return await SubscriptionService().apply_pending_downgrades(session, now or utcnow())
        except BaseException:
            await session.rollback()
            raise


@dramatiq.actor(max_retries=5)
def process_stripe_event(event: dict):
    """Apply a verified Stripe webhook event to the account it concerns.

    Keep this handler idempotent; webhook delivery may be retried by Stripe
    and by Dramatiq.
    """
    event_type = event.get("type") if isinstance(event, dict) else None
    try:
        changed = asyncio.run(_process_stripe_event(event))
    except Exception as e:
        logger.exception("[stripe][task] failed to process event %s: %s", event_type, e)
        sentry_capture(e)
        raise
    sentry_breadcrumb(
        category="stripe",
        message="event.processed",
        data={"type": event_type, "changed": changed},
    )


@dramatiq.actor(max_retries=3)
def apply_pending_downgrades(now_iso: Optional[str] = None):
    """Apply scheduled downgrades whose billing period has ended.

    Intended to be enqueued periodically (cron or scheduler).
    """
    now = parse_iso_datetime(now_iso) if now_iso else None
    try:
        applied = asyncio.run(_apply_pending_downgrades(now))
    except Exception as e:
        logger.exception("[billing][task] applying pending downgrades failed: %s", e)
        sentry_capture(e)
        raise
    logger.info("[billing][task] pending downgrades applied: %s", applied)
    return applied


__all__ = ["broker", "process_stripe_event", "apply_pending_downgrades"]
