"""Stripe webhook endpoint.

Verifies the ``Stripe-Signature`` header against each configured secret
(rotation), de-duplicates deliveries with a Redis SET NX marker, and
hands the event to Dramatiq.  If enqueueing fails the event is applied
inline so a delivery is never acknowledged without being processed.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.api.dependencies import get_subscription_service
from receiptflow.core.config import get_webhook_secret_list
from receiptflow.core.database import get_db
from receiptflow.core.observability import sentry_breadcrumb, sentry_set_tags
from receiptflow.core.tasks import process_stripe_event
from receiptflow.services.cache import mark_webhook_delivery, release_webhook_delivery
from receiptflow.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """Handle Stripe webhook events.

    Responds 200 for accepted (or duplicate) events, 400 for signature
    errors and 500 when no secret is configured.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    endpoint_secrets = get_webhook_secret_list()

    if not endpoint_secrets:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    last_sig_error: Exception | None = None
    verified = False
    for secret in endpoint_secrets:
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
            verified = True
            break
        except (stripe.SignatureVerificationError, ValueError) as e:
            last_sig_error = e
            continue
    if not verified:
        logger.warning("Invalid Stripe signature after trying %d secrets: %s", len(endpoint_secrets), last_sig_error)
        raise HTTPException(status_code=400, detail="Invalid signature")

    # The signature covers the raw payload, so it is the event as Stripe sent it
    event: Dict[str, Any] = json.loads(payload)
    event_id = event.get("id")
    event_type: str = event.get("type", "")

    first_delivery = None
    if event_id:
        first_delivery = await mark_webhook_delivery(event_id)
        if first_delivery is False:
            logger.info("[stripe] duplicate webhook event ignored id=%s", event_id)
            return JSONResponse(status_code=200, content={"received": True, "duplicate": True, "id": event_id})

    sentry_set_tags({"stripe.event_type": event_type})
    data_object = (event.get("data") or {}).get("object") or {}
    if isinstance(data_object, dict) and data_object.get("id"):
        sentry_breadcrumb(
            category="stripe",
            message=f"webhook:{event_type}",
            data={"object": data_object.get("object"), "id": data_object.get("id")},
        )

    try:
        process_stripe_event.send(event)
        logger.debug("[stripe] queued event for async processing type=%s id=%s", event_type, event_id)
        return JSONResponse(status_code=200, content={"received": True, "queued": True, "type": event_type})
    except Exception as e:
        logger.warning("[stripe] failed to enqueue event, applying inline: %s", e)

    try:
        changed = await subscriptions.apply_processor_event(db, event)
    except Exception:
        # Stripe retries non-2xx responses; the retry must not look like a duplicate
        if first_delivery:
            await release_webhook_delivery(event_id)
        raise
    return JSONResponse(status_code=200, content={"received": True, "queued": False, "changed": changed, "type": event_type})
