"""Billing routes: Stripe Checkout and scheduled downgrades."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.api.dependencies import get_entitlement_service, get_subscription_service
from receiptflow.api.routes.entitlements import entitlements_view
from receiptflow.core.database import get_db
from receiptflow.core.security import AuthenticatedAccount, get_current_account
from receiptflow.models.schemas import CheckoutRequest, CheckoutSession, DowngradeRequest, EntitlementsRead
from receiptflow.services.entitlement_service import EntitlementService
from receiptflow.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/checkout", response_model=CheckoutSession)
async def create_checkout_session(
    body: CheckoutRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> CheckoutSession:
    """Create a Stripe Checkout Session for the requested tier and interval.

    The tier change itself is applied when Stripe reports the subscription
    through the webhook.
    """
    session = await subscriptions.create_checkout_session(
        db, principal.account_id, body.tier, body.interval, idempotency_key=idempotency_key
    )
    logger.info("Checkout session created account=%s tier=%s interval=%s", principal.account_id, body.tier.value, body.interval.value)
    return session


@router.post("/downgrade", response_model=EntitlementsRead)
async def request_downgrade(
    body: DowngradeRequest,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    evaluator: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementsRead:
    """Schedule a downgrade for the end of the current billing period."""
    sub = await subscriptions.request_downgrade(db, principal.account_id, body.target_tier)
    return entitlements_view(sub, evaluator)
