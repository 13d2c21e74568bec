"""API routes for subscription entitlements and usage."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.api.dependencies import get_entitlement_service, get_subscription_service
from receiptflow.core.database import get_db
from receiptflow.core.exceptions import ValidationError
from receiptflow.core.security import AuthenticatedAccount, get_current_account
from receiptflow.models.schemas import (
    EntitlementCheckRequest,
    EntitlementDecision,
    EntitlementsRead,
    SubscriptionSnapshot,
    UsageRequest,
)
from receiptflow.services.entitlement_service import EntitlementService
from receiptflow.services.subscription_service import SubscriptionService
from receiptflow.services.tier_catalog import get_tier_catalog

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


def entitlements_view(sub: SubscriptionSnapshot, evaluator: EntitlementService) -> EntitlementsRead:
    return EntitlementsRead(
        account_id=sub.account_id,
        tier=sub.tier,
        effective_tier=sub.effective_tier,
        status=sub.status,
        interval=sub.current_interval,
        usage=sub.usage,
        limits=sub.limits.to_dict(),
        remaining_receipts=evaluator.remaining_receipts(sub),
        current_period_end=sub.current_period_end,
        pending_tier=sub.pending_tier,
    )


@router.get("/catalog")
async def get_catalog() -> Dict[str, Any]:
    """Public tier catalog: prices, limits and feature flags."""
    return get_tier_catalog().as_dict()


@router.get("", response_model=EntitlementsRead)
async def get_entitlements(
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    evaluator: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementsRead:
    sub = await subscriptions.get_subscription(db, principal.account_id)
    return entitlements_view(sub, evaluator)


@router.post("/check", response_model=EntitlementDecision)
async def check_entitlement(
    body: EntitlementCheckRequest,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    evaluator: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementDecision:
    """Advisory check; the answer may be stale by the time the action runs."""
    sub = await subscriptions.get_subscription(db, principal.account_id)
    action = body.action.strip().lower()
    if action == "upload":
        return evaluator.check_upload_single(sub)
    if action == "batch_upload":
        return evaluator.check_batch_upload(sub, body.count)
    if action == "add_team_member":
        return evaluator.check_add_team_member(sub)
    if action == "storage":
        return evaluator.check_storage(sub, body.count)
    if action == "feature":
        if not body.feature:
            raise ValidationError("feature is required for a feature check", field="feature")
        return evaluator.check_feature(sub, body.feature)
    raise ValidationError(f"Unknown action '{body.action}'", field="action")


@router.post("/usage", response_model=EntitlementsRead)
async def record_usage(
    body: UsageRequest,
    db: AsyncSession = Depends(get_db),
    principal: AuthenticatedAccount = Depends(get_current_account),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    evaluator: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementsRead:
    """Count ``count`` uploaded receipts against the period allowance (402 when over)."""
    if body.count > 1:
        # Batches are also bounded by the per-batch cap
        evaluator.require(
            evaluator.check_batch_upload(await subscriptions.get_subscription(db, principal.account_id), body.count)
        )
    sub = await subscriptions.record_receipt_usage(db, principal.account_id, body.count)
    return entitlements_view(sub, evaluator)
