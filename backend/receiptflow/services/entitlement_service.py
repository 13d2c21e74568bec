"""Entitlement evaluation against tier limits.

This module answers "may this account do X right now?" from a
:class:`SubscriptionSnapshot` and the tier catalog.  Every check is
advisory and side-effect free: usage counters may be stale and the
authoritative check-and-increment happens in the store (see
``SubscriptionService.record_receipt_usage``).

Checks use the snapshot's effective tier, so a past-due or canceled
subscription is evaluated against the free tier.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from receiptflow.core.exceptions import EntitlementDeniedError, ValidationError
from receiptflow.core.observability import sentry_breadcrumb
from receiptflow.models.enums import DenialDimension, Feature, SubscriptionTier
from receiptflow.models.schemas import (
    DenialReason,
    EntitlementDecision,
    SubscriptionSnapshot,
    UsageSnapshot,
)
from receiptflow.services.tier_catalog import (
    TierCatalog,
    TierLimits,
    cap_allows,
    get_tier_catalog,
    is_unlimited,
)

logger = logging.getLogger(__name__)

# Lowest tier that unlocks each gated feature
FEATURE_MINIMUM_TIER = {
    Feature.VERSION_CONTROL: SubscriptionTier.PRO,
    Feature.CUSTOM_BRANDING: SubscriptionTier.PRO,
    Feature.INTEGRATIONS: SubscriptionTier.PRO,
    Feature.API_ACCESS: SubscriptionTier.MAX,
    Feature.UNLIMITED_USERS: SubscriptionTier.MAX,
    Feature.ADVANCED_INTEGRATIONS: SubscriptionTier.MAX,
    Feature.PRIORITY_SUPPORT: SubscriptionTier.MAX,
}


def _remaining(limits: TierLimits, used: int) -> Optional[int]:
    if is_unlimited(limits.monthly_receipt_cap):
        return None
    return max(limits.monthly_receipt_cap - used, 0)


def _single_upload_ok(limits: TierLimits, used: int) -> bool:
    return is_unlimited(limits.monthly_receipt_cap) or used < limits.monthly_receipt_cap


def _batch_cap_ok(limits: TierLimits, requested: int) -> bool:
    return requested <= limits.batch_upload_cap


def _allowance_ok(limits: TierLimits, used: int, requested: int) -> bool:
    remaining = _remaining(limits, used)
    return remaining is None or remaining >= requested


def _team_ok(limits: TierLimits, members: int) -> bool:
    max_users = limits.feature_flags.max_users
    return is_unlimited(max_users) or members < max_users


class EntitlementService:
    """Evaluates subscription snapshots against the tier catalog."""

    def __init__(self, catalog: TierCatalog | None = None):
        self.catalog = catalog or get_tier_catalog()

    def _limits(self, sub: SubscriptionSnapshot) -> TierLimits:
        return self.catalog.limits_for(sub.effective_tier)

    def _required_tier(
        self, current: SubscriptionTier, allows: Callable[[TierLimits], bool]
    ) -> Optional[SubscriptionTier]:
        """Lowest tier above ``current`` whose limits satisfy ``allows``."""
        for tier in sorted(SubscriptionTier):
            if tier > current and allows(self.catalog.limits_for(tier)):
                return tier
        return None

    def _deny(self, denial: DenialReason, account_id: str) -> EntitlementDecision:
        logger.info(
            "Entitlement denied account=%s dimension=%s tier=%s required=%s usage=%s limit=%s requested=%s",
            account_id,
            denial.dimension.value,
            denial.current_tier.value,
            denial.required_tier.value if denial.required_tier else None,
            denial.current_usage,
            denial.limit,
            denial.requested,
        )
        sentry_breadcrumb(
            category="entitlement",
            message=f"denied:{denial.dimension.value}",
            data=denial.model_dump(mode="json"),
        )
        return EntitlementDecision.deny(denial)

    # --- Receipts ------------------------------------------------------
    def remaining_receipts(self, sub: SubscriptionSnapshot) -> Optional[int]:
        """Receipts left this period, or None when the tier is unlimited."""
        return _remaining(self._limits(sub), sub.usage.receipts_used_this_period)

    def can_upload_single(self, sub: SubscriptionSnapshot) -> bool:
        return _single_upload_ok(self._limits(sub), sub.usage.receipts_used_this_period)

    def check_upload_single(self, sub: SubscriptionSnapshot) -> EntitlementDecision:
        limits = self._limits(sub)
        used = sub.usage.receipts_used_this_period
        if _single_upload_ok(limits, used):
            return EntitlementDecision.allow()
        tier = sub.effective_tier
        return self._deny(
            DenialReason(
                dimension=DenialDimension.RECEIPTS,
                current_tier=tier,
                required_tier=self._required_tier(tier, lambda lim: _single_upload_ok(lim, used)),
                current_usage=used,
                limit=limits.monthly_receipt_cap,
                requested=1,
            ),
            sub.account_id,
        )

    def check_receipt_allowance(self, sub: SubscriptionSnapshot, count: int) -> EntitlementDecision:
        """Monthly allowance only, without the per-batch cap."""
        if count < 0:
            raise ValidationError("count must not be negative", field="count")
        limits = self._limits(sub)
        used = sub.usage.receipts_used_this_period
        if _allowance_ok(limits, used, count):
            return EntitlementDecision.allow()
        tier = sub.effective_tier
        return self._deny(
            DenialReason(
                dimension=DenialDimension.RECEIPTS,
                current_tier=tier,
                required_tier=self._required_tier(tier, lambda lim: _allowance_ok(lim, used, count)),
                current_usage=used,
                limit=limits.monthly_receipt_cap,
                requested=count,
            ),
            sub.account_id,
        )

    def can_batch_upload(self, sub: SubscriptionSnapshot, requested_count: int) -> bool:
        return self.check_batch_upload(sub, requested_count, log=False).allowed

    def check_batch_upload(
        self, sub: SubscriptionSnapshot, requested_count: int, log: bool = True
    ) -> EntitlementDecision:
        """Batch cap first, then the remaining monthly allowance.

        A count of zero is always permitted; a negative count is invalid.
        """
        if requested_count < 0:
            raise ValidationError("requested_count must not be negative", field="requested_count")
        if requested_count == 0:
            return EntitlementDecision.allow()

        limits = self._limits(sub)
        used = sub.usage.receipts_used_this_period
        tier = sub.effective_tier

        def fits(lim: TierLimits) -> bool:
            return _batch_cap_ok(lim, requested_count) and _allowance_ok(lim, used, requested_count)

        if not _batch_cap_ok(limits, requested_count):
            denial = DenialReason(
                dimension=DenialDimension.BATCH,
                current_tier=tier,
                required_tier=self._required_tier(tier, fits),
                current_usage=used,
                limit=limits.batch_upload_cap,
                requested=requested_count,
            )
        elif not _allowance_ok(limits, used, requested_count):
            denial = DenialReason(
                dimension=DenialDimension.RECEIPTS,
                current_tier=tier,
                required_tier=self._required_tier(tier, fits),
                current_usage=used,
                limit=limits.monthly_receipt_cap,
                requested=requested_count,
            )
        else:
            return EntitlementDecision.allow()
        if not log:
            return EntitlementDecision.deny(denial)
        return self._deny(denial, sub.account_id)

    # --- Storage -------------------------------------------------------
    def check_storage(self, sub: SubscriptionSnapshot, additional_mb: int) -> EntitlementDecision:
        if additional_mb < 0:
            raise ValidationError("additional_mb must not be negative", field="additional_mb")
        limits = self._limits(sub)
        used = sub.usage.storage_used_mb
        if cap_allows(limits.storage_cap_mb, used + additional_mb):
            return EntitlementDecision.allow()
        tier = sub.effective_tier
        return self._deny(
            DenialReason(
                dimension=DenialDimension.STORAGE,
                current_tier=tier,
                required_tier=self._required_tier(tier, lambda lim: cap_allows(lim.storage_cap_mb, used + additional_mb)),
                current_usage=used,
                limit=limits.storage_cap_mb,
                requested=additional_mb,
            ),
            sub.account_id,
        )

    # --- Team ----------------------------------------------------------
    def can_add_team_member(self, sub: SubscriptionSnapshot, usage: UsageSnapshot | None = None) -> bool:
        members = (usage or sub.usage).team_members_count
        return _team_ok(self._limits(sub), members)

    def check_add_team_member(
        self, sub: SubscriptionSnapshot, usage: UsageSnapshot | None = None
    ) -> EntitlementDecision:
        members = (usage or sub.usage).team_members_count
        limits = self._limits(sub)
        if _team_ok(limits, members):
            return EntitlementDecision.allow()
        tier = sub.effective_tier
        return self._deny(
            DenialReason(
                dimension=DenialDimension.TEAM,
                current_tier=tier,
                required_tier=self._required_tier(tier, lambda lim: _team_ok(lim, members)),
                current_usage=members,
                limit=limits.feature_flags.max_users,
                requested=1,
            ),
            sub.account_id,
        )

    # --- Features ------------------------------------------------------
    def is_feature_available(self, sub: SubscriptionSnapshot, feature_name: str) -> bool:
        return self.catalog.is_feature_enabled(sub.effective_tier, feature_name)

    def check_feature(self, sub: SubscriptionSnapshot, feature_name: str) -> EntitlementDecision:
        tier = sub.effective_tier
        if self.catalog.is_feature_enabled(tier, feature_name):
            return EntitlementDecision.allow()
        if Feature.parse(feature_name) is not None:
            required = self._required_tier(
                tier, lambda lim: self.catalog.is_feature_enabled(lim.tier, feature_name)
            )
        else:
            # Unknown features are disabled everywhere but still advertise a tier
            required = self.minimum_tier_for_feature(feature_name)
        return self._deny(
            DenialReason(
                dimension=DenialDimension.FEATURE,
                current_tier=tier,
                required_tier=required,
                feature=feature_name,
            ),
            sub.account_id,
        )

    @staticmethod
    def minimum_tier_for_feature(feature_name: str) -> SubscriptionTier:
        """Lowest tier advertised for ``feature_name``; pro for anything unknown."""
        feature = Feature.parse(feature_name)
        return FEATURE_MINIMUM_TIER.get(feature, SubscriptionTier.PRO)

    # --- Enforcement ---------------------------------------------------
    @staticmethod
    def require(decision: EntitlementDecision) -> None:
        """Raise :class:`EntitlementDeniedError` when ``decision`` is a denial."""
        if not decision.allowed and decision.denial is not None:
            raise EntitlementDeniedError(decision.denial)


__all__ = ["EntitlementService", "FEATURE_MINIMUM_TIER"]
