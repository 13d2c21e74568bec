"""Tier catalog: prices, usage limits and feature flags per subscription tier.

The catalog is a pure, immutable lookup table.  It is built once per
process from the configured payment-processor price identifiers (see
:func:`get_tier_catalog`) and validated on construction:

- every tier has a limits entry and a price entry,
- exactly one price identifier exists for each paid (tier, interval) and
  no identifier is reused, so identifier -> (tier, interval) is recoverable,
- limits never decrease as the tier increases.

Unknown price identifiers resolve to the free tier and unknown feature
names resolve to disabled.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from receiptflow.core.config import settings
from receiptflow.core.exceptions import ConfigurationError
from receiptflow.models.enums import (
    BillingInterval,
    Feature,
    IntegrationLevel,
    SubscriptionTier,
    SupportLevel,
)

UNLIMITED = -1  # wire sentinel for caps without a ceiling

_CENT = Decimal("0.01")


def is_unlimited(value: int) -> bool:
    return value == UNLIMITED


def cap_allows(cap: int, amount: int) -> bool:
    """True when ``amount`` fits under ``cap``; unlimited always fits."""
    return is_unlimited(cap) or amount <= cap


def cap_at_least(higher: int, lower: int) -> bool:
    """Compare two caps where unlimited is greater than every number."""
    if is_unlimited(higher):
        return True
    if is_unlimited(lower):
        return False
    return higher >= lower


@dataclass(frozen=True)
class FeatureFlags:
    version_control: bool
    integrations: IntegrationLevel
    custom_branding: bool
    max_users: int  # UNLIMITED => no ceiling
    support_level: SupportLevel
    api_access: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "versionControl": self.version_control,
            "integrations": self.integrations.value,
            "customBranding": self.custom_branding,
            "maxUsers": self.max_users,
            "supportLevel": self.support_level.value,
            "apiAccess": self.api_access,
        }


@dataclass(frozen=True)
class TierLimits:
    tier: SubscriptionTier
    monthly_receipt_cap: int  # UNLIMITED => no ceiling
    storage_cap_mb: int  # UNLIMITED => no ceiling
    retention_days: int
    batch_upload_cap: int
    feature_flags: FeatureFlags

    def is_at_least(self, other: "TierLimits") -> bool:
        """True when every cap and flag here is >= the one in ``other``."""
        mine, theirs = self.feature_flags, other.feature_flags
        return (
            cap_at_least(self.monthly_receipt_cap, other.monthly_receipt_cap)
            and cap_at_least(self.storage_cap_mb, other.storage_cap_mb)
            and self.retention_days >= other.retention_days
            and self.batch_upload_cap >= other.batch_upload_cap
            and mine.version_control >= theirs.version_control
            and mine.integrations >= theirs.integrations
            and mine.custom_branding >= theirs.custom_branding
            and cap_at_least(mine.max_users, theirs.max_users)
            and mine.support_level >= theirs.support_level
            and mine.api_access >= theirs.api_access
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "monthlyReceiptCap": self.monthly_receipt_cap,
            "storageCapMB": self.storage_cap_mb,
            "retentionDays": self.retention_days,
            "batchUploadCap": self.batch_upload_cap,
            "featureFlags": self.feature_flags.to_dict(),
        }


@dataclass(frozen=True)
class TierPricing:
    monthly: Decimal
    annual: Decimal


TIER_LIMIT_MATRIX: Mapping[SubscriptionTier, TierLimits] = MappingProxyType({
    SubscriptionTier.FREE: TierLimits(
        tier=SubscriptionTier.FREE,
        monthly_receipt_cap=50,
        storage_cap_mb=1024,
        retention_days=7,
        batch_upload_cap=5,
        feature_flags=FeatureFlags(
            version_control=False,
            integrations=IntegrationLevel.NONE,
            custom_branding=False,
            max_users=1,
            support_level=SupportLevel.BASIC,
            api_access=False,
        ),
    ),
    SubscriptionTier.PRO: TierLimits(
        tier=SubscriptionTier.PRO,
        monthly_receipt_cap=500,
        storage_cap_mb=10 * 1024,
        retention_days=90,
        batch_upload_cap=50,
        feature_flags=FeatureFlags(
            version_control=True,
            integrations=IntegrationLevel.BASIC,
            custom_branding=True,
            max_users=5,
            support_level=SupportLevel.STANDARD,
            api_access=False,
        ),
    ),
    SubscriptionTier.MAX: TierLimits(
        tier=SubscriptionTier.MAX,
        monthly_receipt_cap=UNLIMITED,
        storage_cap_mb=UNLIMITED,
        retention_days=365,
        batch_upload_cap=100,
        feature_flags=FeatureFlags(
            version_control=True,
            integrations=IntegrationLevel.ADVANCED,
            custom_branding=True,
            max_users=UNLIMITED,
            support_level=SupportLevel.PRIORITY,
            api_access=True,
        ),
    ),
})

TIER_PRICING: Mapping[SubscriptionTier, TierPricing] = MappingProxyType({
    SubscriptionTier.FREE: TierPricing(monthly=Decimal("0"), annual=Decimal("0")),
    SubscriptionTier.PRO: TierPricing(monthly=Decimal("10"), annual=Decimal("108")),
    SubscriptionTier.MAX: TierPricing(monthly=Decimal("20"), annual=Decimal("216")),
})


def _feature_enabled(limits: TierLimits, feature: Feature) -> bool:
    flags = limits.feature_flags
    if feature is Feature.VERSION_CONTROL:
        return flags.version_control
    if feature is Feature.INTEGRATIONS:
        return flags.integrations >= IntegrationLevel.BASIC
    if feature is Feature.ADVANCED_INTEGRATIONS:
        return flags.integrations >= IntegrationLevel.ADVANCED
    if feature is Feature.CUSTOM_BRANDING:
        return flags.custom_branding
    if feature is Feature.API_ACCESS:
        return flags.api_access
    if feature is Feature.UNLIMITED_USERS:
        return is_unlimited(flags.max_users)
    if feature is Feature.PRIORITY_SUPPORT:
        return flags.support_level >= SupportLevel.PRIORITY
    return False


class TierCatalog:
    """Immutable lookup of tier prices, price identifiers, limits and flags."""

    def __init__(
        self,
        price_identifiers: Mapping[Tuple[SubscriptionTier, BillingInterval], str],
        limits: Mapping[SubscriptionTier, TierLimits] = TIER_LIMIT_MATRIX,
        pricing: Mapping[SubscriptionTier, TierPricing] = TIER_PRICING,
    ):
        for tier in SubscriptionTier:
            if tier not in limits:
                raise ConfigurationError(f"No limits defined for tier {tier.value}")
            if tier not in pricing:
                raise ConfigurationError(f"No pricing defined for tier {tier.value}")

        forward: Dict[Tuple[SubscriptionTier, BillingInterval], str] = {}
        reverse: Dict[str, Tuple[SubscriptionTier, BillingInterval]] = {}
        for (tier, interval), price_id in price_identifiers.items():
            if tier is SubscriptionTier.FREE:
                raise ConfigurationError("The free tier has no price identifier")
            if not price_id:
                raise ConfigurationError(f"Empty price identifier for {tier.value}/{interval.value}")
            if price_id in reverse:
                raise ConfigurationError(
                    f"Price identifier {price_id!r} is used by more than one tier/interval",
                    {"price_id": price_id},
                )
            forward[(tier, interval)] = price_id
            reverse[price_id] = (tier, interval)
        for tier in SubscriptionTier:
            if tier is SubscriptionTier.FREE:
                continue
            for interval in BillingInterval:
                if (tier, interval) not in forward:
                    raise ConfigurationError(f"Missing price identifier for {tier.value}/{interval.value}")

        ordered = sorted(SubscriptionTier)
        for lower, higher in zip(ordered, ordered[1:]):
            if not limits[higher].is_at_least(limits[lower]):
                raise ConfigurationError(
                    f"Limits for {higher.value} must not be lower than {lower.value}",
                    {"lower": lower.value, "higher": higher.value},
                )

        self._forward = MappingProxyType(forward)
        self._reverse = MappingProxyType(reverse)
        self._limits = MappingProxyType(dict(limits))
        self._pricing = MappingProxyType(dict(pricing))

    # --- Price identifiers ---------------------------------------------
    def price_identifier_for(self, tier: SubscriptionTier, interval: BillingInterval) -> Optional[str]:
        if tier is SubscriptionTier.FREE:
            return None
        return self._forward[(tier, interval)]

    def tier_for_price_identifier(self, price_id: Optional[str]) -> SubscriptionTier:
        # Unknown identifiers never grant a paid tier
        entry = self._reverse.get(price_id or "")
        return entry[0] if entry else SubscriptionTier.FREE

    def interval_for_price_identifier(self, price_id: Optional[str]) -> Optional[BillingInterval]:
        entry = self._reverse.get(price_id or "")
        return entry[1] if entry else None

    # --- Limits & flags ------------------------------------------------
    def limits_for(self, tier: SubscriptionTier) -> TierLimits:
        return self._limits[tier]

    def is_feature_enabled(self, tier: SubscriptionTier, feature_name: str | Feature) -> bool:
        feature = feature_name if isinstance(feature_name, Feature) else Feature.parse(feature_name)
        if feature is None:
            return False
        return _feature_enabled(self.limits_for(tier), feature)

    # --- Pricing -------------------------------------------------------
    def price_for(self, tier: SubscriptionTier, interval: BillingInterval) -> Decimal:
        """List price of one billing period."""
        pricing = self._pricing[tier]
        return pricing.monthly if interval is BillingInterval.MONTHLY else pricing.annual

    def monthly_price(self, tier: SubscriptionTier, interval: BillingInterval) -> Decimal:
        """Per-month cost of ``tier`` when billed at ``interval``."""
        if interval is BillingInterval.MONTHLY:
            return self._pricing[tier].monthly
        return (self._pricing[tier].annual / 12).quantize(_CENT, rounding=ROUND_HALF_UP)

    def annual_savings_amount(self, tier: SubscriptionTier) -> Decimal:
        pricing = self._pricing[tier]
        return pricing.monthly * 12 - pricing.annual

    def annual_savings_percent(self, tier: SubscriptionTier) -> Decimal:
        yearly_at_monthly = self._pricing[tier].monthly * 12
        if yearly_at_monthly == 0:
            return Decimal("0")
        percent = self.annual_savings_amount(tier) / yearly_at_monthly * 100
        return percent.quantize(_CENT, rounding=ROUND_HALF_UP)

    def as_dict(self) -> Dict[str, Any]:
        """Serialisable view of the catalog for the public pricing endpoint."""
        tiers = []
        for tier in sorted(SubscriptionTier):
            tiers.append({
                **self.limits_for(tier).to_dict(),
                "prices": {
                    interval.value: {
                        "amount": str(self.price_for(tier, interval)),
                        "priceId": self.price_identifier_for(tier, interval),
                    }
                    for interval in BillingInterval
                },
                "annualSavingsPercent": str(self.annual_savings_percent(tier)),
            })
        return {"currency": "USD", "tiers": tiers}


@lru_cache(maxsize=1)
def get_tier_catalog() -> TierCatalog:
    """Return the process-wide catalog built from configured price identifiers."""
    return TierCatalog(
        price_identifiers={
            (SubscriptionTier.PRO, BillingInterval.MONTHLY): settings.STRIPE_PRICE_PRO_MONTHLY,
            (SubscriptionTier.PRO, BillingInterval.ANNUAL): settings.STRIPE_PRICE_PRO_ANNUAL,
            (SubscriptionTier.MAX, BillingInterval.MONTHLY): settings.STRIPE_PRICE_MAX_MONTHLY,
            (SubscriptionTier.MAX, BillingInterval.ANNUAL): settings.STRIPE_PRICE_MAX_ANNUAL,
        }
    )


__all__ = [
    "UNLIMITED",
    "is_unlimited",
    "cap_allows",
    "cap_at_least",
    "FeatureFlags",
    "TierLimits",
    "TierPricing",
    "TIER_LIMIT_MATRIX",
    "TIER_PRICING",
    "TierCatalog",
    "get_tier_catalog",
]
