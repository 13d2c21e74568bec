"""Pydantic schemas for domain records and API request/response bodies.

Pydantic models are used for validating and serialising data that
crosses the boundary of the engine.  Domain records (``Claim``,
``SubscriptionSnapshot``) are immutable; lifecycle operations return new
instances via ``model_copy`` rather than mutating their input.

Pydantic schemas are intentionally separate from the ORM models in
:mod:`receiptflow.models.tables` so the shape exposed through the API can
differ from what is stored.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from receiptflow.services.tier_catalog import TierLimits, get_tier_catalog
from receiptflow.utils.helpers import ensure_utc, sanitize_string
from .enums import (
    BillingInterval,
    ClaimEvent,
    ClaimPriority,
    ClaimStatus,
    DenialDimension,
    SubscriptionStatus,
    SubscriptionTier,
    TeamRole,
)


class _UtcModel(BaseModel):
    """Base that normalises every datetime field to an aware UTC value."""

    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


# ---------------------------------------------------------------------------
# Subscriptions & entitlements


class UsageSnapshot(_UtcModel):
    """Point-in-time usage counters; possibly stale."""

    model_config = ConfigDict(frozen=True)

    receipts_used_this_period: int = Field(default=0, ge=0)
    storage_used_mb: int = Field(default=0, ge=0)
    team_members_count: int = Field(default=0, ge=0)
    as_of: Optional[datetime] = None


class SubscriptionSnapshot(_UtcModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    tier: SubscriptionTier = SubscriptionTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_interval: BillingInterval = BillingInterval.MONTHLY
    usage: UsageSnapshot = Field(default_factory=UsageSnapshot)
    current_period_end: Optional[datetime] = None
    pending_tier: Optional[SubscriptionTier] = None

    @property
    def effective_tier(self) -> SubscriptionTier:
        """Tier whose limits apply; lapsed subscriptions fall back to free."""
        return self.tier if self.status.entitles else SubscriptionTier.FREE

    @property
    def limits(self) -> TierLimits:
        return get_tier_catalog().limits_for(self.effective_tier)


class DenialReason(BaseModel):
    """Why an action was refused and which tier would allow it."""

    model_config = ConfigDict(frozen=True)

    dimension: DenialDimension
    current_tier: SubscriptionTier
    required_tier: Optional[SubscriptionTier] = None
    current_usage: Optional[int] = None
    limit: Optional[int] = None
    requested: Optional[int] = None
    feature: Optional[str] = None


class EntitlementDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    denial: Optional[DenialReason] = None

    @classmethod
    def allow(cls) -> "EntitlementDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, denial: DenialReason) -> "EntitlementDecision":
        return cls(allowed=False, denial=denial)


class EntitlementCheckRequest(BaseModel):
    """Body of ``POST /entitlements/check``."""

    action: str = Field(description="upload, batch_upload, add_team_member or feature")
    count: int = Field(default=1)
    feature: Optional[str] = None


class EntitlementsRead(BaseModel):
    account_id: str
    tier: SubscriptionTier
    effective_tier: SubscriptionTier
    status: SubscriptionStatus
    interval: BillingInterval
    usage: UsageSnapshot
    limits: Dict[str, Any]
    remaining_receipts: Optional[int] = None
    current_period_end: Optional[datetime] = None
    pending_tier: Optional[SubscriptionTier] = None


class CheckoutRequest(BaseModel):
    tier: SubscriptionTier
    interval: BillingInterval = BillingInterval.MONTHLY


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None
    price_id: str
    tier: SubscriptionTier
    interval: BillingInterval


class DowngradeRequest(BaseModel):
    target_tier: SubscriptionTier


class UsageRequest(BaseModel):
    count: int = 1


class TeamCreate(BaseModel):
    name: str

    @field_validator("name", mode="before")
    def sanitize_name(cls, v):
        return sanitize_string(v) if isinstance(v, str) else v


class TeamMemberAdd(BaseModel):
    user_id: str
    role: TeamRole = TeamRole.MEMBER


# ---------------------------------------------------------------------------
# Identity


class Actor(BaseModel):
    """The user performing an operation, within the team context of the request."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    team_id: Optional[str] = None
    role: Optional[TeamRole] = None

    def can_approve_for(self, team_id: str) -> bool:
        return self.team_id == team_id and self.role is not None and self.role.can_approve


# ---------------------------------------------------------------------------
# Claims


class Claim(_UtcModel):
    """A reimbursement claim."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    team_id: str
    creator_id: str
    title: str
    description: Optional[str] = None
    amount: Decimal
    currency: str = "USD"
    category: Optional[str] = None
    priority: ClaimPriority = ClaimPriority.MEDIUM
    status: ClaimStatus = ClaimStatus.DRAFT
    created_at: datetime
    updated_at: datetime
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    approver_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    version: int = 1


class ClaimRead(Claim):
    """Claim as returned to a specific actor, with the actions open to them."""

    allowed_events: List[ClaimEvent] = Field(default_factory=list)


class CreateClaimRequest(BaseModel):
    title: str
    description: Optional[str] = None
    amount: Decimal = Field(default=Decimal("0"))
    currency: str = "USD"
    category: Optional[str] = None
    priority: ClaimPriority = ClaimPriority.MEDIUM

    @field_validator("title", "description", "category", mode="before")
    def sanitize_fields(cls, v):
        return sanitize_string(v) if isinstance(v, str) else v

    @field_validator("currency", mode="before")
    def upper_currency(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class UpdateClaimRequest(BaseModel):
    """Partial edit of a draft claim; ``expected_version`` guards concurrent edits."""

    expected_version: int
    title: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[ClaimPriority] = None

    @field_validator("title", "description", "category", mode="before")
    def sanitize_fields(cls, v):
        return sanitize_string(v) if isinstance(v, str) else v

    @field_validator("currency", mode="before")
    def upper_currency(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"expected_version"})


class TransitionRequest(BaseModel):
    event: ClaimEvent
    expected_version: int
    reason: Optional[str] = None

    @field_validator("reason", mode="before")
    def sanitize_reason(cls, v):
        return sanitize_string(v) if isinstance(v, str) else v


class ClaimFilters(_UtcModel):
    """Conjunctive claim filter; ``None`` means "no constraint"."""

    model_config = ConfigDict(frozen=True)

    status: Optional[ClaimStatus] = None
    team_id: Optional[str] = None
    creator_id: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[ClaimPriority] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        if self.amount_min is not None and self.amount_max is not None and self.amount_min > self.amount_max:
            raise ValueError("amount_min must not exceed amount_max")
        return self

    def merge(self, other: "ClaimFilters") -> "ClaimFilters":
        """Return filters where fields set on ``other`` override this one."""
        return self.model_copy(update=other.model_dump(exclude_none=True))

    def cleared(self) -> "ClaimFilters":
        return ClaimFilters()

    def matches(self, claim: Claim) -> bool:
        if self.status is not None and claim.status != self.status:
            return False
        if self.team_id is not None and claim.team_id != self.team_id:
            return False
        if self.creator_id is not None and claim.creator_id != self.creator_id:
            return False
        if self.category is not None and claim.category != self.category:
            return False
        if self.priority is not None and claim.priority != self.priority:
            return False
        if self.date_from is not None and claim.created_at < self.date_from:
            return False
        if self.date_to is not None and claim.created_at > self.date_to:
            return False
        if self.amount_min is not None and claim.amount < self.amount_min:
            return False
        if self.amount_max is not None and claim.amount > self.amount_max:
            return False
        return True


class ClaimPage(BaseModel):
    items: List[Claim]
    next_cursor: Optional[str] = None
    has_more: bool = False


class ClaimStats(BaseModel):
    available: bool = True
    total: int = 0
    by_status: Dict[ClaimStatus, int] = Field(default_factory=dict)
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    total_amount: Decimal = Decimal("0")
    approved_amount: Decimal = Decimal("0")

    @classmethod
    def unavailable(cls) -> "ClaimStats":
        return cls(available=False)


class ClaimAuditEntry(_UtcModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    claim_id: str
    actor_id: str
    action: str
    from_status: Optional[ClaimStatus] = None
    to_status: Optional[ClaimStatus] = None
    reason: Optional[str] = None
    version: int
    created_at: datetime


__all__ = [
    "UsageSnapshot",
    "SubscriptionSnapshot",
    "DenialReason",
    "EntitlementDecision",
    "EntitlementCheckRequest",
    "EntitlementsRead",
    "CheckoutRequest",
    "CheckoutSession",
    "DowngradeRequest",
    "UsageRequest",
    "TeamCreate",
    "TeamMemberAdd",
    "Actor",
    "Claim",
    "ClaimRead",
    "CreateClaimRequest",
    "UpdateClaimRequest",
    "TransitionRequest",
    "ClaimFilters",
    "ClaimPage",
    "ClaimStats",
    "ClaimAuditEntry",
]
