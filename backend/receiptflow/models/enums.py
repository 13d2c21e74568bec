"""Enumeration types used throughout the entitlement and claims engine.

Each enumeration is a ``str`` enum whose value is its wire
representation, so the mapping to and from strings is total and
injective.  Ordered enumerations (tiers, integration and support levels)
expose a ``rank`` so limits can be compared across tiers.

When modifying these enums you should update any corresponding database
columns or pydantic validators so that new values are accepted where
appropriate.
"""

from __future__ import annotations

from enum import Enum


class _Ordered(str, Enum):
    """String enum whose declaration order is its total order."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.rank >= other.rank


class SubscriptionTier(_Ordered):
    """Subscription tier for an account, ordered free < pro < max."""

    FREE = "free"
    PRO = "pro"
    MAX = "max"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """Payment processor subscription status."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"

    @property
    def entitles(self) -> bool:
        """Only active and trialing subscriptions grant tier benefits."""
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class IntegrationLevel(_Ordered):
    NONE = "none"
    BASIC = "basic"
    ADVANCED = "advanced"


class SupportLevel(_Ordered):
    BASIC = "basic"
    STANDARD = "standard"
    PRIORITY = "priority"


class Feature(str, Enum):
    """Gated capabilities, by their wire name."""

    VERSION_CONTROL = "versionControl"
    INTEGRATIONS = "integrations"
    ADVANCED_INTEGRATIONS = "advancedIntegrations"
    CUSTOM_BRANDING = "customBranding"
    API_ACCESS = "apiAccess"
    UNLIMITED_USERS = "unlimitedUsers"
    PRIORITY_SUPPORT = "prioritySupport"

    @classmethod
    def parse(cls, name: str | None) -> "Feature | None":
        """Return the feature for ``name`` or None when it is not recognised."""
        try:
            return cls(name)
        except ValueError:
            return None


class DenialDimension(str, Enum):
    """Which limit blocked an action."""

    RECEIPTS = "receipts"
    BATCH = "batch"
    TEAM = "team"
    FEATURE = "feature"
    STORAGE = "storage"


class ClaimStatus(str, Enum):
    """Lifecycle states of a reimbursement claim."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (ClaimStatus.APPROVED, ClaimStatus.REJECTED, ClaimStatus.CANCELED)


class ClaimEvent(str, Enum):
    SUBMIT = "submit"
    BEGIN_REVIEW = "begin_review"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"


class ClaimPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TeamRole(str, Enum):
    """Role of a user within a team."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"

    @property
    def can_approve(self) -> bool:
        return self in (TeamRole.OWNER, TeamRole.ADMIN)
