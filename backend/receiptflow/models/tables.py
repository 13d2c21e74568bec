"""SQLAlchemy ORM models for the entitlement and claims store.

These models define the relational schema behind the engine: accounts
with their subscription state and usage counters, teams and their
members, reimbursement claims and the claim audit trail.  Enumerated
fields are stored as strings using SQLAlchemy's Enum type (by value, so
the stored strings match the wire representation).

Timestamps are stored timezone-aware in UTC.  SQLite returns them naive;
the pydantic schemas re-attach UTC on the way out.

If you extend or modify these models remember to call the ``init_db``
helper during development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from receiptflow.core.database import Base
from .enums import (
    BillingInterval,
    ClaimPriority,
    ClaimStatus,
    SubscriptionStatus,
    SubscriptionTier,
    TeamRole,
)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _uuid() -> str:
    return uuid.uuid4().hex


def _enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32)


class Account(Base):
    """Subscription state and period usage counters for one user account.

    ``id`` is the identity provider's subject claim.
    """

    __tablename__ = "accounts"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    # Stripe customer reference for billing webhooks (e.g., "cus_...")
    stripe_customer_id = Column(String, unique=True, nullable=True)
    stripe_subscription_id = Column(String, unique=True, nullable=True)
    tier = Column(_enum(SubscriptionTier), nullable=False, default=SubscriptionTier.FREE)
    status = Column(_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)
    billing_interval = Column(_enum(BillingInterval), nullable=False, default=BillingInterval.MONTHLY)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    pending_tier = Column(_enum(SubscriptionTier), nullable=True)
    receipts_used_this_period = Column(Integer, nullable=False, default=0)
    storage_used_mb = Column(Integer, nullable=False, default=0)
    usage_period_start = Column(DateTime(timezone=True), nullable=True)
    last_stripe_event_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    owned_teams = relationship("Team", back_populates="owner")


class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    owner_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    owner = relationship("Account", back_populates="owned_teams")
    members = relationship("TeamMember", back_populates="team", cascade="all, delete-orphan")


class TeamMember(Base):
    """Membership of a user in a team with a role."""

    __tablename__ = "team_members"

    team_id = Column(String, ForeignKey("teams.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    role = Column(_enum(TeamRole), nullable=False, default=TeamRole.MEMBER)
    joined_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    team = relationship("Team", back_populates="members")


class Claim(Base):
    """Reimbursement claim.  ``version`` increments on every committed change."""

    __tablename__ = "claims"
    __table_args__ = (
        # Keyset pagination order: created_at desc, id desc
        Index("ix_claims_team_created", "team_id", "created_at", "id"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    team_id = Column(String, ForeignKey("teams.id"), nullable=False)
    creator_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    category = Column(String, nullable=True)
    priority = Column(_enum(ClaimPriority), nullable=False, default=ClaimPriority.MEDIUM)
    status = Column(_enum(ClaimStatus), nullable=False, default=ClaimStatus.DRAFT, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    approver_id = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    audit_entries = relationship("ClaimAuditTrail", back_populates="claim", cascade="all, delete-orphan")


class ClaimAuditTrail(Base):
    """One row per applied transition or edit."""

    __tablename__ = "claim_audit_trail"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(String, ForeignKey("claims.id"), nullable=False, index=True)
    actor_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    from_status = Column(_enum(ClaimStatus), nullable=True)
    to_status = Column(_enum(ClaimStatus), nullable=True)
    reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    claim = relationship("Claim", back_populates="audit_entries")
