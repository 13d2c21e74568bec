"""Account subscription state, usage counters and payment-processor events.

The account row in the store is the enforcement boundary for usage:
``record_receipt_usage`` performs a conditional increment so two racing
uploads can never push an account past its monthly allowance, however
stale the advisory snapshot a client evaluated was.

Processor events (Stripe) are applied idempotently; webhook delivery may
be retried and events may arrive more than once.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.core.config import settings
from receiptflow.core.exceptions import (
    ConfigurationError,
    EntitlementDeniedError,
    NotFoundError,
    RemoteUnavailableError,
    ValidationError,
)
from receiptflow.core.observability import sentry_breadcrumb
from receiptflow.models.enums import BillingInterval, DenialDimension, SubscriptionStatus, SubscriptionTier
from receiptflow.models.schemas import CheckoutSession, DenialReason, SubscriptionSnapshot, UsageSnapshot
from receiptflow.models.tables import Account, Team, TeamMember
from receiptflow.services.entitlement_service import EntitlementService
from receiptflow.services.tier_catalog import TierCatalog, get_tier_catalog, is_unlimited
from receiptflow.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)

_LAPSED_STATUSES = {"canceled", "unpaid", "incomplete_expired"}
_STATUS_VALUES = {s.value for s in SubscriptionStatus}


def _subscription_price_id(data_object: Dict[str, Any]) -> Optional[str]:
    items = (data_object.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def _from_timestamp(value: Any) -> Optional[dt.datetime]:
    if value in (None, ""):
        return None
    try:
        return dt.datetime.fromtimestamp(int(value), tz=dt.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _invoice_period_start(data_object: Dict[str, Any]) -> Optional[dt.datetime]:
    """Start of the period an invoice bills for; falls back to its creation time."""
    lines = (data_object.get("lines") or {}).get("data") or []
    if lines:
        start = _from_timestamp((lines[0].get("period") or {}).get("start"))
        if start is not None:
            return start
    return _from_timestamp(data_object.get("created"))


def _same_month(a: Optional[dt.datetime], b: dt.datetime) -> bool:
    if a is None:
        return False
    a = ensure_utc(a)
    return (a.year, a.month) == (b.year, b.month)


class SubscriptionService:
    """Reads and mutates account subscription state in the store."""

    def __init__(self, catalog: TierCatalog | None = None):
        self.catalog = catalog or get_tier_catalog()
        self.entitlements = EntitlementService(self.catalog)

    # --- Accounts ------------------------------------------------------
    async def _get_account(self, db: AsyncSession, account_id: str) -> Optional[Account]:
        result = await db.execute(
            select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def ensure_account(self, db: AsyncSession, account_id: str, email: Optional[str] = None) -> Account:
        """Return the account, creating a free active one on first sign-up."""
        try:
            account = await self._get_account(db, account_id)
            if account is not None:
                return account
            now = utcnow()
            account = Account(
                id=account_id,
                email=email,
                tier=SubscriptionTier.FREE,
                status=SubscriptionStatus.ACTIVE,
                billing_interval=BillingInterval.MONTHLY,
                receipts_used_this_period=0,
                storage_used_mb=0,
                usage_period_start=now,
                created_at=now,
                updated_at=now,
            )
            db.add(account)
            await db.commit()
            logger.info("Account created id=%s tier=free", account_id)
            return account
        except (SQLAlchemyError, OSError) as e:
            await db.rollback()
            raise RemoteUnavailableError(details={"operation": "ensure_account"}) from e

    async def _team_member_count(self, db: AsyncSession, account_id: str) -> int:
        result = await db.execute(
            select(func.count(func.distinct(TeamMember.user_id)))
            .select_from(TeamMember)
            .join(Team, Team.id == TeamMember.team_id)
            .where(Team.owner_id == account_id)
        )
        return int(result.scalar() or 0)

    async def _snapshot(self, db: AsyncSession, account: Account) -> SubscriptionSnapshot:
        members = await self._team_member_count(db, account.id)
        return SubscriptionSnapshot(
            account_id=account.id,
            tier=account.tier,
            status=account.status,
            current_interval=account.billing_interval,
            current_period_end=account.current_period_end,
            pending_tier=account.pending_tier,
            usage=UsageSnapshot(
                receipts_used_this_period=account.receipts_used_this_period or 0,
                storage_used_mb=account.storage_used_mb or 0,
                team_members_count=members,
                as_of=utcnow(),
            ),
        )

    async def get_subscription(self, db: AsyncSession, account_id: str) -> SubscriptionSnapshot:
        account = await self.ensure_account(db, account_id)
        try:
            return await self._snapshot(db, account)
        except (SQLAlchemyError, OSError) as e:
            await db.rollback()
            raise RemoteUnavailableError(details={"operation": "get_subscription"}) from e

    async def get_subscription_for_team(self, db: AsyncSession, team_id: str) -> SubscriptionSnapshot:
        """Snapshot of the account that owns ``team_id``; team limits follow the owner."""
        result = await db.execute(select(Team.owner_id).where(Team.id == team_id))
        owner_id = result.scalar_one_or_none()
        if owner_id is None:
            raise NotFoundError("Team not found", {"team_id": team_id})
        return await self.get_subscription(db, owner_id)

    # --- Usage ---------------------------------------------------------
    async def _roll_usage_period(self, db: AsyncSession, account: Account, now: dt.datetime) -> None:
        """Reset counters at the calendar month boundary for accounts without a processor subscription.

        Paid accounts are reset by ``invoice.paid`` instead.
        """
        if account.stripe_subscription_id or _same_month(account.usage_period_start, now):
            return
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        await db.execute(
            update(Account)
            .where(
                Account.id == account.id,
                or_(Account.usage_period_start.is_(None), Account.usage_period_start < month_start),
            )
            .values(receipts_used_this_period=0, usage_period_start=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def record_receipt_usage(
        self, db: AsyncSession, account_id: str, count: int = 1, now: Optional[dt.datetime] = None
    ) -> SubscriptionSnapshot:
        """Atomically add ``count`` receipts to the period usage.

        The increment only happens when the result stays within the
        effective tier's monthly cap; otherwise EntitlementDeniedError is
        raised and nothing changes.
        """
        if count < 0:
            raise ValidationError("count must not be negative", field="count")
        now = ensure_utc(now) if now else utcnow()
        account = await self.ensure_account(db, account_id)
        try:
            await self._roll_usage_period(db, account, now)
            snapshot = await self._snapshot(db, await self._get_account(db, account_id))
            if count == 0:
                await db.commit()
                return snapshot
            cap = self.catalog.limits_for(snapshot.effective_tier).monthly_receipt_cap
            stmt = update(Account).where(
                Account.id == account_id,
                Account.tier == snapshot.tier,
                Account.status == snapshot.status,
            )
            if not is_unlimited(cap):
                stmt = stmt.where(Account.receipts_used_this_period + count <= cap)
            result = await db.execute(
                stmt.values(
                    receipts_used_this_period=Account.receipts_used_this_period + count,
                    updated_at=now,
                ).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.commit()
                fresh = await self._snapshot(db, await self._get_account(db, account_id))
                decision = self.entitlements.check_receipt_allowance(fresh, count)
                denial = decision.denial or DenialReason(
                    dimension=DenialDimension.RECEIPTS,
                    current_tier=fresh.effective_tier,
                    current_usage=fresh.usage.receipts_used_this_period,
                    limit=cap,
                    requested=count,
                )
                raise EntitlementDeniedError(denial)
            await db.commit()
            return await self._snapshot(db, await self._get_account(db, account_id))
        except (SQLAlchemyError, OSError) as e:
            await db.rollback()
            raise RemoteUnavailableError(details={"operation": "record_receipt_usage"}) from e

    # --- Checkout & plan changes ----------------------------------------
    async def create_checkout_session(
        self,
        db: AsyncSession,
        account_id: str,
        tier: SubscriptionTier,
        interval: BillingInterval,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a Stripe Checkout session for ``tier`` billed at ``interval``."""
        if tier is SubscriptionTier.FREE:
            raise ValidationError("The free tier does not require checkout", field="tier")
        if not settings.STRIPE_API_KEY:
            raise ConfigurationError("Missing STRIPE_API_KEY")
        price_id = self.catalog.price_identifier_for(tier, interval)
        account = await self.ensure_account(db, account_id)

        stripe.api_key = settings.STRIPE_API_KEY
        success_url = f"{settings.FRONTEND_BASE_URL}/dashboard?checkout=success"
        cancel_url = f"{settings.FRONTEND_BASE_URL}/pricing?checkout=cancelled"
        request_opts = {"idempotency_key": idempotency_key} if idempotency_key else {}
        automatic_tax = {"enabled": True} if settings.STRIPE_AUTOMATIC_TAX_ENABLED else None
        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=account.id,
                allow_promotion_codes=True,
                billing_address_collection="auto",
                **({"customer": account.stripe_customer_id} if account.stripe_customer_id else {}),
                **({"customer_email": account.email} if not account.stripe_customer_id and account.email else {}),
                **({"automatic_tax": automatic_tax} if automatic_tax else {}),
                **request_opts,
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create checkout session: %s", e)
            raise RemoteUnavailableError("Unable to create checkout session, please retry") from e

        sentry_breadcrumb(
            category="stripe",
            message="checkout.session.created",
            data={"price_id": price_id, "session_id": session.get("id")},
        )
        return CheckoutSession(
            session_id=session["id"],
            url=session.get("url"),
            price_id=price_id,
            tier=tier,
            interval=interval,
        )

    async def request_downgrade(
        self, db: AsyncSession, account_id: str, target_tier: SubscriptionTier, now: Optional[dt.datetime] = None
    ) -> SubscriptionSnapshot:
        """Schedule a downgrade to ``target_tier`` at the end of the paid period.

        When no paid period end is known the downgrade applies immediately.
        """
        now = ensure_utc(now) if now else utcnow()
        account = await self.ensure_account(db, account_id)
        if not target_tier < account.tier:
            raise ValidationError(
                f"Cannot downgrade from {account.tier.value} to {target_tier.value}",
                field="target_tier",
            )
        try:
            period_end = ensure_utc(account.current_period_end)
            if period_end is None or period_end <= now:
                account.tier = target_tier
                account.pending_tier = None
                logger.info("Downgrade applied immediately account=%s tier=%s", account_id, target_tier.value)
            else:
                account.pending_tier = target_tier
                logger.info(
                    "Downgrade scheduled account=%s tier=%s effective=%s",
                    account_id,
                    target_tier.value,
                    period_end.isoformat(),
                )
            account.updated_at = now
            await db.commit()
            return await self._snapshot(db, account)
        except (SQLAlchemyError, OSError) as e:
            await db.rollback()
            raise RemoteUnavailableError(details={"operation": "request_downgrade"}) from e

    async def apply_pending_downgrades(self, db: AsyncSession, now: Optional[dt.datetime] = None) -> int:
        """Apply every pending tier whose period has ended.  Returns how many were applied."""
        now = ensure_utc(now) if now else utcnow()
        result = await db.execute(
            select(Account).where(
                Account.pending_tier.is_not(None),
                Account.current_period_end.is_not(None),
                Account.current_period_end <= now,
            )
        )
        applied = 0
        for account in result.scalars().all():
            logger.info(
                "[billing] applying pending downgrade account=%s %s -> %s",
                account.id,
                account.tier.value,
                account.pending_tier.value,
            )
            account.tier = account.pending_tier
            account.pending_tier = None
            account.updated_at = now
            applied += 1
        if applied:
            await db.commit()
        return applied

    # --- Processor events ----------------------------------------------
    async def _account_for_customer(self, db: AsyncSession, customer: Optional[str]) -> Optional[Account]:
        if not customer:
            return None
        result = await db.execute(
            select(Account)
            .where(Account.stripe_customer_id == customer)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def apply_processor_event(self, db: AsyncSession, event: Dict[str, Any]) -> bool:
        """Apply a Stripe event to the matching account.  Returns True if anything changed.

        Re-applying the same event leaves the account unchanged.
        """
        event_type = event.get("type", "")
        event_id = event.get("id")
        data_object = (event.get("data") or {}).get("object") or {}
        changed = False

        if event_type == "checkout.session.completed":
            customer = data_object.get("customer")
            client_ref = data_object.get("client_reference_id")
            account = await self._get_account(db, str(client_ref)) if client_ref else None
            if account is None:
                logger.info("[stripe] checkout for unknown account ref=%s", client_ref)
                return False
            if customer and account.stripe_customer_id != customer:
                account.stripe_customer_id = customer
                changed = True
            subscription_id = data_object.get("subscription")
            if subscription_id and account.stripe_subscription_id != subscription_id:
                account.stripe_subscription_id = subscription_id
                changed = True

        elif event_type in (
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ):
            account = await self._account_for_customer(db, data_object.get("customer"))
            if account is None:
                return False
            status = data_object.get("status") or ""
            price_id = _subscription_price_id(data_object)
            period_end = _from_timestamp(data_object.get("current_period_end"))
            if event_type == "customer.subscription.deleted" or status in _LAPSED_STATUSES:
                new_tier = SubscriptionTier.FREE
                new_status = SubscriptionStatus(status) if status in _STATUS_VALUES else SubscriptionStatus.CANCELED
                new_interval = account.billing_interval
                pending = None
            else:
                new_tier = self.catalog.tier_for_price_identifier(price_id)
                new_status = SubscriptionStatus(status) if status in _STATUS_VALUES else account.status
                new_interval = self.catalog.interval_for_price_identifier(price_id) or account.billing_interval
                pending = account.pending_tier if account.pending_tier is not None and account.pending_tier < new_tier else None
            updates = {
                "tier": new_tier,
                "status": new_status,
                "billing_interval": new_interval,
                "pending_tier": pending,
                "stripe_subscription_id": data_object.get("id") or account.stripe_subscription_id,
            }
            if period_end is not None:
                updates["current_period_end"] = period_end
            for name, value in updates.items():
                current = getattr(account, name)
                if name == "current_period_end":
                    current = ensure_utc(current)
                if current != value:
                    setattr(account, name, value)
                    changed = True

        elif event_type in ("invoice.paid", "invoice.payment_succeeded"):
            account = await self._account_for_customer(db, data_object.get("customer"))
            if account is None:
                return False
            # One reset per billing period: redeliveries and invoices for a
            # period that already started are no-ops
            billed_from = _invoice_period_start(data_object)
            period_start = ensure_utc(account.usage_period_start)
            stale = billed_from is not None and period_start is not None and billed_from <= period_start
            if account.last_stripe_event_id == event_id or stale:
                logger.info("[stripe] invoice %s does not open a new period for account=%s", data_object.get("id"), account.id)
            else:
                account.receipts_used_this_period = 0
                account.usage_period_start = billed_from or utcnow()
                account.last_stripe_event_id = event_id
                changed = True
            if account.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.INCOMPLETE):
                account.status = SubscriptionStatus.ACTIVE
                changed = True

        elif event_type == "invoice.payment_failed":
            account = await self._account_for_customer(db, data_object.get("customer"))
            if account is None:
                return False
            if account.status is not SubscriptionStatus.PAST_DUE:
                account.status = SubscriptionStatus.PAST_DUE
                changed = True

        elif event_type == "invoice.payment_action_required":
            account = await self._account_for_customer(db, data_object.get("customer"))
            if account is None:
                return False
            # Customer authentication (SCA) pending; paid limits wait for invoice.paid
            logger.warning("[stripe] invoice requires action id=%s account=%s", data_object.get("id"), account.id)
            sentry_breadcrumb(
                category="stripe",
                message="invoice.payment_action_required",
                level="warning",
                data={"invoice_id": data_object.get("id"), "account_id": account.id},
            )
            if account.status is not SubscriptionStatus.INCOMPLETE:
                account.status = SubscriptionStatus.INCOMPLETE
                changed = True

        else:
            logger.debug("[stripe] ignoring event type %s", event_type)
            return False

        if changed:
            account.updated_at = utcnow()
            await db.commit()
            logger.info("[stripe] applied %s to account=%s tier=%s status=%s", event_type, account.id, account.tier.value, account.status.value)
        return changed


__all__ = ["SubscriptionService"]
