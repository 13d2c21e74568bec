"""Claim state machine, filtering, pagination and statistics.

Everything in this module is pure: functions take immutable
:class:`~receiptflow.models.schemas.Claim` records and return new ones.
The store-backed :mod:`receiptflow.services.claim_service` applies the
same rules and persists the result.

Transition table::

    draft                    --submit-------> submitted
    submitted                --begin_review-> under_review
    submitted, under_review  --approve------> approved
    submitted, under_review  --reject-------> rejected
    draft, submitted         --cancel-------> canceled

approved, rejected and canceled are terminal.  The table is consulted
before any guard, so an unknown pair always raises
:class:`InvalidTransitionError` regardless of who asks.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from receiptflow.core.config import settings
from receiptflow.core.exceptions import (
    ClaimPermissionError,
    InvalidTransitionError,
    ValidationError,
)
from receiptflow.models.enums import ClaimEvent, ClaimStatus
from receiptflow.models.schemas import (
    Actor,
    Claim,
    ClaimFilters,
    ClaimPage,
    ClaimStats,
    CreateClaimRequest,
)
from receiptflow.utils.helpers import decode_cursor, encode_cursor, ensure_utc, utcnow

TRANSITIONS: Mapping[tuple[ClaimStatus, ClaimEvent], ClaimStatus] = {
    (ClaimStatus.DRAFT, ClaimEvent.SUBMIT): ClaimStatus.SUBMITTED,
    (ClaimStatus.SUBMITTED, ClaimEvent.BEGIN_REVIEW): ClaimStatus.UNDER_REVIEW,
    (ClaimStatus.SUBMITTED, ClaimEvent.APPROVE): ClaimStatus.APPROVED,
    (ClaimStatus.UNDER_REVIEW, ClaimEvent.APPROVE): ClaimStatus.APPROVED,
    (ClaimStatus.SUBMITTED, ClaimEvent.REJECT): ClaimStatus.REJECTED,
    (ClaimStatus.UNDER_REVIEW, ClaimEvent.REJECT): ClaimStatus.REJECTED,
    (ClaimStatus.DRAFT, ClaimEvent.CANCEL): ClaimStatus.CANCELED,
    (ClaimStatus.SUBMITTED, ClaimEvent.CANCEL): ClaimStatus.CANCELED,
}

EDITABLE_FIELDS = frozenset({"title", "description", "amount", "currency", "category", "priority"})


def next_status(status: ClaimStatus, event: ClaimEvent) -> ClaimStatus:
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(status.value, event.value) from None


# ---------------------------------------------------------------------------
# Guards


def _require_creator(claim: Claim, actor: Actor, what: str) -> None:
    if actor.user_id != claim.creator_id:
        raise ClaimPermissionError(
            f"Only the creator can {what} this claim",
            {"claim_id": claim.id, "actor_id": actor.user_id},
        )


def _require_approver(claim: Claim, actor: Actor) -> None:
    if not actor.can_approve_for(claim.team_id):
        raise ClaimPermissionError(
            "Approval capability on the claim's team is required",
            {"claim_id": claim.id, "team_id": claim.team_id, "actor_id": actor.user_id},
        )


def _forbid_self_review(claim: Claim, actor: Actor, what: str) -> None:
    if actor.user_id == claim.creator_id:
        raise ClaimPermissionError(
            f"Creators cannot {what} their own claims", {"claim_id": claim.id}
        )


def _check_guards(claim: Claim, event: ClaimEvent, actor: Actor, reason: Optional[str]) -> None:
    if event is ClaimEvent.SUBMIT:
        _require_creator(claim, actor, "submit")
        if claim.amount is None or claim.amount <= 0:
            raise ValidationError("Amount must be greater than zero to submit", field="amount")
        if not (claim.category or "").strip():
            raise ValidationError("Category is required to submit", field="category")
    elif event is ClaimEvent.BEGIN_REVIEW:
        _require_approver(claim, actor)
    elif event is ClaimEvent.APPROVE:
        _require_approver(claim, actor)
        _forbid_self_review(claim, actor, "approve")
    elif event is ClaimEvent.REJECT:
        _require_approver(claim, actor)
        _forbid_self_review(claim, actor, "reject")
        if not (reason or "").strip():
            raise ValidationError("A rejection reason is required", field="reason")
    elif event is ClaimEvent.CANCEL:
        _require_creator(claim, actor, "cancel")


def apply_transition(
    claim: Claim,
    event: ClaimEvent,
    actor: Actor,
    reason: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> Claim:
    """Return ``claim`` moved along ``event``; the input is not modified."""
    target = next_status(claim.status, event)
    _check_guards(claim, event, actor, reason)

    now = ensure_utc(now) if now else utcnow()
    update: Dict[str, Any] = {
        "status": target,
        "updated_at": now,
        "version": claim.version + 1,
    }
    if event is ClaimEvent.SUBMIT:
        update["submitted_at"] = now
    elif event in (ClaimEvent.APPROVE, ClaimEvent.REJECT):
        update["reviewed_at"] = now
        update["approver_id"] = actor.user_id
        if event is ClaimEvent.REJECT:
            update["rejection_reason"] = reason.strip()
    return claim.model_copy(update=update)


def allowed_events(claim: Claim, actor: Actor) -> List[ClaimEvent]:
    """Events ``actor`` could apply to ``claim`` right now.

    Reject is listed when the actor holds approval capability; the reason
    is supplied at the time of the action.
    """
    events = []
    for event in ClaimEvent:
        if (claim.status, event) not in TRANSITIONS:
            continue
        try:
            _check_guards(claim, event, actor, reason="-")
        except (ClaimPermissionError, ValidationError):
            continue
        events.append(event)
    return events


# ---------------------------------------------------------------------------
# Creation & edits


def _validate_fields(fields: Mapping[str, Any]) -> None:
    if "title" in fields and not (fields["title"] or "").strip():
        raise ValidationError("Title is required", field="title")
    if "amount" in fields:
        amount = fields["amount"]
        if amount is None or Decimal(amount) < 0:
            raise ValidationError("Amount must not be negative", field="amount")
    if "currency" in fields:
        currency = fields["currency"] or ""
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a three letter code", field="currency")


def validate_new_claim(request: CreateClaimRequest) -> None:
    """Reject malformed drafts before anything reaches the store.

    Drafts may be saved with a zero amount and no category; both are
    enforced at submit time.
    """
    _validate_fields(request.model_dump())


def apply_edit(
    claim: Claim,
    actor: Actor,
    changes: Mapping[str, Any],
    now: Optional[dt.datetime] = None,
) -> Claim:
    """Apply field ``changes`` to a draft claim owned by ``actor``."""
    if claim.status is not ClaimStatus.DRAFT:
        raise InvalidTransitionError(claim.status.value, "edit")
    _require_creator(claim, actor, "edit")
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    _validate_fields(changes)
    now = ensure_utc(now) if now else utcnow()
    return claim.model_copy(
        update={**changes, "updated_at": now, "version": claim.version + 1}
    )


# ---------------------------------------------------------------------------
# Listing


def _sort_key(claim: Claim):
    return (claim.created_at, claim.id)


def validate_page_args(limit: Optional[int], offset: int = 0) -> int:
    """Return the effective page size; raises ValidationError when out of range."""
    if limit is None:
        limit = settings.CLAIMS_PAGE_SIZE_DEFAULT
    if limit < 1 or limit > settings.CLAIMS_PAGE_SIZE_MAX:
        raise ValidationError(
            f"limit must be between 1 and {settings.CLAIMS_PAGE_SIZE_MAX}", field="limit"
        )
    if offset < 0:
        raise ValidationError("offset must not be negative", field="offset")
    return limit


def parse_cursor(cursor: str) -> tuple[dt.datetime, str]:
    try:
        return decode_cursor(cursor)
    except ValueError as exc:
        raise ValidationError("Invalid pagination cursor", field="cursor") from exc


def paginate_claims(
    claims: Iterable[Claim],
    filters: ClaimFilters | None = None,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    offset: int = 0,
) -> ClaimPage:
    """Filter, order (created_at desc, id desc) and page an in-memory collection.

    With a cursor, the page holds the items strictly after the cursor key,
    so items inserted above an already-read page never shift later pages.
    """
    limit = validate_page_args(limit, offset)
    filters = filters or ClaimFilters()
    ordered = sorted((c for c in claims if filters.matches(c)), key=_sort_key, reverse=True)
    if cursor:
        key = parse_cursor(cursor)
        ordered = [c for c in ordered if _sort_key(c) < key]
    window = ordered[offset:offset + limit + 1]
    items = window[:limit]
    has_more = len(window) > limit
    next_cursor = encode_cursor(items[-1].created_at, items[-1].id) if has_more and items else None
    return ClaimPage(items=items, next_cursor=next_cursor, has_more=has_more)


# ---------------------------------------------------------------------------
# Statistics


def compute_claim_stats(claims: Iterable[Claim]) -> ClaimStats:
    by_status: Dict[ClaimStatus, int] = {status: 0 for status in ClaimStatus}
    total_amount = Decimal("0")
    approved_amount = Decimal("0")
    for claim in claims:
        by_status[claim.status] += 1
        total_amount += claim.amount
        if claim.status is ClaimStatus.APPROVED:
            approved_amount += claim.amount
    return stats_from_counts(by_status, total_amount, approved_amount)


def stats_from_counts(
    by_status: Mapping[ClaimStatus, int],
    total_amount: Decimal,
    approved_amount: Decimal,
) -> ClaimStats:
    counts = {status: int(by_status.get(status, 0)) for status in ClaimStatus}
    return ClaimStats(
        available=True,
        total=sum(counts.values()),
        by_status=counts,
        pending=counts[ClaimStatus.SUBMITTED] + counts[ClaimStatus.UNDER_REVIEW],
        approved=counts[ClaimStatus.APPROVED],
        rejected=counts[ClaimStatus.REJECTED],
        total_amount=Decimal(total_amount),
        approved_amount=Decimal(approved_amount),
    )


__all__ = [
    "TRANSITIONS",
    "next_status",
    "apply_transition",
    "allowed_events",
    "validate_new_claim",
    "apply_edit",
    "validate_page_args",
    "parse_cursor",
    "paginate_claims",
    "compute_claim_stats",
    "stats_from_counts",
]
