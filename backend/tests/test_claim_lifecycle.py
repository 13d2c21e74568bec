from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from receiptflow.core.exceptions import (
    ClaimPermissionError,
    InvalidTransitionError,
    ValidationError,
)
from receiptflow.models.enums import ClaimEvent, ClaimStatus, TeamRole
from receiptflow.models.schemas import Actor, Claim, ClaimFilters, CreateClaimRequest
from receiptflow.services import claim_lifecycle as lc
from receiptflow.utils.helpers import encode_cursor

UTC = dt.timezone.utc
T0 = dt.datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
NOW = dt.datetime(2026, 3, 2, 10, 30, tzinfo=UTC)

ALICE = Actor(user_id="alice", team_id="t1", role=TeamRole.MEMBER)
BOB = Actor(user_id="bob", team_id="t1", role=TeamRole.ADMIN)
CAROL = Actor(user_id="carol", team_id="t1", role=TeamRole.OWNER)
OUTSIDER = Actor(user_id="dave", team_id="t2", role=TeamRole.ADMIN)


def make_claim(**overrides) -> Claim:
    data = dict(
        id="c1",
        team_id="t1",
        creator_id="alice",
        title="Taxi to airport",
        amount=Decimal("25.00"),
        category="travel",
        created_at=T0,
        updated_at=T0,
    )
    data.update(overrides)
    return Claim(**data)


def test_transition_table_is_exactly_the_documented_one():
    expected = {
        (ClaimStatus.DRAFT, ClaimEvent.SUBMIT): ClaimStatus.SUBMITTED,
        (ClaimStatus.SUBMITTED, ClaimEvent.BEGIN_REVIEW): ClaimStatus.UNDER_REVIEW,
        (ClaimStatus.SUBMITTED, ClaimEvent.APPROVE): ClaimStatus.APPROVED,
        (ClaimStatus.UNDER_REVIEW, ClaimEvent.APPROVE): ClaimStatus.APPROVED,
        (ClaimStatus.SUBMITTED, ClaimEvent.REJECT): ClaimStatus.REJECTED,
        (ClaimStatus.UNDER_REVIEW, ClaimEvent.REJECT): ClaimStatus.REJECTED,
        (ClaimStatus.DRAFT, ClaimEvent.CANCEL): ClaimStatus.CANCELED,
        (ClaimStatus.SUBMITTED, ClaimEvent.CANCEL): ClaimStatus.CANCELED,
    }
    for status in ClaimStatus:
        for event in ClaimEvent:
            if (status, event) in expected:
                assert lc.next_status(status, event) is expected[(status, event)]
            else:
                with pytest.raises(InvalidTransitionError):
                    lc.next_status(status, event)


def test_submit_by_creator():
    claim = make_claim()
    moved = lc.apply_transition(claim, ClaimEvent.SUBMIT, ALICE, now=NOW)
    assert moved.status is ClaimStatus.SUBMITTED
    assert moved.version == 2
    assert moved.submitted_at == NOW
    assert moved.updated_at == NOW
    # input untouched
    assert claim.status is ClaimStatus.DRAFT
    assert claim.version == 1
    assert claim.submitted_at is None


def test_submit_guards():
    with pytest.raises(ClaimPermissionError):
        lc.apply_transition(make_claim(), ClaimEvent.SUBMIT, BOB)
    with pytest.raises(ValidationError) as exc:
        lc.apply_transition(make_claim(amount=Decimal("0")), ClaimEvent.SUBMIT, ALICE)
    assert exc.value.field == "amount"
    with pytest.raises(ValidationError) as exc:
        lc.apply_transition(make_claim(category=None), ClaimEvent.SUBMIT, ALICE)
    assert exc.value.field == "category"


def test_review_and_approve_by_admin():
    submitted = make_claim(status=ClaimStatus.SUBMITTED, version=2)
    reviewing = lc.apply_transition(submitted, ClaimEvent.BEGIN_REVIEW, BOB, now=NOW)
    assert reviewing.status is ClaimStatus.UNDER_REVIEW

    approved = lc.apply_transition(reviewing, ClaimEvent.APPROVE, CAROL, now=NOW)
    assert approved.status is ClaimStatus.APPROVED
    assert approved.approver_id == "carol"
    assert approved.reviewed_at == NOW
    assert approved.version == 4

    # approve straight from submitted
    assert lc.apply_transition(submitted, ClaimEvent.APPROVE, BOB).status is ClaimStatus.APPROVED


def test_members_and_other_teams_cannot_review():
    submitted = make_claim(status=ClaimStatus.SUBMITTED, creator_id="erin")
    with pytest.raises(ClaimPermissionError):
        lc.apply_transition(submitted, ClaimEvent.BEGIN_REVIEW, ALICE)
    with pytest.raises(ClaimPermissionError):
        lc.apply_transition(submitted, ClaimEvent.APPROVE, OUTSIDER)


def test_creator_cannot_approve_own_claim():
    submitted = make_claim(status=ClaimStatus.SUBMITTED, creator_id="bob")
    with pytest.raises(ClaimPermissionError):
        lc.apply_transition(submitted, ClaimEvent.APPROVE, BOB)


def test_creator_cannot_reject_own_claim():
    submitted = make_claim(status=ClaimStatus.SUBMITTED, creator_id="bob")
    with pytest.raises(ClaimPermissionError):
        lc.apply_transition(submitted, ClaimEvent.REJECT, BOB, reason="nope")
    assert lc.allowed_events(submitted, BOB) == [ClaimEvent.BEGIN_REVIEW, ClaimEvent.CANCEL]


def test_reject_requires_reason():
    submitted = make_claim(status=ClaimStatus.SUBMITTED)
    with pytest.raises(ValidationError):
        lc.apply_transition(submitted, ClaimEvent.REJECT, BOB, reason="   ")
    rejected = lc.apply_transition(submitted, ClaimEvent.REJECT, BOB, reason=" Missing receipt ")
    assert rejected.status is ClaimStatus.REJECTED
    assert rejected.rejection_reason == "Missing receipt"
    assert rejected.approver_id == "bob"


def test_cancel_only_by_creator():
    assert lc.apply_transition(make_claim(), ClaimEvent.CANCEL, ALICE).status is ClaimStatus.CANCELED
    submitted = make_claim(status=ClaimStatus.SUBMITTED)
    assert lc.apply_transition(submitted, ClaimEvent.CANCEL, ALICE).status is ClaimStatus.CANCELED
    with pytest.raises(ClaimPermissionError):
        lc.apply_transition(submitted, ClaimEvent.CANCEL, BOB)


@pytest.mark.parametrize("status", [ClaimStatus.APPROVED, ClaimStatus.REJECTED, ClaimStatus.CANCELED])
def test_terminal_states_reject_every_event(status):
    claim = make_claim(status=status)
    assert status.is_terminal
    for event in ClaimEvent:
        for actor in (ALICE, BOB, CAROL):
            with pytest.raises(InvalidTransitionError):
                lc.apply_transition(claim, event, actor, reason="x")


def test_table_is_checked_before_permissions():
    # bob is not the creator, but the pair is invalid first
    with pytest.raises(InvalidTransitionError):
        lc.apply_transition(make_claim(status=ClaimStatus.UNDER_REVIEW), ClaimEvent.CANCEL, BOB)


def test_allowed_events():
    assert lc.allowed_events(make_claim(), ALICE) == [ClaimEvent.SUBMIT, ClaimEvent.CANCEL]
    assert lc.allowed_events(make_claim(), BOB) == []

    submitted = make_claim(status=ClaimStatus.SUBMITTED)
    assert lc.allowed_events(submitted, BOB) == [
        ClaimEvent.BEGIN_REVIEW,
        ClaimEvent.APPROVE,
        ClaimEvent.REJECT,
    ]
    assert lc.allowed_events(submitted, ALICE) == [ClaimEvent.CANCEL]
    assert lc.allowed_events(make_claim(status=ClaimStatus.APPROVED), CAROL) == []
    # drafts that cannot be submitted yet only offer cancel
    assert lc.allowed_events(make_claim(amount=Decimal("0")), ALICE) == [ClaimEvent.CANCEL]


def test_edit_draft():
    claim = make_claim()
    edited = lc.apply_edit(claim, ALICE, {"title": "Train", "amount": Decimal("12.50")}, now=NOW)
    assert edited.title == "Train"
    assert edited.amount == Decimal("12.50")
    assert edited.version == 2
    assert claim.title == "Taxi to airport"


def test_edit_rules():
    with pytest.raises(InvalidTransitionError):
        lc.apply_edit(make_claim(status=ClaimStatus.SUBMITTED), ALICE, {"title": "x"})
    with pytest.raises(ClaimPermissionError):
        lc.apply_edit(make_claim(), BOB, {"title": "x"})
    with pytest.raises(ValidationError):
        lc.apply_edit(make_claim(), ALICE, {"status": ClaimStatus.APPROVED})
    with pytest.raises(ValidationError):
        lc.apply_edit(make_claim(), ALICE, {"amount": Decimal("-1")})
    with pytest.raises(ValidationError):
        lc.apply_edit(make_claim(), ALICE, {"currency": "EURO"})


def test_validate_new_claim():
    lc.validate_new_claim(CreateClaimRequest(title="Lunch", amount=Decimal("0")))
    with pytest.raises(ValidationError):
        lc.validate_new_claim(CreateClaimRequest(title="   ", amount=Decimal("5")))
    with pytest.raises(ValidationError):
        lc.validate_new_claim(CreateClaimRequest(title="Lunch", amount=Decimal("-5")))
    with pytest.raises(ValidationError):
        lc.validate_new_claim(CreateClaimRequest(title="Lunch", currency="us"))


# ---------------------------------------------------------------------------
# Listing


def _claims(n: int):
    return [
        make_claim(id=f"c{i:02d}", created_at=T0 + dt.timedelta(minutes=i), updated_at=T0)
        for i in range(n)
    ]


def test_pages_follow_newest_first_order():
    claims = _claims(5)
    page1 = lc.paginate_claims(claims, limit=2)
    assert [c.id for c in page1.items] == ["c04", "c03"]
    assert page1.has_more and page1.next_cursor

    page2 = lc.paginate_claims(claims, limit=2, cursor=page1.next_cursor)
    assert [c.id for c in page2.items] == ["c02", "c01"]

    page3 = lc.paginate_claims(claims, limit=2, cursor=page2.next_cursor)
    assert [c.id for c in page3.items] == ["c00"]
    assert page3.has_more is False
    assert page3.next_cursor is None


def test_insert_between_pages_does_not_shift_cursor():
    claims = _claims(5)
    page1 = lc.paginate_claims(claims, limit=2)
    claims.append(make_claim(id="c99", created_at=T0 + dt.timedelta(hours=1), updated_at=T0))
    rest = lc.paginate_claims(claims, limit=10, cursor=page1.next_cursor)
    assert [c.id for c in rest.items] == ["c02", "c01", "c00"]


def test_ties_on_created_at_break_by_id():
    claims = [make_claim(id=i, created_at=T0, updated_at=T0) for i in ("a", "c", "b")]
    page1 = lc.paginate_claims(claims, limit=2)
    assert [c.id for c in page1.items] == ["c", "b"]
    page2 = lc.paginate_claims(claims, limit=2, cursor=page1.next_cursor)
    assert [c.id for c in page2.items] == ["a"]


def test_offset_paging():
    page = lc.paginate_claims(_claims(5), limit=2, offset=2)
    assert [c.id for c in page.items] == ["c02", "c01"]


@pytest.mark.parametrize("limit", [0, -1, 201])
def test_page_size_bounds(limit):
    with pytest.raises(ValidationError):
        lc.paginate_claims(_claims(2), limit=limit)


def test_invalid_cursor():
    with pytest.raises(ValidationError) as exc:
        lc.paginate_claims(_claims(2), cursor="not-a-cursor!")
    assert exc.value.field == "cursor"


def test_cursor_from_another_listing_still_orders():
    cursor = encode_cursor(T0 + dt.timedelta(minutes=2, seconds=30), "zzz")
    page = lc.paginate_claims(_claims(5), limit=5, cursor=cursor)
    assert [c.id for c in page.items] == ["c02", "c01", "c00"]


def test_filters():
    claims = [
        make_claim(id="a", amount=Decimal("5"), category="meals"),
        make_claim(id="b", amount=Decimal("50"), status=ClaimStatus.SUBMITTED),
        make_claim(id="c", amount=Decimal("500"), creator_id="erin", created_at=T0 + dt.timedelta(days=2)),
    ]
    assert [c.id for c in lc.paginate_claims(claims, ClaimFilters(category="meals")).items] == ["a"]
    assert [c.id for c in lc.paginate_claims(claims, ClaimFilters(status=ClaimStatus.SUBMITTED)).items] == ["b"]
    ranged = ClaimFilters(amount_min=Decimal("10"), amount_max=Decimal("100"))
    assert [c.id for c in lc.paginate_claims(claims, ranged).items] == ["b"]
    since = ClaimFilters(date_from=T0 + dt.timedelta(days=1))
    assert [c.id for c in lc.paginate_claims(claims, since).items] == ["c"]


def test_filter_merge_and_clear():
    base = ClaimFilters(status=ClaimStatus.SUBMITTED, category="travel")
    extra = ClaimFilters(category="meals", creator_id="alice")
    merged = base.merge(extra)
    assert merged.status is ClaimStatus.SUBMITTED
    assert merged.category == "meals"
    assert merged.creator_id == "alice"
    assert merged.merge(extra) == merged
    assert merged.cleared() == ClaimFilters()


def test_filter_ranges_validated():
    with pytest.raises(ValueError):
        ClaimFilters(amount_min=Decimal("10"), amount_max=Decimal("1"))
    with pytest.raises(ValueError):
        ClaimFilters(date_from=NOW, date_to=T0)


def test_stats():
    claims = [
        make_claim(id="a", amount=Decimal("10.00")),
        make_claim(id="b", amount=Decimal("20.00"), status=ClaimStatus.SUBMITTED),
        make_claim(id="c", amount=Decimal("30.00"), status=ClaimStatus.UNDER_REVIEW),
        make_claim(id="d", amount=Decimal("40.00"), status=ClaimStatus.APPROVED),
        make_claim(id="e", amount=Decimal("50.00"), status=ClaimStatus.REJECTED),
    ]
    stats = lc.compute_claim_stats(claims)
    assert stats.available
    assert stats.total == 5
    assert stats.pending == 2
    assert stats.approved == 1
    assert stats.rejected == 1
    assert stats.by_status[ClaimStatus.DRAFT] == 1
    assert stats.by_status[ClaimStatus.CANCELED] == 0
    assert stats.total_amount == Decimal("150.00")
    assert stats.approved_amount == Decimal("40.00")


def test_stats_of_nothing():
    stats = lc.compute_claim_stats([])
    assert stats.total == 0
    assert stats.total_amount == Decimal("0")
